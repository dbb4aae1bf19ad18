"""Memory-node bookkeeping: area layout, block queue and subtable slots."""

from __future__ import annotations

import random
from collections import deque
from dataclasses import dataclass

from .hashtable import (
    GC_AREA_LEN,
    HASH_AREA_LEN,
    META_AREA_LEN,
    RACE_HASH_ADDRESSABLE_BUCKET_NUM,
    RACE_HASH_GLOBAL_DEPTH,
    RACE_HASH_INIT_LOCAL_DEPTH,
    RACE_HASH_INIT_SUBTABLE_NUM,
    RACE_HASH_MAX_GLOBAL_DEPTH,
    RACE_HASH_MAX_SUBTABLE_NUM,
    RACE_HASH_SUBTABLE_BUCKET_NUM,
    SUBTABLE_LEN,
    RaceHashBucket,
)
from .kv_utils import MAX_REP_NUM, GlobalConfig, MrInfo, round_up, roundup_256

ROOT_HEADER_LEN = 16 * 8
SUBTABLE_ENTRY_LEN = 8
ROOT_RES_LEN = ROOT_HEADER_LEN + RACE_HASH_MAX_SUBTABLE_NUM * MAX_REP_NUM * SUBTABLE_ENTRY_LEN
CLIENT_GC_SLICE_LEN = 1024 * 1024


class OutOfSpaceError(Exception):
    """Raised when no block, subtable or GC area is left to hand out."""


@dataclass
class RaceHashRoot:
    """Header of the hash index root; subtable entries start zeroed."""

    global_depth: int = 0
    init_local_depth: int = 0
    max_global_depth: int = 0
    prefix_num: int = 0
    subtable_res_num: int = 0
    subtable_init_num: int = 0
    subtable_hash_num: int = 0
    subtable_hash_range: int = 0
    subtable_bucket_num: int = 0
    seed: int = 0
    mem_id: int = 0
    root_offset: int = 0
    subtable_offset: int = 0
    kv_offset: int = 0
    kv_len: int = 0
    lock: int = 0


class ServerMM:
    """Tracks which blocks and subtables of one memory node are handed out."""

    def __init__(self, base_addr: int, base_len: int, block_size: int,
                 conf: GlobalConfig, rkey: int = 0, seed: int | None = None) -> None:
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self.base_addr = base_addr
        self.base_len = base_len
        self.block_size = block_size
        self.rkey = rkey

        self.client_meta_area_off = 0
        self.client_meta_area_len = META_AREA_LEN
        self.client_gc_area_off = self.client_meta_area_len
        self.client_gc_area_len = GC_AREA_LEN
        self.client_hash_area_off = self.client_gc_area_off + self.client_gc_area_len
        self.client_hash_area_len = HASH_AREA_LEN
        self.client_kv_area_off = round_up(
            self.client_hash_area_off + self.client_hash_area_len, block_size)
        if base_len < self.client_kv_area_off:
            raise ValueError(
                f"base_len {base_len:#x} is smaller than the reserved areas "
                f"({self.client_kv_area_off:#x})")
        self.client_kv_area_len = base_len - self.client_kv_area_off
        self.client_kv_area_limit = base_len + base_addr

        self.num_memory = conf.memory_num
        self.num_replication = conf.num_replication
        self.my_sid = conf.server_id
        if self.num_memory <= 0 or not 0 < self.num_replication <= self.num_memory:
            raise ValueError("need 0 < num_replication <= memory_num")

        self.root = self._init_root(random.getrandbits(31) if seed is None else seed)
        self._subtable_alloc_map = [False] * self._max_subtables()

        self.num_blocks = self.client_kv_area_len // block_size
        self._allocable_blocks: deque[int] = deque(self._allocable_block_addrs())
        self._allocated_blocks: dict[int, bool] = {}

    def _init_root(self, seed: int) -> RaceHashRoot:
        root_offset = self.client_hash_area_off
        prefix_num = 1 << RACE_HASH_MAX_GLOBAL_DEPTH
        return RaceHashRoot(
            global_depth=RACE_HASH_GLOBAL_DEPTH,
            init_local_depth=RACE_HASH_INIT_LOCAL_DEPTH,
            max_global_depth=RACE_HASH_MAX_GLOBAL_DEPTH,
            prefix_num=prefix_num,
            subtable_res_num=prefix_num,
            subtable_init_num=RACE_HASH_INIT_SUBTABLE_NUM,
            subtable_hash_range=RACE_HASH_ADDRESSABLE_BUCKET_NUM,
            subtable_bucket_num=RACE_HASH_SUBTABLE_BUCKET_NUM,
            seed=seed,
            root_offset=root_offset,
            subtable_offset=root_offset + roundup_256(ROOT_RES_LEN),
            kv_offset=self.client_kv_area_off,
            kv_len=self.client_kv_area_len,
            lock=0,
        )

    def _max_subtables(self) -> int:
        hash_end = self.base_addr + self.client_hash_area_off + self.client_hash_area_len
        return max(0, (hash_end - self.subtable_st_addr()) // roundup_256(SUBTABLE_LEN))

    def _allocable_block_addrs(self) -> list[int]:
        kv_area_addr = self.base_addr + self.client_kv_area_off
        limit = self.client_kv_area_limit
        pointers = [kv_area_addr] * self.num_memory
        num_rep_blocks = (self.num_blocks * self.num_memory) // self.num_replication
        mine = []
        for block_cnt in range(num_rep_blocks):
            st_sid = block_cnt % self.num_memory
            for _ in range(self.num_memory):
                if pointers[st_sid] != limit:
                    break
                st_sid = (st_sid + 1) % self.num_memory
            else:
                raise ValueError("address map exhausted on every memory node")

            addr_list = []
            for rep in range(self.num_replication):
                sid = (st_sid + rep) % self.num_memory
                if pointers[sid] >= limit:
                    raise ValueError(
                        f"address map overflow at block {block_cnt} on server {sid}")
                if pointers[sid] & 0xFF:
                    raise ValueError(f"misaligned block address {pointers[sid]:#x}")
                addr_list.append(pointers[sid])
                pointers[sid] += self.block_size
            if st_sid == self.my_sid:
                mine.append(addr_list[0])
        return mine

    @property
    def num_subtables(self) -> int:
        return len(self._subtable_alloc_map)

    def initial_bucket(self, subtable_index: int) -> RaceHashBucket:
        """Return the bucket contents a fresh subtable starts with."""
        if not 0 <= subtable_index < self.num_subtables:
            raise IndexError(f"no subtable {subtable_index}")
        return RaceHashBucket(local_depth=RACE_HASH_INIT_LOCAL_DEPTH, prefix=subtable_index)

    def mm_alloc(self) -> int:
        """Hand out the next free block of this node."""
        if not self._allocable_blocks:
            raise OutOfSpaceError("no free block left")
        addr = self._allocable_blocks.popleft()
        self._allocated_blocks[addr] = True
        return addr

    def mm_free(self, st_addr: int) -> None:
        """Return a block to the end of the free queue."""
        if not self._allocated_blocks.get(st_addr, False):
            raise ValueError(f"block {st_addr:#x} is not allocated")
        self._allocated_blocks[st_addr] = False
        self._allocable_blocks.append(st_addr)

    def mm_alloc_subtable(self) -> int:
        """Hand out the lowest free subtable."""
        start = self.subtable_st_addr()
        stride = roundup_256(SUBTABLE_LEN)
        for idx, used in enumerate(self._subtable_alloc_map):
            if not used:
                self._subtable_alloc_map[idx] = True
                return start + idx * stride
        raise OutOfSpaceError("no free subtable left")

    def client_gc_info(self, client_id: int) -> MrInfo:
        """Return the GC area slice of a client."""
        offset = client_id * CLIENT_GC_SLICE_LEN
        if offset + CLIENT_GC_SLICE_LEN >= self.client_gc_area_len:
            raise OutOfSpaceError(f"no GC area for client {client_id}")
        return MrInfo(self.client_gc_area_off + offset + self.base_addr, self.rkey)

    def mr_info(self) -> MrInfo:
        return MrInfo(self.base_addr, self.rkey)

    def kv_area_addr(self) -> int:
        return self.client_kv_area_off + self.base_addr

    def subtable_st_addr(self) -> int:
        return self.client_hash_area_off + self.base_addr + roundup_256(ROOT_RES_LEN)