"""Client-side block layout: subblocks, replica block mapping and free bitmaps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, NamedTuple, Sequence

from .hashtable import RaceHashSlot
from .kv_utils import MrInfo

_BITS_PER_WORD = 64
_WORD_BYTES = 8


@dataclass(frozen=True)
class SubblockInfo:
    """One subblock and its replicas: addresses, remote keys and server ids."""

    addr_list: tuple[int, ...] = ()
    rkey_list: tuple[int, ...] = ()
    server_id_list: tuple[int, ...] = ()

    def tagged_addr(self, replica: int = 0) -> int:
        """Return the replica's address with its server id in the low byte."""
        return self.addr_list[replica] | self.server_id_list[replica]


@dataclass
class MMBlock:
    """A block obtained from the memory nodes, with its replicas."""

    mr_info_list: tuple[MrInfo, ...] = ()
    server_id_list: tuple[int, ...] = ()
    bmap: list[bool] = field(default_factory=list)
    num_allocated: int = 0
    prev_free_subblock_idx: int = 0
    next_free_subblock_idx: int = 0
    next_free_subblock_cnt: int = 0

    def update_next_free(self) -> None:
        """Point at the longest run of free subblocks in the bitmap."""
        index, count = largest_free_run(self.bmap)
        self.prev_free_subblock_idx = self.next_free_subblock_idx
        self.next_free_subblock_idx = index
        self.next_free_subblock_cnt = count


@dataclass
class AllocCtx:
    """Result of one allocation: the chosen subblock and its log neighbours."""

    server_id_list: list[int] = field(default_factory=list)
    addr_list: list[int] = field(default_factory=list)
    prev_addr_list: list[int] = field(default_factory=list)
    next_addr_list: list[int] = field(default_factory=list)
    rkey_list: list[int] = field(default_factory=list)
    prev_rkey_list: list[int] = field(default_factory=list)
    next_rkey_list: list[int] = field(default_factory=list)
    num_subblocks: int = 0
    need_change_prev: bool = False


class BlockLayout:
    """How a block divides into subblocks, the leading ones holding a bitmap."""

    def __init__(self, block_size: int, subblock_size: int) -> None:
        if subblock_size <= 0 or block_size < subblock_size:
            raise ValueError("need 0 < subblock_size <= block_size")
        self.block_size = block_size
        self.subblock_size = subblock_size
        self.subblock_num = block_size // subblock_size
        bmap_blocks = self.subblock_num // 8 // subblock_size
        if bmap_blocks * 8 * subblock_size < self.subblock_num:
            bmap_blocks += 1
        self.bmap_block_num = bmap_blocks

    def aligned_size(self, size: int) -> int:
        """Round ``size`` up to a whole number of subblocks."""
        if size % self.subblock_size == 0:
            return size
        return (size // self.subblock_size + 1) * self.subblock_size

    def bitmap_size(self) -> int:
        """Return the bytes taken by the leading bitmap subblocks."""
        return self.bmap_block_num * self.subblock_size

    def subblock_at(self, block: MMBlock, index: int) -> SubblockInfo:
        """Return the subblock at ``index`` in every replica of ``block``."""
        offset = index * self.subblock_size
        return SubblockInfo(
            addr_list=tuple(mr.addr + offset for mr in block.mr_info_list),
            rkey_list=tuple(mr.rkey for mr in block.mr_info_list),
            server_id_list=tuple(block.server_id_list),
        )

    def subblocks(self, block: MMBlock) -> Iterator[SubblockInfo]:
        """Yield the data subblocks of ``block``, skipping the bitmap ones."""
        for index in range(self.bmap_block_num, self.subblock_num):
            yield self.subblock_at(block, index)

    def subblock_index(self, addr: int, block: MMBlock) -> int:
        """Return the index of the subblock holding ``addr`` in the primary replica."""
        return (addr - block.mr_info_list[0].addr) // self.subblock_size


class BlockMap(NamedTuple):
    """Replica mapping of blocks, keyed by address tagged with server id."""

    alloc: dict[int, list[int]]
    total: dict[int, list[int]]


def build_block_map(kv_area_addr: int, limit_addr: int, num_blocks: int,
                    num_memory: int, num_replication: int, block_size: int) -> BlockMap:
    """Statically place every replicated block across the memory nodes.

    ``alloc`` maps a primary block to its backups (or ``[0]`` without
    replication); ``total`` maps every replica to all the others.
    """
    if num_memory <= 0 or not 0 < num_replication <= num_memory:
        raise ValueError("need 0 < num_replication <= num_memory")
    pointers = [kv_area_addr] * num_memory
    num_rep_blocks = (num_blocks * num_memory) // num_replication
    alloc: dict[int, list[int]] = {}
    total: dict[int, list[int]] = {}

    for block_cnt in range(num_rep_blocks):
        st_sid = block_cnt % num_memory
        for _ in range(num_memory):
            if pointers[st_sid] != limit_addr:
                break
            st_sid = (st_sid + 1) % num_memory
        else:
            raise ValueError("address map exhausted on every memory node")

        addr_list = []
        for rep in range(num_replication):
            sid = (st_sid + rep) % num_memory
            if pointers[sid] >= limit_addr:
                raise ValueError(f"address map overflow at block {block_cnt} on server {sid}")
            if pointers[sid] & 0xFF:
                raise ValueError(f"misaligned block address {pointers[sid]:#x}")
            addr_list.append(pointers[sid] | sid)
            pointers[sid] += block_size

        primary = addr_list[0]
        for i, addr in enumerate(addr_list):
            others = [other for j, other in enumerate(addr_list) if j != i]
            total.setdefault(addr, []).extend(others)
            if i == 0:
                if any(other == 0 for other in others):
                    raise ValueError("backup block mapped to address 0")
                alloc.setdefault(primary, []).extend(others)
        if num_replication == 1:
            alloc.setdefault(primary, []).append(0)
    return BlockMap(alloc, total)


@dataclass(frozen=True)
class FreeBitmapEntry:
    """A bit to set in a block's free bitmap on one server."""

    bmap_addr: int
    server_id: int
    mask: int

    @property
    def key(self) -> str:
        return f"{self.bmap_addr}@{self.server_id}"


def free_bitmap_entry(slot_value: int, block_size: int, subblock_size: int,
                      bitmap_blocks: int) -> FreeBitmapEntry:
    """Locate the bitmap word and bit that mark the slot's subblock as freed."""
    slot = RaceHashSlot.from_int(slot_value)
    kv_raddr = slot.address()
    in_block = kv_raddr % block_size
    subblock_id = in_block // subblock_size
    block_raddr = kv_raddr - in_block
    bmap_addr = block_raddr + (subblock_id // _BITS_PER_WORD) * _WORD_BYTES
    if bmap_addr > block_raddr + subblock_size * bitmap_blocks:
        raise ValueError(f"bitmap address {bmap_addr:#x} lies outside the bitmap")
    return FreeBitmapEntry(bmap_addr, slot.server_id, 1 << (subblock_id % _BITS_PER_WORD))


def largest_free_run(bitmap: Sequence[bool]) -> tuple[int, int]:
    """Return (start, length) of the first longest run of free entries after index 0.

    Returns (-1, -1) when there is none.
    """
    best_idx, best_cnt = -1, -1
    run_start, run_len = -1, 0
    for index in range(1, len(bitmap) + 1):
        free = index < len(bitmap) and not bitmap[index]
        if free:
            if run_len == 0:
                run_start = index
            run_len += 1
            continue
        if run_len > best_cnt and run_len > 0:
            best_idx, best_cnt = run_start, run_len
        run_len = 0
    return best_idx, best_cnt