"""Race hashing index: slot and bucket layouts, key hashing and index helpers."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

MASK64 = (1 << 64) - 1

RACE_HASH_GLOBAL_DEPTH = 5
RACE_HASH_INIT_LOCAL_DEPTH = 5
RACE_HASH_SUBTABLE_NUM = 1 << RACE_HASH_GLOBAL_DEPTH
RACE_HASH_INIT_SUBTABLE_NUM = 1 << RACE_HASH_INIT_LOCAL_DEPTH
RACE_HASH_MAX_GLOBAL_DEPTH = 5
RACE_HASH_MAX_SUBTABLE_NUM = 1 << RACE_HASH_MAX_GLOBAL_DEPTH
RACE_HASH_ADDRESSABLE_BUCKET_NUM = 34000
RACE_HASH_SUBTABLE_BUCKET_NUM = RACE_HASH_ADDRESSABLE_BUCKET_NUM * 3 // 2
RACE_HASH_ASSOC_NUM = 7
RACE_HASH_RESERVED_MAX_KV_NUM = 1024 * 1024 * 10
RACE_HASH_KVOFFSET_RING_NUM = 1024 * 1024 * 16
RACE_HASH_KV_BLOCK_LENGTH = 64
SUBTABLE_USED_HASH_BIT_NUM = 32

SLOT_SIZE = 8
POINTER_SIZE = 5
BUCKET_SIZE = 8 + SLOT_SIZE * RACE_HASH_ASSOC_NUM

SUBTABLE_LEN = RACE_HASH_ADDRESSABLE_BUCKET_NUM * BUCKET_SIZE
SUBTABLE_RES_LEN = RACE_HASH_MAX_SUBTABLE_NUM * SUBTABLE_LEN
KV_RES_LEN = RACE_HASH_RESERVED_MAX_KV_NUM * RACE_HASH_KV_BLOCK_LENGTH
META_AREA_LEN = 256 * 1024 * 1024
GC_AREA_LEN = 0
HASH_AREA_LEN = 128 * 1024 * 1024
CLIENT_META_LEN = 1 * 1024 * 1024
CLIENT_GC_LEN = 1 * 1024 * 1024

_P1 = 11400714785074694791
_P2 = 14029467366897019727
_P3 = 1609587929392839161
_P4 = 9650029242287828579
_P5 = 2870177450012600261

_TAG_MULTIPLIER = 0xC6A4A7935BD1E995


def _rotl(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (64 - shift))) & MASK64


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & MASK64
    acc = _rotl(acc, 31)
    return (acc * _P1) & MASK64


def variable_length_hash(data: bytes, seed: int = 0) -> int:
    """Return the 64-bit hash of ``data`` under ``seed``."""
    data = bytes(data)
    length = len(data)
    seed &= MASK64
    pos = 0

    if length >= 32:
        lanes_acc = [
            (seed + _P1 + _P2) & MASK64,
            (seed + _P2) & MASK64,
            seed,
            (seed - _P1) & MASK64,
        ]
        limit = length - 32
        while pos <= limit:
            lanes = struct.unpack_from("<4Q", data, pos)
            lanes_acc = [_round(acc, lane) for acc, lane in zip(lanes_acc, lanes)]
            pos += 32
        v1, v2, v3, v4 = lanes_acc
        hash_value = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & MASK64
        for acc in lanes_acc:
            hash_value ^= _round(0, acc)
            hash_value = (hash_value * _P1 + _P4) & MASK64
    else:
        hash_value = (seed + _P5) & MASK64

    hash_value = (hash_value + length) & MASK64

    while pos + 8 <= length:
        (lane,) = struct.unpack_from("<Q", data, pos)
        hash_value ^= _round(0, lane)
        hash_value = (_rotl(hash_value, 27) * _P1 + _P4) & MASK64
        pos += 8

    if pos + 4 <= length:
        (word,) = struct.unpack_from("<I", data, pos)
        hash_value ^= (word * _P1) & MASK64
        hash_value = (_rotl(hash_value, 23) * _P2 + _P3) & MASK64
        pos += 4

    for byte in data[pos:]:
        hash_value ^= (byte * _P5) & MASK64
        hash_value = (_rotl(hash_value, 11) * _P1) & MASK64

    hash_value ^= hash_value >> 33
    hash_value = (hash_value * _P2) & MASK64
    hash_value ^= hash_value >> 29
    hash_value = (hash_value * _P3) & MASK64
    hash_value ^= hash_value >> 32
    return hash_value


def compute_fp(hash_value: int) -> int:
    """Return the one-byte fingerprint taken from the top 16 bits of a hash."""
    hash_value &= MASK64
    return ((hash_value >> 48) ^ (hash_value >> 56)) & 0xFF


def is_empty_pointer(pointer: bytes) -> bool:
    """Return True when every byte of ``pointer`` is zero."""
    return not any(pointer)


def check_key(remote_key: bytes, local_key: bytes) -> bool:
    """Return True when two keys are equal, comparing length and hash first."""
    if len(remote_key) != len(local_key):
        return False
    if variable_length_hash(remote_key, 0) != variable_length_hash(local_key, 0):
        return False
    return bytes(remote_key) == bytes(local_key)


def subtable_first_index(hash_value: int, capacity: int) -> int:
    """Return the first-choice bucket index for ``hash_value``."""
    return (hash_value & MASK64) % (capacity // 2)


def subtable_second_index(hash_value: int, f_index: int, capacity: int) -> int:
    """Return the second-choice bucket index, always in the upper half."""
    half = capacity // 2
    partial = ((hash_value & 0xFFFFFFFF) >> 16) & 0xFFFF
    non_zero_tag = ((partial >> 1) << 1) + 1
    hash_of_tag = (non_zero_tag * _TAG_MULTIPLIER) & MASK64
    return ((f_index & MASK64) ^ hash_of_tag) % half + half


def convert_40_to_64(pointer: bytes) -> int:
    """Expand a 5-byte big-endian pointer into a 64-bit address (low byte zero)."""
    if len(pointer) < POINTER_SIZE:
        raise ValueError(f"pointer needs {POINTER_SIZE} bytes, got {len(pointer)}")
    return int.from_bytes(bytes(pointer[:POINTER_SIZE]), "big") << 8


def convert_64_to_40(addr: int) -> bytes:
    """Compress a 64-bit address into a 5-byte pointer, dropping the low byte."""
    return ((addr >> 8) & ((1 << 40) - 1)).to_bytes(POINTER_SIZE, "big")


@dataclass(frozen=True)
class RaceHashSlot:
    """One 8-byte index slot: fingerprint, length, server id and 40-bit pointer."""

    fp: int = 0
    kv_len: int = 0
    server_id: int = 0
    pointer: bytes = bytes(POINTER_SIZE)

    def __post_init__(self) -> None:
        for name in ("fp", "kv_len", "server_id"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise ValueError(f"{name} must fit in one byte, got {value}")
        if len(self.pointer) != POINTER_SIZE:
            raise ValueError(f"pointer must be {POINTER_SIZE} bytes")
        object.__setattr__(self, "pointer", bytes(self.pointer))

    def pack(self) -> bytes:
        return bytes((self.fp, self.kv_len, self.server_id)) + self.pointer

    @classmethod
    def unpack(cls, data: bytes) -> "RaceHashSlot":
        if len(data) != SLOT_SIZE:
            raise ValueError(f"slot must be {SLOT_SIZE} bytes, got {len(data)}")
        return cls(data[0], data[1], data[2], bytes(data[3:8]))

    def to_int(self) -> int:
        """Return the slot as the 64-bit word stored in remote memory."""
        return int.from_bytes(self.pack(), "little")

    @classmethod
    def from_int(cls, value: int) -> "RaceHashSlot":
        return cls.unpack((value & MASK64).to_bytes(SLOT_SIZE, "little"))

    def is_empty(self) -> bool:
        return self.fp == 0 and self.kv_len == 0 and is_empty_pointer(self.pointer)

    def address(self) -> int:
        """Return the remote address the slot points at."""
        return convert_40_to_64(self.pointer)


def _empty_slots() -> list[RaceHashSlot]:
    return [RaceHashSlot() for _ in range(RACE_HASH_ASSOC_NUM)]


@dataclass
class RaceHashBucket:
    """A bucket of associative slots with its local depth and prefix."""

    local_depth: int = 0
    prefix: int = 0
    slots: list[RaceHashSlot] = field(default_factory=_empty_slots)

    def __post_init__(self) -> None:
        if len(self.slots) != RACE_HASH_ASSOC_NUM:
            raise ValueError(f"bucket holds exactly {RACE_HASH_ASSOC_NUM} slots")

    def free_slots(self) -> list[int]:
        """Return the indices of empty slots in ascending order."""
        return [idx for idx, slot in enumerate(self.slots) if slot.is_empty()]

    def pack(self) -> bytes:
        header = struct.pack("<II", self.local_depth, self.prefix)
        return header + b"".join(slot.pack() for slot in self.slots)

    @classmethod
    def unpack(cls, data: bytes) -> "RaceHashBucket":
        if len(data) != BUCKET_SIZE:
            raise ValueError(f"bucket must be {BUCKET_SIZE} bytes, got {len(data)}")
        local_depth, prefix = struct.unpack_from("<II", data, 0)
        slots = [
            RaceHashSlot.unpack(data[off:off + SLOT_SIZE])
            for off in range(8, BUCKET_SIZE, SLOT_SIZE)
        ]
        return cls(local_depth, prefix, slots)