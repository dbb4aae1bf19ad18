"""Shared configuration, wire messages, log records and small address helpers."""

from __future__ import annotations

import enum
import json
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

DDCKV_MAX_SERVER = 64
SERVER_ID_BMASK = 0x3F
BLOCK_ADDR_BMASK = 0x1FFFFF
BLOCK_OFF_BMASK = 0x3FFFF
SUBBLOCK_NUM_BMASK = 0xF
MAX_REP_NUM = 10

_MASK64 = (1 << 64) - 1


class Role(enum.IntEnum):
    CLIENT = 0
    SERVER = 1


class ConnType(enum.IntEnum):
    IB = 0
    ROCE = 1


class AllocMethod(enum.IntEnum):
    CXL_SHM_ALLOC = 0
    FUSEE_ALLOC = 1
    SHARE_ALLOC = 2
    POOL_ALLOC = 3


class KVMsgType(enum.IntEnum):
    REQ_CONNECT = 0
    REQ_ALLOC = 1
    REQ_ALLOC_SUBTABLE = 2
    REP_CONNECT = 3
    REP_ALLOC = 4
    REP_ALLOC_SUBTABLE = 5
    REQ_REGISTER = 6
    REP_REGISTER = 7
    REQ_RECOVER = 8
    REP_RECOVER = 9
    REQ_HEARTBEAT = 10
    REP_HEARTBEAT = 11


class KVLogOp(enum.IntEnum):
    INSERT = 1
    UPDATE = 2
    DELETE = 3
    FINISH = 4


_CONNECT_TYPES = frozenset({KVMsgType.REQ_CONNECT, KVMsgType.REP_CONNECT})
_ALLOC_TYPES = frozenset({
    KVMsgType.REQ_ALLOC,
    KVMsgType.REP_ALLOC,
    KVMsgType.REQ_ALLOC_SUBTABLE,
    KVMsgType.REP_ALLOC_SUBTABLE,
})

_QP_INFO = struct.Struct("!IHB16sB")
_MR_INFO = struct.Struct("!QI4x")
_MSG_HEADER = struct.Struct("!HH4x")
_BODY_SIZE = _QP_INFO.size + _MR_INFO.size
KVMSG_SIZE = _MSG_HEADER.size + _BODY_SIZE


@dataclass(frozen=True)
class QpInfo:
    """Queue-pair identity exchanged when connecting."""

    qp_num: int = 0
    lid: int = 0
    port_num: int = 0
    gid: bytes = bytes(16)
    gid_idx: int = 0

    def _pack(self) -> bytes:
        if len(self.gid) != 16:
            raise ValueError("gid must be 16 bytes")
        return _QP_INFO.pack(self.qp_num, self.lid, self.port_num, bytes(self.gid), self.gid_idx)

    @classmethod
    def _unpack(cls, data: bytes) -> "QpInfo":
        qp_num, lid, port_num, gid, gid_idx = _QP_INFO.unpack(data)
        return cls(qp_num, lid, port_num, gid, gid_idx)


@dataclass(frozen=True)
class MrInfo:
    """A remote memory region: base address and remote key."""

    addr: int = 0
    rkey: int = 0

    def _pack(self) -> bytes:
        return _MR_INFO.pack(self.addr & _MASK64, self.rkey & 0xFFFFFFFF)

    @classmethod
    def _unpack(cls, data: bytes) -> "MrInfo":
        addr, rkey = _MR_INFO.unpack(data)
        return cls(addr, rkey)


@dataclass(frozen=True)
class ConnInfo:
    """Connection reply body: queue pair and memory region."""

    qp_info: QpInfo = field(default_factory=QpInfo)
    gc_info: MrInfo = field(default_factory=MrInfo)


@dataclass(frozen=True)
class KVMsg:
    """A control message; encoded in network byte order."""

    type: KVMsgType
    id: int = 0
    body: ConnInfo | MrInfo | None = None

    def pack(self) -> bytes:
        msg_type = KVMsgType(self.type)
        header = _MSG_HEADER.pack(int(msg_type), self.id & 0xFFFF)
        if msg_type in _CONNECT_TYPES:
            body = self.body if self.body is not None else ConnInfo()
            if not isinstance(body, ConnInfo):
                raise TypeError(f"{msg_type.name} carries ConnInfo")
            payload = body.qp_info._pack() + body.gc_info._pack()
        elif msg_type in _ALLOC_TYPES:
            body = self.body if self.body is not None else MrInfo()
            if not isinstance(body, MrInfo):
                raise TypeError(f"{msg_type.name} carries MrInfo")
            payload = body._pack().ljust(_BODY_SIZE, b"\x00")
        else:
            payload = bytes(_BODY_SIZE)
        return header + payload

    @classmethod
    def unpack(cls, data: bytes) -> "KVMsg":
        if len(data) != KVMSG_SIZE:
            raise ValueError(f"message must be {KVMSG_SIZE} bytes, got {len(data)}")
        raw_type, msg_id = _MSG_HEADER.unpack_from(data, 0)
        msg_type = KVMsgType(raw_type)
        payload = bytes(data[_MSG_HEADER.size:])
        body: ConnInfo | MrInfo | None
        if msg_type in _CONNECT_TYPES:
            body = ConnInfo(
                QpInfo._unpack(payload[:_QP_INFO.size]),
                MrInfo._unpack(payload[_QP_INFO.size:]),
            )
        elif msg_type in _ALLOC_TYPES:
            body = MrInfo._unpack(payload[:_MR_INFO.size])
        else:
            body = None
        return cls(msg_type, msg_id, body)


_LOG_HEADER = struct.Struct("<BxHI")
_LOG_TAIL = struct.Struct("<6s6s4xQBB6x")
KVLOG_HEADER_SIZE = _LOG_HEADER.size
KVLOG_TAIL_SIZE = _LOG_TAIL.size


@dataclass(frozen=True)
class KVLogHeader:
    """Header placed before a logged key-value pair."""

    is_valid: bool = False
    key_length: int = 0
    value_length: int = 0

    def pack(self) -> bytes:
        return _LOG_HEADER.pack(int(self.is_valid), self.key_length, self.value_length)

    @classmethod
    def unpack(cls, data: bytes) -> "KVLogHeader":
        is_valid, key_length, value_length = _LOG_HEADER.unpack(bytes(data[:KVLOG_HEADER_SIZE]))
        return cls(bool(is_valid), key_length, value_length)


@dataclass(frozen=True)
class KVLogTail:
    """Tail placed after a logged key-value pair, chaining the log."""

    next_addr: bytes = bytes(6)
    prev_addr: bytes = bytes(6)
    old_value: int = 0
    crc: int = 0
    op: int = 0

    def __post_init__(self) -> None:
        if len(self.next_addr) != 6 or len(self.prev_addr) != 6:
            raise ValueError("log addresses must be 6 bytes")

    def pack(self) -> bytes:
        return _LOG_TAIL.pack(
            bytes(self.next_addr), bytes(self.prev_addr),
            self.old_value & _MASK64, self.crc, self.op,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "KVLogTail":
        next_addr, prev_addr, old_value, crc, op = _LOG_TAIL.unpack(bytes(data[:KVLOG_TAIL_SIZE]))
        return cls(next_addr, prev_addr, old_value, crc, op)

    def is_committed(self) -> bool:
        return self.old_value != 0

    def is_insert(self) -> bool:
        return self.op == KVLogOp.INSERT


@dataclass
class GlobalConfig:
    """Settings for one server or client process."""

    role: Role = Role.CLIENT
    conn_type: ConnType = ConnType.IB
    server_id: int = 0
    udp_port: int = 0
    memory_num: int = 1
    memory_ips: tuple[str, ...] = ()
    ib_dev_id: int = 0
    ib_port_id: int = 0
    ib_gid_idx: int = -1
    server_base_addr: int = 0
    server_data_len: int = 0
    block_size: int = 0
    subblock_size: int = 0
    client_local_size: int = 0
    num_replication: int = 1
    num_idx_rep: int = 1
    num_coroutines: int = 1
    main_core_id: int = 0
    poll_core_id: int = 0
    bg_core_id: int = 0
    gc_core_id: int = 0
    is_recovery: bool = False
    master_port: int = 0
    master_ip: str = ""
    miss_rate_threash: float = 0.1
    workload_run_time: int = 10
    micro_workload_num: int = 10000
    alloc_method: AllocMethod = AllocMethod.CXL_SHM_ALLOC


class ConfigError(ValueError):
    """Raised when a configuration cannot be read or is malformed."""


_MISSING = object()


def _fetch(data: Mapping[str, Any], key: str, default: Any) -> Any:
    if key in data:
        return data[key]
    if default is _MISSING:
        raise ConfigError(f"missing config key: {key}")
    return default


def _to_int(raw: Any, key: str) -> int:
    if isinstance(raw, bool):
        raise ConfigError(f"{key} must be an integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw.strip(), 10)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _get_uint(data: Mapping[str, Any], key: str, bits: int, default: Any = _MISSING) -> int:
    value = _to_int(_fetch(data, key, default), key)
    if not 0 <= value < (1 << bits):
        raise ConfigError(f"{key} out of range: {value}")
    return value


def _get_int(data: Mapping[str, Any], key: str, default: Any = _MISSING) -> int:
    value = _to_int(_fetch(data, key, default), key)
    if not -(1 << 31) <= value < (1 << 31):
        raise ConfigError(f"{key} out of range: {value}")
    return value


def _get_float(data: Mapping[str, Any], key: str, default: Any) -> float:
    raw = _fetch(data, key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{key} must be a number")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


def _get_str(data: Mapping[str, Any], key: str) -> str:
    raw = _fetch(data, key, _MISSING)
    if isinstance(raw, (dict, list)):
        raise ConfigError(f"{key} must be a string")
    return str(raw)


def _parse_base_addr(text: str) -> int:
    if not text.startswith("0x"):
        raise ConfigError(f"server_base_addr must start with 0x, got {text!r}")
    try:
        return int(text[2:], 16)
    except ValueError as exc:
        raise ConfigError(f"bad server_base_addr: {text!r}") from exc


def parse_config(data: Mapping[str, Any]) -> GlobalConfig:
    """Build a GlobalConfig from an already decoded JSON object."""
    if not isinstance(data, Mapping):
        raise ConfigError("configuration must be a JSON object")

    role = Role.SERVER if _get_str(data, "role") == "SERVER" else Role.CLIENT
    conn_type = ConnType.IB if _get_str(data, "conn_type") == "IB" else ConnType.ROCE

    ips = _fetch(data, "memory_ips", _MISSING)
    if not isinstance(ips, list):
        raise ConfigError("memory_ips must be a list")
    memory_ips = []
    for ip in ips:
        if not isinstance(ip, str) or not 0 < len(ip) < 16:
            raise ConfigError(f"bad memory ip: {ip!r}")
        memory_ips.append(ip)

    return GlobalConfig(
        role=role,
        conn_type=conn_type,
        server_id=_get_uint(data, "server_id", 32),
        udp_port=_get_uint(data, "udp_port", 16),
        memory_num=_get_uint(data, "memory_num", 16),
        memory_ips=tuple(memory_ips),
        ib_dev_id=_get_uint(data, "ib_dev_id", 32),
        ib_port_id=_get_uint(data, "ib_port_id", 32),
        ib_gid_idx=_get_int(data, "ib_gid_idx", -1),
        server_base_addr=_parse_base_addr(_get_str(data, "server_base_addr")),
        server_data_len=_get_uint(data, "server_data_len", 64),
        block_size=_get_uint(data, "block_size", 64),
        subblock_size=_get_uint(data, "subblock_size", 64),
        client_local_size=_get_uint(data, "client_local_size", 64),
        num_replication=_get_uint(data, "num_replication", 32),
        num_coroutines=_get_uint(data, "num_coroutines", 32, 1),
        main_core_id=_get_uint(data, "main_core_id", 32, 0),
        poll_core_id=_get_uint(data, "poll_core_id", 32, 0),
        bg_core_id=_get_uint(data, "bg_core_id", 32, 0),
        gc_core_id=_get_uint(data, "gc_core_id", 32, 0),
        is_recovery=bool(_get_uint(data, "is_recovery", 32, 0)),
        num_idx_rep=_get_uint(data, "num_idx_rep", 32, 1),
        miss_rate_threash=_get_float(data, "miss_rate_threash", 0.1),
        workload_run_time=_get_int(data, "workload_run_time", 10),
        micro_workload_num=_get_int(data, "micro_workload_num", 10000),
    )


def load_config(path: str | Path) -> GlobalConfig:
    """Read a JSON configuration file."""
    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    return parse_config(data)


@dataclass(frozen=True)
class DecodedGCSlot:
    """A garbage-collection record: primary and backup addresses and length."""

    pr_addr: int
    bk_addr: int
    num_subblocks: int


def encode_gc_slot(slot: DecodedGCSlot) -> int:
    """Pack a GC record into one 64-bit word."""
    block_off = (slot.pr_addr >> 8) & BLOCK_OFF_BMASK
    pr_block = (slot.pr_addr >> 26) & BLOCK_ADDR_BMASK
    bk_block = (slot.bk_addr >> 26) & BLOCK_ADDR_BMASK
    num = slot.num_subblocks & SUBBLOCK_NUM_BMASK
    return ((block_off << 46) | (pr_block << 25) | (bk_block << 4) | num) & _MASK64


def decode_gc_slot(value: int) -> DecodedGCSlot:
    """Unpack a 64-bit GC word."""
    value &= _MASK64
    block_off = value >> 46
    pr_block = (value >> 25) & BLOCK_ADDR_BMASK
    bk_block = (value >> 4) & BLOCK_ADDR_BMASK
    return DecodedGCSlot(
        pr_addr=(pr_block << 26) | (block_off << 8),
        bk_addr=(bk_block << 26) | (block_off << 8),
        num_subblocks=value & SUBBLOCK_NUM_BMASK,
    )


def round_up(addr: int, align: int) -> int:
    """Round ``addr`` up to a multiple of ``align``."""
    top = addr + align - 1
    return top - top % align


def roundup_256(length: int) -> int:
    return round_up(length, 256)


def write_latency_file(path: str | Path, latencies: Iterable[int]) -> None:
    """Write one latency per line; nothing is written for an empty sequence."""
    values = list(latencies)
    if not values:
        return
    with open(path, "w", encoding="utf-8") as handle:
        handle.writelines(f"{value}\n" for value in values)