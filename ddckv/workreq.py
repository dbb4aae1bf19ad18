"""Work requests for one-sided remote operations and their id encoding."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

_MASK64 = (1 << 64) - 1


class Opcode(enum.Enum):
    RDMA_WRITE = "write"
    RDMA_READ = "read"
    ATOMIC_CMP_AND_SWP = "cas"
    ATOMIC_FETCH_AND_ADD = "faa"


@dataclass(frozen=True)
class SendRequest:
    """One remote operation to post on a queue pair."""

    wr_id: int
    opcode: Opcode = Opcode.RDMA_WRITE
    remote_addr: int = 0
    rkey: int = 0
    payload: bytes = b""
    length: int = 0
    compare: int = 0
    swap: int = 0
    signaled: bool = False
    inline: bool = False
    fence: bool = False


@dataclass
class SendRequestList:
    """A chain of requests bound for one server."""

    server_id: int
    requests: list[SendRequest] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.requests)


def merge_send_lists(send_lists: Iterable[SendRequestList], signaled: bool) -> list[SendRequest]:
    """Join request chains in order; mark the final request signaled when asked."""
    merged = [request for send_list in send_lists for request in send_list.requests]
    if not merged:
        raise ValueError("no requests to merge")
    if signaled:
        merged[-1] = replace(merged[-1], signaled=True)
    return merged


def gen_wr_id(coro_id: int, dst_server_id: int, req_type_st: int, req_seq: int) -> int:
    """Encode a coroutine id, destination server and request sequence into a wr id."""
    return ((((coro_id << 8) + (dst_server_id & 0xFF)) * 1000) + req_type_st + req_seq) & _MASK64


def wrid_to_fiber_id(wr_id: int) -> int:
    return ((wr_id // 1000) >> 8) & 0xFFFFFFFF


def wrid_to_dst_sid(wr_id: int) -> int:
    return (wr_id // 1000) & 0xFF


def wrid_to_req_seq(wr_id: int) -> int:
    return wr_id % 1000


def all_wrid_finished(wait_map: Mapping[int, object]) -> bool:
    """Return True once every awaited wr id has a completion."""
    return all(completion is not None for completion in wait_map.values())


def group_by_server(send_lists: Iterable[SendRequestList]) -> dict[int, list[SendRequestList]]:
    """Group request chains by server id, with servers in ascending order."""
    groups: dict[int, list[SendRequestList]] = {}
    for send_list in send_lists:
        groups.setdefault(send_list.server_id, []).append(send_list)
    return {server_id: groups[server_id] for server_id in sorted(groups)}