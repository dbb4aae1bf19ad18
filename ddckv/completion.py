"""Completion bookkeeping for posted remote operations."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Mapping, MutableMapping

from .workreq import Opcode, SendRequest, SendRequestList, group_by_server, merge_send_lists


class CompletionStatus(enum.IntEnum):
    SUCCESS = 0
    LOCAL_LENGTH_ERROR = 1
    LOCAL_PROTECTION_ERROR = 4
    REMOTE_ACCESS_ERROR = 10
    RETRY_EXCEEDED = 12
    GENERAL_ERROR = 21


@dataclass(frozen=True)
class Completion:
    """The outcome of one signaled work request."""

    wr_id: int
    status: CompletionStatus = CompletionStatus.SUCCESS
    opcode: Opcode | None = None

    @property
    def ok(self) -> bool:
        return self.status == CompletionStatus.SUCCESS


class CompletionTable:
    """Completions collected by a poller, claimed by the requests awaiting them.

    The first completion recorded under a wr id is kept until it is claimed.
    """

    def __init__(self) -> None:
        self._entries: dict[int, Completion] = {}
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def __contains__(self, wr_id: object) -> bool:
        with self._cond:
            return wr_id in self._entries

    def record(self, wr_id: int, completion: Completion) -> bool:
        """Store a completion; return False if one is already waiting under ``wr_id``."""
        with self._cond:
            if wr_id in self._entries:
                return False
            self._entries[wr_id] = completion
            self._cond.notify_all()
            return True

    def _claim(self, wait_map: MutableMapping[int, Completion | None]) -> bool:
        for wr_id in list(wait_map):
            completion = self._entries.pop(wr_id, None)
            if completion is not None:
                wait_map[wr_id] = completion
        return all(value is not None for value in wait_map.values())

    def check(self, wait_map: MutableMapping[int, Completion | None]) -> bool:
        """Move any available completions into ``wait_map``; return True once all arrived."""
        with self._cond:
            return self._claim(wait_map)

    def wait(self, wait_map: MutableMapping[int, Completion | None],
             timeout: float | None = None) -> None:
        """Block until every wr id in ``wait_map`` has a completion.

        Raises TimeoutError if ``timeout`` seconds pass first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._claim(wait_map):
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    missing = sorted(k for k, v in wait_map.items() if v is None)
                    raise TimeoutError(f"no completion for wr ids {missing}")
                self._cond.wait(remaining)


def is_all_complete(completion_map: Mapping[int, bool]) -> bool:
    """Return True when every flag in the map is set."""
    return all(completion_map.values())


def plan_posts(
    send_lists: Iterable[SendRequestList], signaled: bool
) -> tuple[dict[int, list[SendRequest]], dict[int, Completion | None]]:
    """Merge request chains per server, in ascending server order.

    Returns the merged chain for each server and, when ``signaled``, a wait map
    holding the wr id of each chain's last (signaled) request.
    """
    posts: dict[int, list[SendRequest]] = {}
    wait_map: dict[int, Completion | None] = {}
    for server_id, lists in group_by_server(send_lists).items():
        merged = merge_send_lists(lists, signaled)
        posts[server_id] = merged
        if signaled:
            wait_map[merged[-1].wr_id] = None
    return posts, wait_map