"""Memory-node server answering connect and allocation requests."""

from __future__ import annotations

import sys
import threading

from .kv_utils import (
    ConfigError,
    ConnInfo,
    GlobalConfig,
    KVMsg,
    KVMsgType,
    MrInfo,
    Role,
    load_config,
)
from .net import UdpNetworkManager
from .server_mm import OutOfSpaceError, ServerMM


class Server:
    """Serves control requests of clients for one memory node."""

    def __init__(self, conf: GlobalConfig, network: UdpNetworkManager | None = None,
                 memory: ServerMM | None = None) -> None:
        self.server_id = conf.server_id
        self.network = network if network is not None else UdpNetworkManager(conf)
        self.memory = memory if memory is not None else ServerMM(
            conf.server_base_addr, conf.server_data_len, conf.block_size, conf)
        self._stop = threading.Event()

    def on_connect(self, request: KVMsg) -> KVMsg:
        """Reply with the memory region of this node."""
        return KVMsg(KVMsgType.REP_CONNECT, self.server_id,
                     ConnInfo(gc_info=self.memory.mr_info()))

    def on_alloc(self, request: KVMsg) -> KVMsg:
        """Reply with a fresh block, or address 0 when none is left."""
        try:
            addr = self.memory.mm_alloc()
        except OutOfSpaceError:
            addr = 0
        return KVMsg(KVMsgType.REP_ALLOC, self.network.server_id,
                     MrInfo(addr, self.memory.rkey))

    def on_alloc_subtable(self, request: KVMsg) -> KVMsg:
        """Reply with a fresh subtable, or address 0 when none is left."""
        try:
            addr = self.memory.mm_alloc_subtable()
        except OutOfSpaceError:
            addr = 0
        return KVMsg(KVMsgType.REP_ALLOC_SUBTABLE, self.network.server_id,
                     MrInfo(addr, self.memory.rkey))

    def handle(self, request: KVMsg) -> KVMsg:
        """Return the reply to ``request``; unknown requests count as block allocation."""
        if request.type == KVMsgType.REQ_CONNECT:
            return self.on_connect(request)
        if request.type == KVMsgType.REQ_ALLOC_SUBTABLE:
            return self.on_alloc_subtable(request)
        return self.on_alloc(request)

    def serve(self) -> None:
        """Answer requests until stop() is called."""
        while not self._stop.is_set():
            try:
                request, addr = self.network.recv_msg()
            except (TimeoutError, ValueError):
                continue
            except OSError:
                if self._stop.is_set():
                    break
                raise
            if self._stop.is_set():
                break
            reply = self.handle(request)
            try:
                self.network.send_msg(reply, addr)
            except OSError:
                continue

    def stop(self) -> None:
        self._stop.set()

    def kv_area_addr(self) -> int:
        return self.memory.kv_area_addr()

    def subtable_st_addr(self) -> int:
        return self.memory.subtable_st_addr()


def main(argv: list[str] | None = None) -> int:
    """Start a memory-node server from a JSON configuration file."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: ddckv CONFIG", file=sys.stderr)
        return 2
    try:
        conf = load_config(args[0])
    except ConfigError as exc:
        print(exc, file=sys.stderr)
        return 1
    if conf.role != Role.SERVER:
        print("only the SERVER role can be started by this command", file=sys.stderr)
        return 2

    server = Server(conf)
    try:
        server.serve()
    except KeyboardInterrupt:
        server.stop()
    finally:
        server.network.close()
    return 0