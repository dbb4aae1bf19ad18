"""UDP control channel between clients and memory nodes."""

from __future__ import annotations

import socket

from .kv_utils import KVMSG_SIZE, GlobalConfig, KVMsg, Role

SERVER_RECV_TIMEOUT = 1.0


def _check_ip(ip: str) -> str:
    try:
        socket.inet_aton(ip)
    except OSError as exc:
        raise ValueError(f"bad IPv4 address: {ip!r}") from exc
    return ip


class UdpNetworkManager:
    """Sends and receives fixed-size control messages over UDP.

    A client knows the address of every memory node. A server listens on its
    UDP port with a one-second receive timeout.
    """

    def __init__(self, conf: GlobalConfig, sock: socket.socket | None = None) -> None:
        self.role = conf.role
        self.server_id = conf.server_id
        self.conn_type = conf.conn_type
        self.udp_port = conf.udp_port

        if conf.role == Role.CLIENT:
            if len(conf.memory_ips) < conf.memory_num:
                raise ValueError(
                    f"memory_num is {conf.memory_num} but only "
                    f"{len(conf.memory_ips)} memory ips are given")
            self.server_addrs = tuple(
                (_check_ip(ip), conf.udp_port) for ip in conf.memory_ips[:conf.memory_num])
            self.sock = sock if sock is not None else socket.socket(
                socket.AF_INET, socket.SOCK_DGRAM)
        else:
            self.server_addrs = (("0.0.0.0", conf.udp_port),)
            if sock is None:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                sock.settimeout(SERVER_RECV_TIMEOUT)
                try:
                    sock.bind(self.server_addrs[0])
                except OSError:
                    sock.close()
                    raise
            self.sock = sock

    @property
    def num_servers(self) -> int:
        return len(self.server_addrs)

    def __enter__(self) -> "UdpNetworkManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def one_server_id(self, hint: int) -> int:
        """Pick a server id round-robin from ``hint``."""
        if not self.server_addrs:
            raise ValueError("no memory servers configured")
        return hint % self.num_servers

    def send_msg(self, msg: KVMsg, addr: tuple[str, int]) -> None:
        """Send one message to ``addr``."""
        data = msg.pack()
        sent = self.sock.sendto(data, addr)
        if sent != len(data):
            raise OSError(f"short send: {sent} of {len(data)} bytes")

    def send_to_server(self, msg: KVMsg, server_id: int) -> None:
        """Send one message to the memory node with ``server_id``."""
        if not 0 <= server_id < self.num_servers:
            raise IndexError(f"no server {server_id}")
        self.send_msg(msg, self.server_addrs[server_id])

    def recv_msg(self) -> tuple[KVMsg, tuple[str, int]]:
        """Receive one message and the address it came from.

        Raises TimeoutError when the socket timeout passes and ValueError when
        the datagram is not a well-formed message.
        """
        data, addr = self.sock.recvfrom(KVMSG_SIZE + 1)
        return KVMsg.unpack(data), addr

    def close(self) -> None:
        self.sock.close()