import socket

import pytest

from ddckv.kv_utils import GlobalConfig, KVMsg, KVMsgType, MrInfo, Role
from ddckv.net import SERVER_RECV_TIMEOUT, UdpNetworkManager


def _server_conf():
    return GlobalConfig(role=Role.SERVER, server_id=0, udp_port=0, memory_num=1,
                        memory_ips=("127.0.0.1",))


def _client_conf(port, ips=("127.0.0.1",), memory_num=1):
    return GlobalConfig(role=Role.CLIENT, server_id=1, udp_port=port,
                        memory_num=memory_num, memory_ips=ips)


@pytest.fixture
def pair():
    server = UdpNetworkManager(_server_conf())
    port = server.sock.getsockname()[1]
    client_sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client_sock.settimeout(5)
    client = UdpNetworkManager(_client_conf(port), client_sock)
    yield server, client
    server.close()
    client.close()


def test_server_socket_has_receive_timeout():
    with UdpNetworkManager(_server_conf()) as net:
        assert net.sock.gettimeout() == SERVER_RECV_TIMEOUT
        assert net.num_servers == 1


def test_round_trip_client_to_server_and_back(pair):
    server, client = pair
    request = KVMsg(KVMsgType.REQ_ALLOC, 1)
    client.send_to_server(request, 0)
    received, addr = server.recv_msg()
    assert received.type == KVMsgType.REQ_ALLOC
    assert received.id == 1

    reply = KVMsg(KVMsgType.REP_ALLOC, 0, MrInfo(0x10000000, 7))
    server.send_msg(reply, addr)
    back, _ = client.recv_msg()
    assert back == reply


def test_recv_rejects_malformed_datagram(pair):
    server, client = pair
    client.sock.sendto(b"abc", client.server_addrs[0])
    with pytest.raises(ValueError):
        server.recv_msg()


def test_server_recv_times_out():
    with UdpNetworkManager(_server_conf()) as net:
        with pytest.raises(TimeoutError):
            net.recv_msg()


def test_one_server_id_round_robin():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    conf = _client_conf(9000, ips=("127.0.0.1", "127.0.0.2", "127.0.0.3"), memory_num=3)
    with UdpNetworkManager(conf, sock) as net:
        assert [net.one_server_id(h) for h in range(6)] == [0, 1, 2, 0, 1, 2]
        assert net.server_addrs[1] == ("127.0.0.2", 9000)


def test_client_needs_enough_ips():
    with pytest.raises(ValueError):
        UdpNetworkManager(_client_conf(9000, ips=("127.0.0.1",), memory_num=2))


def test_client_rejects_bad_ip():
    with pytest.raises(ValueError):
        UdpNetworkManager(_client_conf(9000, ips=("not-an-ip",)))


def test_send_to_unknown_server_raises(pair):
    _, client = pair
    with pytest.raises(IndexError):
        client.send_to_server(KVMsg(KVMsgType.REQ_ALLOC), 5)


def test_close_closes_socket():
    net = UdpNetworkManager(_server_conf())
    net.close()
    assert net.sock.fileno() == -1