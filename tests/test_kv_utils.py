import json

import pytest

from ddckv.kv_utils import (
    KVMSG_SIZE,
    SUBBLOCK_NUM_BMASK,
    ConfigError,
    ConnInfo,
    ConnType,
    DecodedGCSlot,
    KVLogHeader,
    KVLogOp,
    KVLogTail,
    KVMsg,
    KVMsgType,
    MrInfo,
    QpInfo,
    Role,
    decode_gc_slot,
    encode_gc_slot,
    load_config,
    parse_config,
    round_up,
    roundup_256,
    write_latency_file,
)


def _sample():
    return {
        "role": "SERVER",
        "conn_type": "ROCE",
        "server_id": 0,
        "udp_port": 2333,
        "memory_num": 1,
        "memory_ips": ["10.0.0.1"],
        "ib_dev_id": 0,
        "ib_port_id": 1,
        "server_base_addr": "0x10000000",
        "server_data_len": 2147483648,
        "block_size": 67108864,
        "subblock_size": 256,
        "client_local_size": 1073741824,
        "num_replication": 1,
    }


def test_kvmsg_header_is_network_order():
    data = KVMsg(KVMsgType.REQ_ALLOC, 7, MrInfo()).pack()
    assert data[:4] == b"\x00\x01\x00\x07"
    assert len(data) == KVMSG_SIZE


def test_kvmsg_alloc_round_trip():
    msg = KVMsg(KVMsgType.REP_ALLOC, 3, MrInfo(0x10000000 + 67108864, 0xABCD))
    assert KVMsg.unpack(msg.pack()) == msg


def test_kvmsg_connect_round_trip():
    qp = QpInfo(qp_num=0x1234, lid=9, port_num=1, gid=bytes(range(16)), gid_idx=3)
    msg = KVMsg(KVMsgType.REP_CONNECT, 1, ConnInfo(qp, MrInfo(0x10000000, 77)))
    assert KVMsg.unpack(msg.pack()) == msg


def test_kvmsg_other_type_has_no_body():
    msg = KVMsg.unpack(KVMsg(KVMsgType.REQ_HEARTBEAT, 2).pack())
    assert msg.body is None and msg.type is KVMsgType.REQ_HEARTBEAT


def test_kvmsg_rejects_bad_size_and_type():
    with pytest.raises(ValueError):
        KVMsg.unpack(b"\x00" * 3)
    bad = b"\x00\xff" + KVMsg(KVMsgType.REQ_ALLOC).pack()[2:]
    with pytest.raises(ValueError):
        KVMsg.unpack(bad)


def test_kvmsg_wrong_body_type():
    with pytest.raises(TypeError):
        KVMsg(KVMsgType.REQ_CONNECT, 0, MrInfo()).pack()


def test_log_header_round_trip():
    header = KVLogHeader(True, 16, 1024)
    assert KVLogHeader.unpack(header.pack()) == header


def test_log_tail_round_trip_and_flags():
    tail = KVLogTail(bytes([1, 2, 3, 4, 5, 6]), bytes(6), 99, 5, KVLogOp.INSERT)
    back = KVLogTail.unpack(tail.pack())
    assert back == tail
    assert back.is_committed() and back.is_insert()
    assert not KVLogTail().is_committed()


def test_gc_slot_round_trip():
    slot = DecodedGCSlot(pr_addr=(5 << 26) | (0x123 << 8), bk_addr=(9 << 26) | (0x123 << 8),
                         num_subblocks=3)
    assert decode_gc_slot(encode_gc_slot(slot)) == slot


def test_gc_slot_masks_subblock_count():
    slot = DecodedGCSlot(0, 0, 0x1F)
    assert decode_gc_slot(encode_gc_slot(slot)).num_subblocks == SUBBLOCK_NUM_BMASK


def test_round_up():
    assert round_up(65, 64) == 128
    assert round_up(64, 64) == 64
    assert roundup_256(257) == 512
    assert roundup_256(512) == 512


def test_parse_config_values_and_defaults():
    conf = parse_config(_sample())
    assert conf.role is Role.SERVER
    assert conf.conn_type is ConnType.ROCE
    assert conf.server_base_addr == 0x10000000
    assert conf.block_size == 67108864
    assert conf.memory_ips == ("10.0.0.1",)
    assert conf.num_coroutines == 1
    assert conf.num_idx_rep == 1
    assert conf.ib_gid_idx == -1
    assert conf.micro_workload_num == 10000
    assert conf.workload_run_time == 10
    assert conf.miss_rate_threash == pytest.approx(0.1)
    assert conf.is_recovery is False


def test_parse_config_other_role_and_numeric_strings():
    data = _sample()
    data.update(role="anything", conn_type="IB", udp_port="2333", is_recovery=1)
    conf = parse_config(data)
    assert conf.role is Role.CLIENT
    assert conf.conn_type is ConnType.IB
    assert conf.udp_port == 2333
    assert conf.is_recovery is True


@pytest.mark.parametrize("key", ["role", "server_id", "memory_ips", "num_replication"])
def test_parse_config_missing_key(key):
    data = _sample()
    del data[key]
    with pytest.raises(ConfigError):
        parse_config(data)


@pytest.mark.parametrize("key,value", [
    ("udp_port", 70000),
    ("server_id", "abc"),
    ("server_base_addr", "10000000"),
    ("block_size", True),
])
def test_parse_config_bad_values(key, value):
    data = _sample()
    data[key] = value
    with pytest.raises(ConfigError):
        parse_config(data)


def test_load_config_from_file(tmp_path):
    path = tmp_path / "conf.json"
    path.write_text(json.dumps(_sample()))
    assert load_config(path) == parse_config(_sample())


def test_load_config_bad_json(tmp_path):
    path = tmp_path / "conf.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(path)


def test_write_latency_file(tmp_path):
    path = tmp_path / "lat.txt"
    write_latency_file(path, [])
    assert not path.exists()
    write_latency_file(path, [10086, 9527])
    assert path.read_text().splitlines() == ["10086", "9527"]