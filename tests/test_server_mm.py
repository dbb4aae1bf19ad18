import pytest

from ddckv.hashtable import RACE_HASH_INIT_LOCAL_DEPTH, RACE_HASH_MAX_SUBTABLE_NUM, SUBTABLE_LEN
from ddckv.kv_utils import GlobalConfig, MrInfo, roundup_256
from ddckv.server_mm import OutOfSpaceError, ServerMM

BASE = 0x10000000
DATA_LEN = 2147483648
BLOCK = 67108864


def _mm(server_id=0, memory_num=1, num_replication=1, seed=7, rkey=42):
    conf = GlobalConfig(server_id=server_id, memory_num=memory_num,
                        num_replication=num_replication)
    return ServerMM(BASE, DATA_LEN, BLOCK, conf, rkey=rkey, seed=seed)


def test_alloc_blocks_in_order():
    mm = _mm()
    for i in range(10):
        assert mm.mm_alloc() == mm.kv_area_addr() + i * BLOCK


def test_alloc_subtables_in_order():
    mm = _mm()
    for i in range(32):
        assert mm.mm_alloc_subtable() == mm.subtable_st_addr() + i * roundup_256(SUBTABLE_LEN)


def test_alloc_until_exhausted():
    mm = _mm()
    blocks = [mm.mm_alloc() for _ in range(mm.num_blocks)]
    assert len(set(blocks)) == mm.num_blocks
    assert max(blocks) + BLOCK <= BASE + DATA_LEN
    with pytest.raises(OutOfSpaceError):
        mm.mm_alloc()


def test_free_returns_block_to_queue():
    mm = _mm()
    blocks = [mm.mm_alloc() for _ in range(mm.num_blocks)]
    mm.mm_free(blocks[3])
    assert mm.mm_alloc() == blocks[3]


def test_free_errors():
    mm = _mm()
    with pytest.raises(ValueError):
        mm.mm_free(mm.kv_area_addr())
    addr = mm.mm_alloc()
    mm.mm_free(addr)
    with pytest.raises(ValueError):
        mm.mm_free(addr)


def test_subtables_exhaust():
    mm = _mm()
    addrs = [mm.mm_alloc_subtable() for _ in range(mm.num_subtables)]
    assert len(set(addrs)) == mm.num_subtables
    assert mm.num_subtables >= RACE_HASH_MAX_SUBTABLE_NUM
    with pytest.raises(OutOfSpaceError):
        mm.mm_alloc_subtable()


def test_mr_info_and_gc_info():
    mm = _mm(rkey=42)
    assert mm.mr_info() == MrInfo(BASE, 42)
    with pytest.raises(OutOfSpaceError):
        mm.client_gc_info(0)


def test_root_layout():
    mm = _mm(seed=1234)
    root = mm.root
    assert root.seed == 1234
    assert root.subtable_offset + BASE == mm.subtable_st_addr()
    assert root.kv_offset + BASE == mm.kv_area_addr()
    assert root.kv_offset + root.kv_len == DATA_LEN
    assert root.prefix_num == RACE_HASH_MAX_SUBTABLE_NUM
    assert root.lock == 0


def test_initial_bucket():
    mm = _mm()
    bucket = mm.initial_bucket(4)
    assert bucket.local_depth == RACE_HASH_INIT_LOCAL_DEPTH
    assert bucket.prefix == 4
    with pytest.raises(IndexError):
        mm.initial_bucket(mm.num_subtables)


def test_too_small_region_rejected():
    with pytest.raises(ValueError):
        ServerMM(BASE, BLOCK, BLOCK, GlobalConfig())