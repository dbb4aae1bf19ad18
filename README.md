# ddckv

Building blocks of a key-value store that keeps its data on remote memory
nodes:

- `ddckv.server` — a **memory-node server** that answers connect, block
  allocation and subtable allocation requests from clients over UDP.
- `ddckv.server_mm` — the node's bookkeeping: how its region splits into a
  client-metadata area, a GC area, a hash-index area and a key-value block
  area, which blocks it owns and which blocks and subtables are handed out.
- `ddckv.hashtable` — the RACE-style hash index layout: 8-byte slots
  (`RaceHashSlot`), 7-slot buckets (`RaceHashBucket`), the 64-bit key hash
  `variable_length_hash`, fingerprints, bucket indices and 40-bit pointers.
- `ddckv.kv_utils` — configuration loading (`load_config`, `parse_config`,
  `GlobalConfig`), control messages (`KVMsg`), log header and tail records
  (`KVLogHeader`, `KVLogTail`) and GC slot encoding.
- `ddckv.blockmap` — client-side block layout: subblocks of a block, the
  static replica placement of blocks (`build_block_map`), free-bitmap entries
  and the longest free run in a bitmap.
- `ddckv.workreq` and `ddckv.completion` — work-request descriptions,
  wr-id encoding, merging request chains per server and a thread-safe table
  of completions that requests can wait on.
- `ddckv.net` — `UdpNetworkManager`, the UDP channel that sends and receives
  fixed-size `KVMsg` datagrams.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a memory-node server

```
ddckv-server server_config.json
```

The command takes exactly one argument, a JSON configuration file, and
only starts configurations whose `role` is `"SERVER"`. The server binds
`0.0.0.0` on `udp_port`, uses a one-second receive timeout and runs until
interrupted. A configuration looks like this:

```json
{
    "role": "SERVER",
    "conn_type": "IB",
    "server_id": 0,
    "udp_port": 2333,
    "memory_num": 2,
    "memory_ips": ["192.0.2.1", "192.0.2.2"],
    "ib_dev_id": 0,
    "ib_port_id": 1,
    "server_base_addr": "0x10000000",
    "server_data_len": 2147483648,
    "block_size": 67108864,
    "subblock_size": 256,
    "client_local_size": 1073741824,
    "num_replication": 1
}
```

Optional keys and their defaults: `ib_gid_idx` (-1), `num_coroutines` (1),
`main_core_id`, `poll_core_id`, `bg_core_id`, `gc_core_id` (0),
`is_recovery` (0), `num_idx_rep` (1), `miss_rate_threash` (0.1),
`workload_run_time` (10) and `micro_workload_num` (10000). A `role` other
than `"SERVER"` means client; a `conn_type` other than `"IB"` means RoCE.
`server_base_addr` must be written as a `0x` hex string. A file that cannot be
read, is not valid JSON, or lacks a required key raises `ConfigError`.

The server answers `REQ_CONNECT` with the node's memory region,
`REQ_ALLOC_SUBTABLE` with the next free subtable and every other request with
the next free block; when nothing is left the reply carries address 0.

## Using the library

Lay out a memory node's region and hand out space:

```python
from ddckv.kv_utils import load_config
from ddckv.server_mm import ServerMM

conf = load_config("server_config.json")
mm = ServerMM(conf.server_base_addr, conf.server_data_len,
              conf.block_size, conf, rkey=1, seed=0)

block = mm.mm_alloc()             # start address of a key-value block
subtable = mm.mm_alloc_subtable() # lowest free subtable
mm.mm_free(block)                 # back to the end of the free queue
```

Blocks are placed round-robin across the memory nodes and each node hands out
the blocks it owns in address order. `mm_alloc`, `mm_alloc_subtable` and
`client_gc_info` raise `OutOfSpaceError` when nothing is left; freeing a block
that is not allocated raises `ValueError`.

Hash index helpers:

```python
from ddckv.hashtable import check_key, compute_fp, variable_length_hash

h = variable_length_hash(b"user:42", 0)
fp = compute_fp(h)
assert check_key(b"user:42", b"user:42")
```

Client-side block layout:

```python
from ddckv.blockmap import BlockLayout

layout = BlockLayout(block_size=64 * 1024 * 1024, subblock_size=256)
layout.aligned_size(300)   # 512
layout.bitmap_size()       # bytes taken by the leading bitmap subblocks
```

Exchanging control messages:

```python
from ddckv.kv_utils import KVMsg, KVMsgType
from ddckv.net import UdpNetworkManager

with UdpNetworkManager(client_conf) as net:
    net.send_to_server(KVMsg(KVMsgType.REQ_ALLOC, 2), 0)
    reply, addr = net.recv_msg()
    print(hex(reply.body.addr))
```

## What the package does not do

- There is no remote-memory transport. `ServerMM` keeps track of addresses
  only; it does not map or register memory, and no bytes of key-value data are
  stored or served. `SendRequest` and `CompletionTable` describe and track
  operations but nothing posts them.
- There is no client that allocates from the memory nodes. `ddckv.blockmap`
  gives the layout and mapping helpers, but no object fetches blocks, keeps a
  free-subblock queue or recovers a client's log.
- There are no key-value operations (insert, search, update, delete) and no
  client command; the only command is `ddckv-server`.