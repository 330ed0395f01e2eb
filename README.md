# glomers

Small distributed-systems nodes that speak the Maelstrom JSON protocol over
standard input and output. Each node reads one JSON message per line on
stdin and writes its messages, one JSON object per line, on stdout. Only
the Python standard library is needed.

## Installation

```
pip install .
```

To run the tests, install the `test` extra:

```
pip install ".[test]"
pytest
```

## The nodes

| Command              | Handles                                                            |
|----------------------|--------------------------------------------------------------------|
| `glomers-echo`       | `echo`, answered with `echo_ok` carrying the same body.            |
| `glomers-unique-ids` | `generate`, answered with `generate_ok` and a unique `id`.         |
| `glomers-broadcast`  | `broadcast`, `read`, `topology`, `gossip`.                         |
| `glomers-counter`    | `add`, `read`, `replicate`, `full` (a grow-only counter).          |
| `glomers-kafka`      | `send`, `poll`, `commit_offsets`, `list_committed_offsets`.        |
| `glomers-key-value`  | `txn`, plus the cluster's `ask_vote` and `append_entries`.         |

Every node first receives an `init` message giving its own id
(`node_id`) and the ids of all nodes (`node_ids`); the runtime answers it
with `init_ok`. Its neighbours are all the other nodes.

Requests of a type a node does not handle are answered with an `error`
reply of code 10 (not supported), except by `glomers-key-value`, which
passes every unknown type to its cluster code; a type that is not a
cluster message there gets an `error` reply of code 13. If a handler
raises, the request is answered with an `error` reply (code 13, or the
code of an `RPCError`). Requests without a `msg_id` are never answered.

### Options

- `glomers-broadcast --gossip-interval SECONDS` (default `0.1`): how often
  the full set of values is sent to one random neighbour.
- `glomers-counter --gossip-period SECONDS` (default `1.0`): how often the
  node's own count is sent to one random neighbour.
- `glomers-key-value --meta-dir DIR` (default `./DATA`): where the Raft
  state is kept.

### An echo session

Start `glomers-echo` and write on its standard input:

```
{"src": "c1", "dest": "n1", "body": {"type": "init", "msg_id": 1, "node_id": "n1", "node_ids": ["n1"]}}
{"src": "c1", "dest": "n1", "body": {"type": "echo", "msg_id": 2, "echo": "hello"}}
```

It writes an `init_ok` reply and then:

```
{"src": "n1", "dest": "c1", "body": {"type": "echo_ok", "msg_id": 2, "echo": "hello", "in_reply_to": 2}}
```

The `msg_id` of a reply is taken from the node's own counter.

### Unique ids

An id is built from the current time in milliseconds (41 bits), a
per-node counter, and the low ten bits of the CRC-32 of the node id, and
is returned as a decimal string.

### Broadcast

A `broadcast` value not seen before is stored and sent on to the node's
neighbours from the last `topology` message. `read` returns all stored
values, sorted. After `init`, a background task gossips the whole value
set to a random neighbour at the configured interval; a node alone in its
cluster does not gossip.

### Counter

`add` adds `delta` to this node's own count and sends a `replicate` with
the same delta to every neighbour. `read` answers with the sum of all
counts. `full` messages carry another node's count and keep the larger
of the known and the received value.

### Log service

Each key has an append-only log kept in the `lin-kv` service. A `send` is
routed to the node that owns the key (a hash of the key over the sorted
node ids); that node appends the value and answers with its offset.
`poll` returns `[offset, value]` pairs at or after the requested offsets;
`commit_offsets` records offsets and never moves one backwards;
`list_committed_offsets` answers with `0` for keys never committed.

### Key-value store

`glomers-key-value` accepts transactions such as

```
{"type": "txn", "msg_id": 3, "txn": [["w", 1, 10], ["r", 1, null]]}
```

On `init` the node restores its Raft state and waits until a leader is
known before answering. Read-only transactions are answered from the
node's own state machine. Transactions with a write are appended to the
log by the leader and answered with `txn_ok` once committed and applied;
a follower forwards them to the leader it knows of, and answers with an
error of code 11 when it knows of none.

Each node keeps its term, vote and log in `metadata.dat` inside the meta
directory: a 4096-byte header page followed by one 128-byte record per
log entry. The file is read back when the node starts again.

## Using the pieces from Python

- `glomers.runtime.Runtime(handler)` reads messages, dispatches them to
  `handler.process(runtime, message)` and offers `send`, `reply`,
  `reply_ok`, `not_supported`, `call` (awaits the reply, raising
  `RPCError` on an error reply or a timeout) and `call_async`.
  `glomers.runtime.Message` is the message envelope.
- `glomers.runtime.LinKV` is a client for the `lin-kv` service; `get`
  raises `KeyError` for a missing key.
- `glomers.kafka` has `LogEntry`, `parse_entries`, `format_entries`,
  `route_key` and the `Kafka` class, which works on any object with async
  `get` and `put`.
- `glomers.keyvalue.common` has the `Read` and `Write` operations and
  their JSON and binary encodings; `glomers.keyvalue.state.StateMachine`
  applies transactions; `glomers.keyvalue.persistence.Persistence` reads
  and writes the metadata file; `glomers.keyvalue.raft.Cluster` runs the
  replication.

## What is not included

- The network harness that starts the nodes, delivers their messages and
  checks the results is not part of this package, nor is the `lin-kv`
  service that `glomers-kafka` stores its logs in.
- The key-value store never compacts or snapshots its log, and a log
  entry's encoded operations must fit in 112 bytes; a larger transaction
  is rejected with an error.