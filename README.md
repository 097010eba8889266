# orbitkit

Replicated data stores built on an append-only log of operations. Every
write is recorded as an `Operation` appended to the store's log. An index
folds the log into the current view, and a `Replicator` fetches and joins
entries that other stores announce.

## Quick start

```python
from orbitkit.basestore import StoreOptions
from orbitkit.kvstore import KeyValueStore

store = KeyValueStore("/orbitdb/example/settings", StoreOptions(identity="alice"))
store.put("theme", b"dark")
store.get("theme")        # b"dark"
store.delete("theme")
store.get("theme")        # None
store.db_name             # "settings"
store.close()
```

A store is created from an address string and a `StoreOptions`. The
options hold the writer's `identity` (required), the `storage` mapping
where entries are kept under their hash, the `cache` mapping where local
state is kept, and tuning such as `reference_count`, `max_history`,
`replication_concurrency` and `flush_interval`. By default only the
store's own identity may write. Pass `write_access` to list the allowed
identities (`"*"` lets anyone write), or pass your own `access_controller`.

## Stores

- `orbitkit.eventlog.EventLogStore` is an append-only event log. `add`
  appends a value. `list` and `stream` read the log back, oldest first,
  and filter it with `StreamOptions`, which has the fields `gt`, `gte`,
  `lt`, `lte` and `amount`. If `amount` is `None` or `0`, one entry is
  returned. A negative `amount` returns all entries. `get(hash)` returns
  a single operation and raises `LookupError` if no entry has that hash.
- `orbitkit.kvstore.KeyValueStore` is a key-value store with `put`,
  `get`, `delete` and `all`. For each key the latest operation wins, and
  a delete removes the key.
- `orbitkit.documentstore.DocumentStore` is a document store. The key of
  each document is taken from the document itself.
  - Write with `put`, `put_batch` (one operation per document) and
    `put_all` (a single operation).
  - Remove with `delete`, which raises `LookupError` if the key is absent.
  - Read with `get`, which does exact, partial or case-insensitive
    lookups through `GetOptions(case_insensitive=..., partial_matches=...)`,
    and with `query(filter)`.
  - Without a `DocumentStoreOptions`, it stores dicts as JSON keyed by
    their `"_id"` field. This is the same as
    `default_store_options_for_map("_id")`.
  - `map_key_extractor(field)` builds the key function for mappings.

```python
from orbitkit.basestore import StoreOptions
from orbitkit.eventlog import EventLogStore, StreamOptions

log = EventLogStore("/orbitdb/example/events", StoreOptions(identity="alice"))
log.add(b"hello0")
log.add(b"hello1")
[op.value for op in log.list(StreamOptions(amount=-1))]   # [b"hello0", b"hello1"]
```

## Common store operations

All stores share the operations of `orbitkit.basestore.BaseStore`:

- `load(amount)` loads the heads recorded in the cache and up to `amount`
  entries of their history from storage.
- `sync(heads)` does the following, in order:
  - it checks each head against the access controller and drops the
    heads that are not allowed;
  - it writes the allowed heads to storage;
  - it raises `ValueError` when a head's hash does not match its content;
  - it hands the hashes to the replicator.

  Joining the fetched entries happens on a background thread, so the
  data appears shortly after the call returns.
- `load_more_from(amount, cids)` replicates the entries with the given
  hashes.
- `save_snapshot(store)` is a module function. It writes the whole log as
  one blob in storage, records the blob in the cache and returns its hash.
- `load_from_snapshot()` restores the log from that blob. It raises
  `LookupError` when no snapshot is recorded.
- `add_operation(op, on_progress)` appends an operation and updates the
  index.
- `close()` stops replication, resets statistics, closes subscriptions
  and calls the cache's `close` method if it has one.
- `drop()` closes the store, destroys its cache (using
  `StoreOptions.cache_destroy`, or by clearing the mapping) and resets
  the log and index.

Two stores can exchange entries when they share the same `storage`
mapping. Reopening a store with the same `storage` and `cache` and
calling `load()` brings its entries back.

## Events

Stores, replicators and channels are `orbitkit.events.EventEmitter`s.
`subscribe()` returns a subscription. You can iterate over it or call
`get(timeout)` on it, and it can be used as a context manager. Stores
emit the following events:

- `EventWrite`
- `EventLoad`
- `EventReady`
- `EventReplicate`
- `EventReplicateProgress`
- `EventReplicated`

The counters in `orbitkit.replication.ReplicationInfo` track the progress
of replication.

## Operations

```python
from orbitkit.operation import Operation, parse_operation

op = Operation(key="greeting", op="PUT", value=b"hello")
payload = op.marshal()          # compact JSON bytes, empty fields omitted
```

`parse_operation(entry)` decodes the operation in a log entry's
`payload`. `operation_with_documents(key, op, docs)` builds the batched
form that `put_all` uses.

## Messaging between peers

- `orbitkit.coreapi_pubsub.CoreAPIPubSub` and
  `orbitkit.raw_pubsub.RawPubSub` hand out one topic object per name
  through `topic_subscribe`. A topic offers:
  - `publish` and `peers`;
  - `watch_peers`, which yields `EventPubSubJoin` and `EventPubSubLeave`;
  - `watch_messages`, which yields `EventPubSubMessage` for messages from
    other peers.
- `orbitkit.oneonone.new_channel_factory(node)` creates channels between
  exactly two peers over a shared pubsub topic, named by
  `channel_id(self_id, peer_id)`.
- `orbitkit.directchannel.init_direct_channel_factory(host)` creates
  channels over streams between two hosts. Each payload is framed by a
  two-byte length.

Both kinds of channel have `connect`, `send` and `close`, and emit
`EventPubSubPayload` to their subscribers. The node, host or router
objects they work over are supplied by the caller; the module docstrings
describe the methods those objects need.

## Database manifests

`orbitkit.manifest.Manifest` describes a database's name, type and access
controller, and round-trips through CBOR with `to_cbor` and `from_cbor`.
`create_db_manifest(writer, name, db_type, access_controller_address)`
passes the manifest's CBOR bytes to `writer` and returns what the writer
returns.

## What this package does not do

- There is no network layer, peer discovery or block exchange of its own.
  Messaging works only over objects you provide. Replication reads
  entries only from the `storage` mapping a store was given.
- Storage and cache are plain mutable mappings, in-memory dicts by
  default. The package does not persist anything to disk itself.
- Entry hashes are SHA-256 digests of the entry's JSON content.
  Identities are plain strings, and entries are not signed.
- There is no top-level database manager that creates or opens stores by
  name, and no address parsing or command-line tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```