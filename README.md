# codeidx

Building blocks for a codebase indexing service. The package holds the data types that such a service passes around. It also has a Redis-backed cache that can track versions, a message queue on Redis Streams, and distributed locks on Redis. For semantic search over code chunks it has an embeddings client, a reranking client and a vector store on Weaviate.

## Installation

```
pip install codeidx
```

To install it with the test dependencies:

```
pip install "codeidx[test]"
```

## Modules

### `codeidx.types`

This module holds dataclasses and enums for codebases, files and directory trees (`Codebase`, `FileInfo`, `TreeNode`), sync uploads (`SyncMetadataFile`, `SyncFile`, `FileOp`, `CodebaseSyncMessage`), code graphs (`Position`, `GraphNode`, `NodeType`, `SymbolRole`, `SymbolType`, `RelationQueryOptions`) and embeddings (`CodeFile`, `CodeChunk`, `SemanticFileItem`). It also has queue messages (`Message`), listing options (`ListOptions`, `TreeOptions`, `ReadOptions`), `StructureItem` and `TaskStatus`.

- `to_position(ranges)` turns a zero-based range of 3 or 4 numbers into a one-based `Position`. A range of any other length gives an empty `Position`.
- `sync_version_key(sync_id)` returns the Redis key that holds the versions of a sync.
- `SyncMetadataFile.to_json()` and `SyncMetadataFile.from_json(data)` write and read the metadata document. They use its camel-case field names.
- `GraphNode.to_dict()` and `TreeNode.to_dict()` return mappings that are ready to be written as JSON.

### `codeidx.cache`

`RedisStore(client)` wraps a `redis.Redis` client.

- `get(key)` returns the value decoded from JSON. It raises `KeyNotFoundError` when the key is missing.
- `set(key, value, expiration)` stores the value as JSON. It takes seconds or a `timedelta`, and a value that is not positive means the key does not expire.
- `delete(key)` removes the key.
- `add_version(key, version, expiration)` adds a version that expires after the given duration.
- `get_versions(key)` returns the versions that have not expired, highest first. `get_latest_version(key)` returns the highest one. Both raise `VersionNotFoundError` when no such version is left.
- `clean_expired_versions(key)` removes the versions that have expired.

### `codeidx.mq`

`RedisMessageQueue(client, consumer_group)` treats each topic as a Redis stream, and every read goes through the named consumer group.

- `produce(topic, message)` appends the message together with a nanosecond timestamp.
- `consume(topic, read_timeout)` creates the group when it does not exist yet and returns the next `Message`. A `read_timeout` of `0` blocks until a message arrives. `None` does not block. When no message is available it raises `ReadTimeoutError`.
- `ack(topic, group, msg_id)` acknowledges a message.
- `nack(topic, group, msg_id)` appends the message to the stream again and then acknowledges the original.
- `reclaim_pending_messages(stream, idle_time, count)` takes over pending messages that have been idle for at least `idle_time`.
- `create_topic(topic)` does nothing, since a stream is created on its first write. `delete_topic(topic)` deletes the stream.

### `codeidx.lock`

- `new_redis_client(addr, ...)` builds a `redis.Redis` client for `host:port` and pings the server.
- `RedisDistributedLock(client)` provides named locks:
  - `try_lock(key, expiration)` tries once and returns whether it got the lock.
  - `lock(key, expiration, timeout)` keeps retrying with random delays and raises `LockError` if it gives up.
  - `is_locked(key)` reports whether someone holds the lock.
  - `unlock(key)` releases a lock. Only the instance that acquired the lock can release it.

### `codeidx.embedder`

- `Embedder(EmbedderConfig, client=None)` sends requests to `<api_base>/embeddings`, an endpoint compatible with the OpenAI API. It retries on transport errors, on 408, 409 and 429, and on 5xx responses.
  - `embed_code_chunks(chunks)` embeds the chunks in batches of `batch_size` and returns a list of `CodeChunkEmbedding`.
  - `embed_query(query)` returns one vector. It raises `EmptyResponseError` if the endpoint sends back no data.
- `Reranker(RerankerConfig, client=None)` posts the query and the documents to `api_base`. `rerank(query, docs)` returns the docs in the order the service ranks them and sets their `score`.

### `codeidx.vector`

- `WeaviateStore(WeaviateConfig, embedder, reranker, client=None)` talks to Weaviate over its REST and GraphQL API. It creates the chunk class when it is constructed, unless the class already exists. Each codebase is stored in its own tenant, named by `generate_tenant_name(codebase_path)`.
  - `upsert_code_chunks(chunks, options)` embeds the chunks, deletes the chunks already stored for the same files, and writes the new ones.
  - `delete_code_chunks(chunks, options)` deletes by codebase id and file path.
  - `similarity_search(query, num_documents, options)` runs a nearest-vector search.
  - `query(query, top_k, options)` searches up to `max_documents`, reranks the results when the reranker succeeds, and keeps the best `top_k`.
  - `close()` closes the HTTP client if the store created it.
- `new_vector_store("weaviate", config, embedder, reranker)` builds the store. It raises `ValueError` for an unknown type or an empty endpoint.
- `class_schema(class_name)` returns the class definition.
- `check_batch_errors`, `check_graphql_response_error` and `check_batch_delete_errors` raise `VectorStoreError` when the matching response reports an error.

## Examples

```python
from codeidx.types import to_position, sync_version_key

to_position([4, 2, 10])   # Position(start_line=5, start_column=3, end_line=5, end_column=11)
sync_version_key(7)       # "codebase_indexer:sync_version:7"
```

```python
from codeidx.cache import RedisStore
from codeidx.lock import RedisDistributedLock, new_redis_client

client = new_redis_client("localhost:6379")

lock = RedisDistributedLock(client)
if lock.try_lock("job:42", 30):
    try:
        cache = RedisStore(client)
        cache.add_version("codebase:1", 3, 3600)
        print(cache.get_latest_version("codebase:1"))
    finally:
        lock.unlock("job:42")
```

```python
from codeidx.embedder import Embedder, EmbedderConfig, Reranker, RerankerConfig
from codeidx.vector import VectorOptions, WeaviateConfig, new_vector_store

embedder = Embedder(EmbedderConfig(model="text-embedding", api_base="http://localhost:8000/v1",
                                   api_key="placeholder"))
reranker = Reranker(RerankerConfig(model="reranker", api_base="http://localhost:8001/rerank",
                                   api_key="placeholder"))
store = new_vector_store("weaviate", WeaviateConfig(endpoint="localhost:8080", class_name="CodeChunk"),
                         embedder, reranker)
results = store.query("open a file", 5, VectorOptions(codebase_path="/srv/codebases/project"))
store.close()
```

## What the package does not do

- It does not store codebases. It has the `FileInfo`, `TreeNode` and `SyncMetadataFile` types, but nothing that writes, lists, walks, unzips or deletes codebase files on disk or in an object store.
- It has no path, string or JWT helper functions beyond those listed above.
- It has no command-line program and no HTTP server. It is a library to build them on.

## Running the tests

```
pytest
```