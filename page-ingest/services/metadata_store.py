#!/usr/bin/env python3
"""
Metadata store for batches, collections and page units.

Rollup counters are only ever changed by single atomic operations that check
the item, bump the counter and hand back the post-increment values, so the
"reached total" test can run in any worker process without a shared lock.
RedisMetadataStore does this with Lua scripts; InMemoryMetadataStore mirrors
the same contract under a threading lock for single-process development.
"""
import copy
import json
import threading
import time
from dataclasses import asdict
from typing import Dict, Iterable, List, Optional, Tuple

import redis
from config.settings import REDIS_HOST, REDIS_KEY_PREFIX, REDIS_PORT
from models.data_models import (
    Batch,
    BatchCounters,
    BatchItem,
    BatchItemStatus,
    BatchStatus,
    Collection,
    PageUnit,
    utcnow,
)

_TERMINAL_ITEM = (BatchItemStatus.COMPLETED.value, BatchItemStatus.FAILED.value)


class MetadataStore:
    """Interface shared by the Redis and in-memory stores."""

    # Page units
    def save_page(self, page: PageUnit) -> None:
        raise NotImplementedError()

    def get_page(self, page_id: str) -> Optional[PageUnit]:
        raise NotImplementedError()

    def delete_page(self, page_id: str) -> None:
        raise NotImplementedError()

    # Counters
    def increment(self, key: str, field: str, by: int = 1) -> int:
        """Atomically add `by` to a numeric field of "batch:<id>" or "collection:<id>"; returns the new value."""
        raise NotImplementedError()

    # Batches
    def create_batch(self, batch: Batch) -> None:
        raise NotImplementedError()

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        raise NotImplementedError()

    def list_batches(self, limit: int) -> List[Batch]:
        raise NotImplementedError()

    def add_batch_item(self, batch_id: str, item: BatchItem) -> None:
        raise NotImplementedError()

    def transition_batch_status(self, batch_id: str, new_status: BatchStatus, allowed_from: Iterable[BatchStatus]) -> bool:
        """Set the status only if the current one is in allowed_from."""
        raise NotImplementedError()

    def complete_batch_item(self, batch_id: str, page_id: str, succeeded: bool, error: Optional[str] = None) -> Tuple[str, Optional[BatchCounters]]:
        """Atomically finish one item and bump completed_files or failed_files.

        Returns ("ok", counters) with the post-increment counters, or a reason
        string ("no_batch", "no_item", "already_done", "overflow") and None when
        the completion must not be counted.
        """
        raise NotImplementedError()

    def claim_batch_terminal(self, batch_id: str, status: BatchStatus) -> bool:
        """One-shot: the first caller wins and sets the terminal status."""
        raise NotImplementedError()

    # Collections
    def create_collection(self, collection: Collection) -> None:
        raise NotImplementedError()

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        raise NotImplementedError()

    def list_collections(self) -> List[Collection]:
        """All collections, newest first."""
        raise NotImplementedError()

    def update_collection(self, collection_id: str, **fields) -> None:
        raise NotImplementedError()

    def record_page_completion(self, collection_id: str, page_id: str) -> Tuple[str, int, int]:
        """Count a page's recognition once.

        Returns (reason, ocr_completed_pages, total_pages) after the increment;
        reason is "ok", "no_collection" or "already_counted".
        """
        raise NotImplementedError()

    def claim_collection_completion(self, collection_id: str) -> bool:
        raise NotImplementedError()

    def replace_collection_pages(self, collection_id: str, page_ids: List[str]) -> Tuple[int, int]:
        """Set the ordered page list and total_pages in one step.

        Pages no longer listed are dropped from the counted set and
        ocr_completed_pages becomes the number of listed pages already counted.
        Returns (ocr_completed_pages, total_pages).
        """
        raise NotImplementedError()


class InMemoryMetadataStore(MetadataStore):
    """Process-local store. Every public method runs under one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._pages: Dict[str, PageUnit] = {}
        self._batches: Dict[str, Batch] = {}
        self._batch_claims: set = set()
        self._collections: Dict[str, Collection] = {}
        self._counted: Dict[str, set] = {}
        self._collection_claims: set = set()

    def save_page(self, page: PageUnit) -> None:
        with self._lock:
            self._pages[page.page_id] = copy.deepcopy(page)

    def get_page(self, page_id: str) -> Optional[PageUnit]:
        with self._lock:
            page = self._pages.get(page_id)
            return copy.deepcopy(page) if page else None

    def delete_page(self, page_id: str) -> None:
        with self._lock:
            self._pages.pop(page_id, None)

    def increment(self, key: str, field: str, by: int = 1) -> int:
        kind, _, record_id = key.partition(":")
        with self._lock:
            records = {"batch": self._batches, "collection": self._collections}.get(kind, {})
            record = records.get(record_id)
            if record is None:
                raise KeyError(key)
            value = int(getattr(record, field)) + by
            setattr(record, field, value)
            record.updated_at = utcnow()
            return value

    def create_batch(self, batch: Batch) -> None:
        with self._lock:
            self._batches[batch.batch_id] = copy.deepcopy(batch)

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    def list_batches(self, limit: int) -> List[Batch]:
        with self._lock:
            batches = sorted(self._batches.values(), key=lambda b: b.created_at, reverse=True)
            return [copy.deepcopy(b) for b in batches[:limit]]

    def add_batch_item(self, batch_id: str, item: BatchItem) -> None:
        with self._lock:
            batch = self._batches[batch_id]
            batch.items.append(copy.deepcopy(item))
            batch.updated_at = utcnow()

    def transition_batch_status(self, batch_id: str, new_status: BatchStatus, allowed_from: Iterable[BatchStatus]) -> bool:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status not in set(allowed_from):
                return False
            batch.status = new_status
            batch.updated_at = utcnow()
            return True

    def complete_batch_item(self, batch_id: str, page_id: str, succeeded: bool, error: Optional[str] = None) -> Tuple[str, Optional[BatchCounters]]:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return "no_batch", None
            item = next((i for i in batch.items if i.page_id == page_id), None)
            if item is None:
                return "no_item", None
            if item.status.value in _TERMINAL_ITEM:
                return "already_done", None
            if batch.completed_files + batch.failed_files >= batch.total_files:
                return "overflow", None

            now = utcnow()
            item.status = BatchItemStatus.COMPLETED if succeeded else BatchItemStatus.FAILED
            item.ocr_completed_at = now
            if error:
                item.error = error
            if succeeded:
                batch.completed_files += 1
            else:
                batch.failed_files += 1
            batch.updated_at = now
            return "ok", BatchCounters(batch.completed_files, batch.failed_files, batch.total_files)

    def claim_batch_terminal(self, batch_id: str, status: BatchStatus) -> bool:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch_id in self._batch_claims:
                return False
            self._batch_claims.add(batch_id)
            now = utcnow()
            if batch.status != BatchStatus.CANCELLED:
                batch.status = status
            batch.completed_at = now
            batch.updated_at = now
            return True

    def create_collection(self, collection: Collection) -> None:
        with self._lock:
            self._collections[collection.collection_id] = copy.deepcopy(collection)
            self._counted[collection.collection_id] = set()

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        with self._lock:
            collection = self._collections.get(collection_id)
            return copy.deepcopy(collection) if collection else None

    def list_collections(self) -> List[Collection]:
        with self._lock:
            collections = sorted(self._collections.values(), key=lambda c: c.created_at, reverse=True)
            return [copy.deepcopy(c) for c in collections]

    def update_collection(self, collection_id: str, **fields) -> None:
        with self._lock:
            collection = self._collections[collection_id]
            for name, value in fields.items():
                setattr(collection, name, copy.deepcopy(value))
            collection.updated_at = utcnow()

    def record_page_completion(self, collection_id: str, page_id: str) -> Tuple[str, int, int]:
        with self._lock:
            collection = self._collections.get(collection_id)
            if collection is None:
                return "no_collection", 0, 0
            counted = self._counted[collection_id]
            if page_id in counted:
                return "already_counted", collection.ocr_completed_pages, collection.total_pages
            counted.add(page_id)
            collection.ocr_completed_pages += 1
            collection.updated_at = utcnow()
            return "ok", collection.ocr_completed_pages, collection.total_pages

    def claim_collection_completion(self, collection_id: str) -> bool:
        with self._lock:
            if collection_id not in self._collections or collection_id in self._collection_claims:
                return False
            self._collection_claims.add(collection_id)
            return True

    def replace_collection_pages(self, collection_id: str, page_ids: List[str]) -> Tuple[int, int]:
        with self._lock:
            collection = self._collections[collection_id]
            counted = self._counted[collection_id]
            counted.intersection_update(page_ids)
            collection.page_ids = list(page_ids)
            collection.total_pages = len(page_ids)
            collection.ocr_completed_pages = len(counted)
            collection.updated_at = utcnow()
            return collection.ocr_completed_pages, collection.total_pages


# Lua scripts: each runs atomically inside Redis.

COMPLETE_BATCH_ITEM = """
-- KEYS[1] batch hash, KEYS[2] item hash
-- ARGV[1] new item status, ARGV[2] counter field, ARGV[3] error, ARGV[4] timestamp
if redis.call("EXISTS", KEYS[1]) == 0 then
    return {"no_batch"}
end
local status = redis.call("HGET", KEYS[2], "status")
if not status then
    return {"no_item"}
end
if status == "completed" or status == "failed" then
    return {"already_done"}
end
local counts = redis.call("HMGET", KEYS[1], "completed_files", "failed_files", "total_files")
if tonumber(counts[1]) + tonumber(counts[2]) >= tonumber(counts[3]) then
    return {"overflow"}
end
redis.call("HSET", KEYS[2], "status", ARGV[1], "ocr_completed_at", ARGV[4])
if ARGV[3] ~= "" then
    redis.call("HSET", KEYS[2], "error", ARGV[3])
end
redis.call("HINCRBY", KEYS[1], ARGV[2], 1)
redis.call("HSET", KEYS[1], "updated_at", ARGV[4])
counts = redis.call("HMGET", KEYS[1], "completed_files", "failed_files", "total_files")
return {"ok", counts[1], counts[2], counts[3]}
"""

TRANSITION_STATUS = """
-- KEYS[1] batch hash; ARGV[1] new status, ARGV[2] timestamp, ARGV[3..] allowed current statuses
local current = redis.call("HGET", KEYS[1], "status")
if not current then
    return 0
end
for i = 3, #ARGV do
    if current == ARGV[i] then
        redis.call("HSET", KEYS[1], "status", ARGV[1], "updated_at", ARGV[2])
        return 1
    end
end
return 0
"""

CLAIM_BATCH_TERMINAL = """
-- KEYS[1] batch hash; ARGV[1] terminal status, ARGV[2] timestamp
if redis.call("EXISTS", KEYS[1]) == 0 then
    return 0
end
if redis.call("HSETNX", KEYS[1], "terminal_claimed", "1") == 0 then
    return 0
end
if redis.call("HGET", KEYS[1], "status") ~= "cancelled" then
    redis.call("HSET", KEYS[1], "status", ARGV[1])
end
redis.call("HSET", KEYS[1], "completed_at", ARGV[2], "updated_at", ARGV[2])
return 1
"""

RECORD_PAGE_COMPLETION = """
-- KEYS[1] collection hash, KEYS[2] counted-pages set; ARGV[1] page_id, ARGV[2] timestamp
if redis.call("EXISTS", KEYS[1]) == 0 then
    return {"no_collection", 0, 0}
end
if redis.call("SADD", KEYS[2], ARGV[1]) == 0 then
    local c = redis.call("HMGET", KEYS[1], "ocr_completed_pages", "total_pages")
    return {"already_counted", c[1], c[2]}
end
local n = redis.call("HINCRBY", KEYS[1], "ocr_completed_pages", 1)
redis.call("HSET", KEYS[1], "updated_at", ARGV[2])
return {"ok", n, redis.call("HGET", KEYS[1], "total_pages")}
"""

REPLACE_COLLECTION_PAGES = """
-- KEYS[1] collection hash, KEYS[2] counted-pages set
-- ARGV[1] page_ids JSON, ARGV[2] timestamp, ARGV[3..] the same page ids
local keep = {}
local counted = 0
for i = 3, #ARGV do
    keep[ARGV[i]] = true
    if redis.call("SISMEMBER", KEYS[2], ARGV[i]) == 1 then
        counted = counted + 1
    end
end
for _, member in ipairs(redis.call("SMEMBERS", KEYS[2])) do
    if not keep[member] then
        redis.call("SREM", KEYS[2], member)
    end
end
local total = #ARGV - 2
redis.call("HSET", KEYS[1], "page_ids", ARGV[1], "total_pages", tostring(total),
    "ocr_completed_pages", tostring(counted), "updated_at", ARGV[2])
return {counted, total}
"""

# Collection fields stored as JSON inside the hash
_JSON_FIELDS = ("page_ids", "accuracy_metrics")
_INT_FIELDS = ("total_pages", "ocr_completed_pages", "accuracy_score", "total_files", "completed_files", "failed_files")


def _encode_fields(data: Dict) -> Tuple[Dict[str, str], List[str]]:
    """Split a record into hash fields to set and fields to delete (None values)."""
    mapping, removed = {}, []
    for name, value in data.items():
        if value is None:
            removed.append(name)
        elif name in _JSON_FIELDS:
            mapping[name] = json.dumps(value)
        else:
            mapping[name] = str(value)
    return mapping, removed


def _decode_fields(raw: Dict[str, str]) -> Dict:
    data = {}
    for name, value in raw.items():
        if name in _JSON_FIELDS:
            data[name] = json.loads(value)
        elif name in _INT_FIELDS:
            data[name] = int(value)
        else:
            data[name] = value
    return data


class RedisMetadataStore(MetadataStore):
    """Redis-backed store; safe to share between API and worker processes."""

    def __init__(self, client: redis.Redis = None, prefix: str = REDIS_KEY_PREFIX):
        self.client = client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, decode_responses=True)
        self.prefix = prefix
        self._complete_item = self.client.register_script(COMPLETE_BATCH_ITEM)
        self._transition_status = self.client.register_script(TRANSITION_STATUS)
        self._claim_terminal = self.client.register_script(CLAIM_BATCH_TERMINAL)
        self._record_page = self.client.register_script(RECORD_PAGE_COMPLETION)
        self._replace_pages = self.client.register_script(REPLACE_COLLECTION_PAGES)

    def _key(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    # Page units

    def save_page(self, page: PageUnit) -> None:
        self.client.set(self._key("page", page.page_id), json.dumps(page.to_dict()))

    def get_page(self, page_id: str) -> Optional[PageUnit]:
        raw = self.client.get(self._key("page", page_id))
        return PageUnit.from_dict(json.loads(raw)) if raw else None

    def delete_page(self, page_id: str) -> None:
        self.client.delete(self._key("page", page_id))

    def increment(self, key: str, field: str, by: int = 1) -> int:
        return int(self.client.hincrby(self._key(*key.split(":", 1)), field, by))

    # Batches

    def create_batch(self, batch: Batch) -> None:
        data = batch.to_dict(include_items=False)
        for derived in ("progress", "status_counts"):
            data.pop(derived)
        mapping, _ = _encode_fields(data)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._key("batch", batch.batch_id), mapping=mapping)
        pipe.zadd(self._key("batches"), {batch.batch_id: time.time()})
        pipe.execute()

    def _load_batch(self, batch_id: str, include_items: bool = True) -> Optional[Batch]:
        raw = self.client.hgetall(self._key("batch", batch_id))
        if not raw:
            return None
        data = _decode_fields(raw)
        data.pop("terminal_claimed", None)
        if include_items:
            order = self.client.lrange(self._key("batch", batch_id, "order"), 0, -1)
            pipe = self.client.pipeline(transaction=False)
            for page_id in order:
                pipe.hgetall(self._key("batch", batch_id, "item", page_id))
            data["items"] = [item for item in pipe.execute() if item]
        return Batch.from_dict(data)

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        return self._load_batch(batch_id)

    def list_batches(self, limit: int) -> List[Batch]:
        ids = self.client.zrevrange(self._key("batches"), 0, limit - 1)
        batches = (self._load_batch(batch_id, include_items=False) for batch_id in ids)
        return [b for b in batches if b is not None]

    def add_batch_item(self, batch_id: str, item: BatchItem) -> None:
        mapping, _ = _encode_fields(item.to_dict())
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._key("batch", batch_id, "item", item.page_id), mapping=mapping)
        pipe.rpush(self._key("batch", batch_id, "order"), item.page_id)
        pipe.hset(self._key("batch", batch_id), "updated_at", utcnow())
        pipe.execute()

    def transition_batch_status(self, batch_id: str, new_status: BatchStatus, allowed_from: Iterable[BatchStatus]) -> bool:
        args = [new_status.value, utcnow()] + [s.value for s in allowed_from]
        return bool(self._transition_status(keys=[self._key("batch", batch_id)], args=args))

    def complete_batch_item(self, batch_id: str, page_id: str, succeeded: bool, error: Optional[str] = None) -> Tuple[str, Optional[BatchCounters]]:
        status = BatchItemStatus.COMPLETED if succeeded else BatchItemStatus.FAILED
        counter = "completed_files" if succeeded else "failed_files"
        result = self._complete_item(
            keys=[self._key("batch", batch_id), self._key("batch", batch_id, "item", page_id)],
            args=[status.value, counter, error or "", utcnow()],
        )
        if result[0] != "ok":
            return result[0], None
        return "ok", BatchCounters(int(result[1]), int(result[2]), int(result[3]))

    def claim_batch_terminal(self, batch_id: str, status: BatchStatus) -> bool:
        return bool(self._claim_terminal(keys=[self._key("batch", batch_id)], args=[status.value, utcnow()]))

    # Collections

    def create_collection(self, collection: Collection) -> None:
        mapping, _ = _encode_fields(collection.to_dict())
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(self._key("collection", collection.collection_id), mapping=mapping)
        pipe.zadd(self._key("collections"), {collection.collection_id: time.time()})
        pipe.execute()

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        raw = self.client.hgetall(self._key("collection", collection_id))
        if not raw:
            return None
        data = _decode_fields(raw)
        data.pop("completion_claimed", None)
        return Collection.from_dict(data)

    def list_collections(self) -> List[Collection]:
        ids = self.client.zrevrange(self._key("collections"), 0, -1)
        collections = (self.get_collection(collection_id) for collection_id in ids)
        return [c for c in collections if c is not None]

    def update_collection(self, collection_id: str, **fields) -> None:
        data = {}
        for name, value in fields.items():
            if hasattr(value, "value"):
                value = value.value
            elif name == "accuracy_metrics" and value is not None:
                value = asdict(value)
            elif name == "linkage":
                data["link_type"] = value.link_type.value if value else None
                data["linked_id"] = value.linked_id if value else None
                continue
            data[name] = value
        data["updated_at"] = utcnow()
        mapping, removed = _encode_fields(data)
        key = self._key("collection", collection_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(key, mapping=mapping)
        if removed:
            pipe.hdel(key, *removed)
        pipe.execute()

    def record_page_completion(self, collection_id: str, page_id: str) -> Tuple[str, int, int]:
        result = self._record_page(
            keys=[self._key("collection", collection_id), self._key("collection", collection_id, "counted")],
            args=[page_id, utcnow()],
        )
        return result[0], int(result[1]), int(result[2])

    def claim_collection_completion(self, collection_id: str) -> bool:
        return bool(self.client.hsetnx(self._key("collection", collection_id), "completion_claimed", "1"))

    def replace_collection_pages(self, collection_id: str, page_ids: List[str]) -> Tuple[int, int]:
        result = self._replace_pages(
            keys=[self._key("collection", collection_id), self._key("collection", collection_id, "counted")],
            args=[json.dumps(list(page_ids)), utcnow()] + list(page_ids),
        )
        return int(result[0]), int(result[1])
