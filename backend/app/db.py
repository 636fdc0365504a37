from __future__ import annotations

import asyncio
import copy
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo.errors import DuplicateKeyError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    STORE_RETRY_ATTEMPTS: int = 3
    STORE_RETRY_BASE_DELAY: float = 0.1
    ACTIVATION_CAS_ATTEMPTS: int = 3

    DEFAULT_TIMER_SECONDS: int = 30
    FEED_PAGE_LIMIT: int = 200


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class ReturnDocument(str, Enum):
    BEFORE = "before"
    AFTER = "after"


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            docs.sort(key=lambda d: d.get(self._sort_key), reverse=reverse)

        if self._limit is not None:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    async def to_list(self) -> List[Dict[str, Any]]:
        return [doc async for doc in self]

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """Async document collection mirroring the subset of the Motor API we use.

    Unique indexes behave like Mongo's: an insert that would duplicate an
    indexed key tuple raises :class:`pymongo.errors.DuplicateKeyError` and
    leaves the collection untouched.
    """

    def __init__(self, unique: Sequence[Sequence[str]] = ()):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._unique_keys: List[Tuple[str, ...]] = [tuple(keys) for keys in unique]

    async def create_index(self, keys: Sequence[str], unique: bool = False) -> str:
        if unique and tuple(keys) not in self._unique_keys:
            self._unique_keys.append(tuple(keys))
        return "_".join(keys)

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any]) -> int:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    self._docs[idx] = self._apply_update(copy.deepcopy(doc), update)
                    return 1
        return 0

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._check_unique(document)
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    del self._docs[idx]
                    return 1
        return 0

    async def delete_many(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]
            return before - len(self._docs)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: "ReturnDocument" = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _check_unique(self, document: Dict[str, Any]) -> None:
        for keys in self._unique_keys:
            wanted = tuple(document.get(k) for k in keys)
            for doc in self._docs:
                if tuple(doc.get(k) for k in keys) == wanted:
                    raise DuplicateKeyError(f"E11000 duplicate key error index: {'_'.join(keys)}")

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                if "$gt" in expected:
                    if actual is None or actual <= expected["$gt"]:
                        return False
                elif "$in" in expected:
                    if actual not in expected["$in"]:
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


# One-submission-per-participant conditional writes rely on these.
UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    "poll_votes": ("poll_id", "participant_id"),
    "raffle_entries": ("raffle_id", "participant_id"),
    "answers": ("participant_id", "question_id"),
}


class InMemoryDatabase:
    def __init__(self):
        self.events = InMemoryCollection()
        self.activities = InMemoryCollection()
        self.questions = InMemoryCollection()
        self.participants = InMemoryCollection()
        self.answers = InMemoryCollection(unique=[UNIQUE_KEYS["answers"]])
        self.poll_votes = InMemoryCollection(unique=[UNIQUE_KEYS["poll_votes"]])
        self.raffle_entries = InMemoryCollection(unique=[UNIQUE_KEYS["raffle_entries"]])
        self.feed_counters = InMemoryCollection()
        self.feed_items = InMemoryCollection()

    async def ensure_indexes(self) -> None:
        for name, keys in UNIQUE_KEYS.items():
            await getattr(self, name).create_index(list(keys), unique=True)


db: Any = InMemoryDatabase()
