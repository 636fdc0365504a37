from __future__ import annotations

from typing import Any, List

from .db import ReturnDocument, db, settings
from .utils import now_ts


class ActivityFeed:
    """Per-event notification log that participant and organizer screens poll.

    The engines only return new state; API handlers append what changed here
    so connected clients can catch up with ``list(after=seq)``.
    """

    def __init__(self, database: Any = None):
        self.db = database if database is not None else db

    async def append(self, event_id: str, payload: dict[str, Any]) -> int:
        """Store a notification for an event and return its sequence number."""

        counter_doc = await self.db.feed_counters.find_one_and_update(
            {"_id": event_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

        if not counter_doc:
            # Some Mongo-compatible providers complete the upsert but return
            # ``None``; read the counter back instead.
            counter_doc = await self.db.feed_counters.find_one({"_id": event_id})

        seq = int((counter_doc or {}).get("seq", 1))

        await self.db.feed_items.insert_one(
            {
                "event_id": event_id,
                "seq": seq,
                "timestamp": now_ts(),
                "payload": payload,
            }
        )
        return seq

    async def list(self, event_id: str, after: int | None = None, limit: int | None = None) -> List[dict[str, Any]]:
        """Return notifications for an event that come after the given sequence."""

        query: dict[str, Any] = {"event_id": event_id}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.db.feed_items.find(query)
            .sort("seq", 1)
            .limit(limit or settings.FEED_PAGE_LIMIT)
        )

        items: List[dict[str, Any]] = []
        async for doc in cursor:
            items.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "payload": doc.get("payload", {}),
                }
            )
        return items

    async def clear(self, event_id: str) -> None:
        await self.db.feed_items.delete_many({"event_id": event_id})
        await self.db.feed_counters.delete_many({"_id": event_id})


feed = ActivityFeed()
