"""Bulk enumeration trigger for backfills and full re-indexing.

Lists every blob under a prefix, then fans out one indexing message per key.
The listing is completed before anything is sent, so a listing failure sends
nothing. Running it twice is harmless: the consumer's upsert absorbs repeats.
"""
from __future__ import annotations

import logging

from core.blob_store import BlobStore
from core.categories import get_category
from core.queue import SEND_BATCH_LIMIT, MessageQueue

logger = logging.getLogger(__name__)


def prefix_for(category: str | None) -> str:
    if category is None:
        return ""
    return get_category(category).prefix


class BackfillTrigger:
    def __init__(self, *, blob_store: BlobStore, queue: MessageQueue, batch_size: int = SEND_BATCH_LIMIT):
        self.blob_store = blob_store
        self.queue = queue
        self.batch_size = max(1, min(batch_size, SEND_BATCH_LIMIT))

    async def run(self, prefix: str = "") -> int:
        """
        Queue every object under ``prefix``.

        Returns:
            Number of messages sent.

        Raises:
            DependencyError: listing or publishing failed.
        """
        keys = [k for k in await self.blob_store.list_keys(prefix) if k.endswith(".json")]
        logger.info(f"Backfill found {len(keys)} objects under {prefix or '<root>'}")
        queued = 0
        for start in range(0, len(keys), self.batch_size):
            batch = keys[start : start + self.batch_size]
            queued += await self.queue.send_batch([{"objectKey": key} for key in batch])
        logger.info(f"Backfill queued {queued} messages for {prefix or '<root>'}")
        return queued

    async def run_category(self, category: str | None) -> int:
        return await self.run(prefix_for(category))


__all__ = ["BackfillTrigger", "prefix_for"]
