"""Ingestion pipeline: validate, address, dedup, store, enqueue.

One generic pipeline serves every category; the per-category differences
live in ``core.categories``. The blob is written before the indexing message
is published, so a message never points at a missing object. If publishing
fails after the write, the item is still recoverable by a backfill.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from core.addressing import blob_key, content_hash
from core.blob_store import BlobStore
from core.envelope import Envelope, validate_payload
from core.index import MetadataIndex
from core.queue import MessageQueue
from services.enrichment import EnvironmentEnricher

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    id: str
    object_key: str
    created: bool

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "objectKey": self.object_key, "created": self.created}


def index_message(envelope: Envelope, key: str) -> dict[str, Any]:
    return {"type": envelope.type, "id": envelope.id, "r2Key": key}


class IngestionPipeline:
    def __init__(
        self,
        *,
        blob_store: BlobStore,
        index: MetadataIndex,
        queue: MessageQueue,
        enricher: EnvironmentEnricher | None = None,
    ):
        self.blob_store = blob_store
        self.index = index
        self.queue = queue
        self.enricher = enricher

    async def find_existing(self, category: str, content_id: str) -> str | None:
        """Blob key of an already-stored item with this id, if any."""
        key = blob_key(category, content_id)
        if await self.index.exists(category, content_id):
            return key
        if await self.blob_store.exists(key):
            return key
        return None

    async def submit(self, category: str, data: Any) -> IngestResult:
        """
        Store a new item and queue it for indexing.

        Raises:
            ValidationError: the payload is rejected; nothing is written.
            DependencyError: a store or the queue failed.
        """
        validate_payload(category, data)
        envelope = Envelope.create(category, data)
        key = blob_key(category, envelope.id)

        existing = await self.find_existing(category, envelope.id)
        if existing is not None:
            logger.info(f"Duplicate {category} submission {envelope.id}; skipping write")
            return IngestResult(id=envelope.id, object_key=existing, created=False)

        if self.enricher is not None and category == "chatter":
            envelope.environment = await self.enricher.enrich(data)

        await self.blob_store.put(
            key,
            envelope.to_json(),
            metadata={
                "sha256-hex": content_hash(data),
                "schema-version": envelope.schema_version,
                "type": envelope.type,
            },
        )
        await self.queue.send(index_message(envelope, key))
        logger.info(f"Stored {category} {envelope.id} at {key}")
        return IngestResult(id=envelope.id, object_key=key, created=True)


__all__ = ["IngestResult", "IngestionPipeline", "index_message"]
