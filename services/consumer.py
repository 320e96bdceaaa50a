"""Queue consumer: turn one indexing message into one index upsert.

Each message runs through a small state machine::

    received -> validating -> indexed
                           -> failed_terminal   (bad message, bad blob, conflict)
                           -> failed_retryable  (a dependency failed)

Terminal failures are logged and dropped; retryable ones go back to the queue
transport for redelivery. The consumer reads blobs but never writes them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from core.addressing import category_from_key
from core.blob_store import BlobStore
from core.categories import CATEGORIES
from core.envelope import Envelope, validate_envelope
from core.errors import ArchiveError, ConflictError, NotFoundError, ValidationError
from core.index import MetadataIndex
from core.queue import QueueMessage

logger = logging.getLogger(__name__)


class MessageState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    INDEXED = "indexed"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class MessageTarget:
    object_key: str
    category: str | None = None
    id: str | None = None


@dataclass
class MessageResult:
    message_id: str
    state: MessageState = MessageState.RECEIVED
    object_key: str | None = None
    category: str | None = None
    id: str | None = None
    changed: bool = False
    error: str | None = None
    field: str | None = None

    @property
    def failed(self) -> bool:
        return self.state in (MessageState.FAILED_RETRYABLE, MessageState.FAILED_TERMINAL)


def parse_message_body(body: Any) -> MessageTarget:
    """Accept ``{objectKey}`` or ``{type, id, r2Key}``."""
    if not isinstance(body, dict):
        raise ValidationError("body", "Queue message body must be an object")
    key = body.get("objectKey")
    if isinstance(key, str) and key:
        kind = body.get("type")
        return MessageTarget(object_key=key, category=kind if isinstance(kind, str) and kind else None)
    key = body.get("r2Key")
    kind = body.get("type")
    if isinstance(key, str) and key and isinstance(kind, str) and kind:
        msg_id = body.get("id")
        return MessageTarget(object_key=key, category=kind, id=msg_id if isinstance(msg_id, str) and msg_id else None)
    raise ValidationError("objectKey", "Queue message needs objectKey or type + r2Key")


def expected_category(target: MessageTarget) -> str | None:
    if target.category:
        return target.category
    prefix = category_from_key(target.object_key)
    return prefix if prefix in CATEGORIES else None


class QueueConsumer:
    def __init__(self, *, blob_store: BlobStore, index: MetadataIndex, concurrency: int = 4):
        self.blob_store = blob_store
        self.index = index
        self.concurrency = max(1, concurrency)

    async def _index_target(self, target: MessageTarget, result: MessageResult) -> None:
        raw = await self.blob_store.get(target.object_key)
        envelope = Envelope.from_json(raw)
        record = validate_envelope(
            envelope,
            target.object_key,
            expected_category=expected_category(target),
        )
        result.category = record.category.name
        result.id = record.id
        if target.id is not None and target.id != record.id:
            raise ValidationError("id", f"Message id {target.id} does not match envelope id {record.id}")
        result.changed = await self.index.upsert(record)

    async def process_message(self, message: QueueMessage) -> MessageResult:
        result = MessageResult(message_id=message.message_id)
        try:
            target = parse_message_body(message.body)
            result.object_key = target.object_key
            result.state = MessageState.VALIDATING
            await self._index_target(target, result)
        except ValidationError as exc:
            result.state = MessageState.FAILED_TERMINAL
            result.error = exc.message
            result.field = exc.field
            logger.warning(f"Rejected message {message.message_id} ({result.object_key}): field {exc.field}: {exc.message}")
        except ConflictError as exc:
            result.state = MessageState.FAILED_TERMINAL
            result.error = exc.message
            result.field = exc.constraint
            logger.warning(f"Conflict indexing {result.object_key} ({result.id}): {exc.constraint}: {exc.message}")
        except NotFoundError as exc:
            result.state = MessageState.FAILED_TERMINAL
            result.error = exc.message
            logger.warning(f"Message {message.message_id} points at a missing object: {exc.message}")
        except ArchiveError as exc:
            result.state = MessageState.FAILED_TERMINAL if not exc.retryable else MessageState.FAILED_RETRYABLE
            result.error = exc.message
            logger.error(f"Failed to index {result.object_key}: {exc.message}")
        except Exception as exc:
            result.state = MessageState.FAILED_RETRYABLE
            result.error = str(exc)
            logger.exception(f"Unexpected error processing message {message.message_id}")
        else:
            result.state = MessageState.INDEXED
            logger.info(
                f"Indexed {result.category} {result.id} from {result.object_key}"
                + ("" if result.changed else " (unchanged)")
            )
        return result

    async def process_batch(self, messages: list[QueueMessage]) -> list[MessageResult]:
        """Process messages independently; one failure never affects siblings."""
        sem = asyncio.Semaphore(self.concurrency)

        async def _one(msg: QueueMessage) -> MessageResult:
            async with sem:
                return await self.process_message(msg)

        return list(await asyncio.gather(*(_one(m) for m in messages)))


__all__ = [
    "MessageResult",
    "MessageState",
    "MessageTarget",
    "QueueConsumer",
    "expected_category",
    "parse_message_body",
]
