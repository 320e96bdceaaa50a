"""How MetadataIndex write failures surface on the queue path.

A stand-in pool raises the asyncpg error a real server would; the consumer
must only retry failures that can go away on their own.
"""
from contextlib import asynccontextmanager

import asyncpg
import pytest

from core.addressing import blob_key
from core.envelope import Envelope, validate_envelope
from core.errors import DependencyError, RejectedRecordError
from core.index import MetadataIndex
from core.queue import QueueMessage
from services.consumer import MessageState, QueueConsumer


pytestmark = [pytest.mark.asyncio(loop_scope="session"), pytest.mark.services]


class _FailingConnection:
    def __init__(self, error):
        self.error = error

    @asynccontextmanager
    async def transaction(self):
        yield

    async def fetchval(self, *args):
        raise self.error


class _FailingPool:
    def __init__(self, error):
        self.conn = _FailingConnection(error)

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _record(quote):
    env = Envelope.create("quotes", quote)
    return validate_envelope(env, blob_key("quotes", env.id))


REJECTED = [
    asyncpg.DataError("value out of int32 range"),
    asyncpg.NumericValueOutOfRangeError("integer out of range"),
    asyncpg.NotNullViolationError('null value in column "author"'),
    asyncpg.CheckViolationError("new row violates check constraint"),
    ValueError("invalid input for query argument $4"),
]

OUTAGES = [
    OSError("connection refused"),
    asyncpg.ConnectionDoesNotExistError("connection was closed"),
    asyncpg.TooManyConnectionsError("too many clients"),
    asyncpg.DeadlockDetectedError("deadlock detected"),
]


@pytest.mark.parametrize("error", REJECTED, ids=lambda e: type(e).__name__)
async def test_bad_values_are_not_retryable(quote, error):
    index = MetadataIndex(_FailingPool(error))
    with pytest.raises(RejectedRecordError) as exc:
        await index.upsert(_record(quote))
    assert exc.value.retryable is False


@pytest.mark.parametrize("error", OUTAGES, ids=lambda e: type(e).__name__)
async def test_outages_are_retryable(quote, error):
    index = MetadataIndex(_FailingPool(error))
    with pytest.raises(DependencyError):
        await index.upsert(_record(quote))


@pytest.mark.parametrize("error", REJECTED[:4], ids=lambda e: type(e).__name__)
async def test_consumer_dead_letters_rejected_rows(blob_store, quote, error):
    env = Envelope.create("quotes", quote)
    key = blob_key("quotes", env.id)
    await blob_store.put(key, env.to_json())
    consumer = QueueConsumer(blob_store=blob_store, index=MetadataIndex(_FailingPool(error)))

    result = await consumer.process_message(QueueMessage(message_id="m1", body={"objectKey": key}))

    assert result.state is MessageState.FAILED_TERMINAL
    assert result.id == env.id


async def test_consumer_retries_when_index_is_unreachable(blob_store, quote):
    env = Envelope.create("quotes", quote)
    key = blob_key("quotes", env.id)
    await blob_store.put(key, env.to_json())
    pool = _FailingPool(asyncpg.ConnectionDoesNotExistError("connection was closed"))
    consumer = QueueConsumer(blob_store=blob_store, index=MetadataIndex(pool))

    result = await consumer.process_message(QueueMessage(message_id="m1", body={"objectKey": key}))

    assert result.state is MessageState.FAILED_RETRYABLE
