from unittest.mock import AsyncMock

import pytest

from core.addressing import blob_key
from core.envelope import Envelope
from core.errors import DependencyError
from services.worker_service import IndexWorker


pytestmark = [pytest.mark.asyncio(loop_scope="session"), pytest.mark.services]


@pytest.fixture
def worker(settings, blob_store, index, queue):
    return IndexWorker(settings, blob_store=blob_store, index=index, queue=queue)


async def _stored_message(blob_store, queue, data):
    env = Envelope.create("quotes", data)
    key = blob_key("quotes", env.id)
    await blob_store.put(key, env.to_json())
    await queue.send({"type": "quotes", "id": env.id, "r2Key": key})
    return env


async def test_indexed_messages_are_acked(worker, blob_store, index, queue, quote):
    env = await _stored_message(blob_store, queue, quote)
    await worker.connect()

    handled = await worker.run_once()

    assert handled == 1
    assert len(queue.acked) == 1
    assert await index.exists("quotes", env.id)
    assert worker.stats["indexed"] == 1


async def test_terminal_failures_are_dead_lettered(worker, queue):
    await queue.send({"objectKey": "quotes/missing.json"})
    await worker.connect()

    await worker.run_once()

    assert len(queue.dead) == 1
    assert queue.pending == []
    assert worker.stats["failed_terminal"] == 1


async def test_retryable_failures_are_requeued_until_exhausted(worker, blob_store, index, queue, quote):
    await _stored_message(blob_store, queue, quote)
    index.unavailable = True
    await worker.connect()

    for _ in range(queue.max_attempts):
        await worker.run_once()

    assert worker.stats["failed_retryable"] == queue.max_attempts
    assert len(queue.dead) == 1
    assert queue.dead[0][0].attempts == queue.max_attempts


async def test_drain_stops_when_queue_is_empty(worker, blob_store, index, queue, quote):
    await _stored_message(blob_store, queue, quote)
    await worker.run(drain=True)
    assert await index.count("quotes") == 1
    assert worker.stats["indexed"] == 1


async def test_run_once_on_empty_queue(worker):
    await worker.connect()
    assert await worker.run_once() == 0


async def test_requeue_failure_falls_back_to_dead_letter(worker, blob_store, index, queue, quote, monkeypatch):
    await _stored_message(blob_store, queue, quote)
    index.unavailable = True
    monkeypatch.setattr(queue, "retry", AsyncMock(side_effect=DependencyError("queue down")))
    await worker.connect()

    assert await worker.run_once() == 1

    assert len(queue.dead) == 1
    assert worker.unsettled == []


async def test_message_is_kept_when_queue_refuses_to_settle(worker, blob_store, index, queue, quote, monkeypatch):
    await _stored_message(blob_store, queue, quote)
    index.unavailable = True
    monkeypatch.setattr(queue, "retry", AsyncMock(side_effect=DependencyError("queue down")))
    monkeypatch.setattr(queue, "dead_letter", AsyncMock(side_effect=DependencyError("queue down")))
    await worker.connect()

    with pytest.raises(DependencyError):
        await worker.run_once()

    assert queue.pending == []
    assert [m.message_id for m, _ in worker.unsettled] == ["m1"]

    monkeypatch.undo()
    index.unavailable = False
    assert await worker.run_once() == 1

    assert worker.unsettled == []
    assert queue.dead == []
    assert await index.count("quotes") == 1
    assert worker.stats["failed_retryable"] == 1
    assert worker.stats["indexed"] == 1


async def test_unsettled_messages_block_new_pulls(worker, blob_store, index, queue, quote, monkeypatch):
    await _stored_message(blob_store, queue, quote)
    index.unavailable = True
    monkeypatch.setattr(queue, "retry", AsyncMock(side_effect=DependencyError("queue down")))
    monkeypatch.setattr(queue, "dead_letter", AsyncMock(side_effect=DependencyError("queue down")))
    await worker.connect()
    with pytest.raises(DependencyError):
        await worker.run_once()

    await queue.send({"objectKey": "quotes/other.json"})
    receive = AsyncMock(wraps=queue.receive)
    monkeypatch.setattr(queue, "receive", receive)
    with pytest.raises(DependencyError):
        await worker.run_once()

    receive.assert_not_awaited()
    assert len(worker.unsettled) == 1


async def test_drain_stops_with_error_when_messages_are_unsettled(worker, blob_store, index, queue, quote, monkeypatch):
    await _stored_message(blob_store, queue, quote)
    index.unavailable = True
    monkeypatch.setattr(queue, "retry", AsyncMock(side_effect=DependencyError("queue down")))
    monkeypatch.setattr(queue, "dead_letter", AsyncMock(side_effect=DependencyError("queue down")))

    with pytest.raises(DependencyError):
        await worker.run(drain=True)

    assert len(worker.unsettled) == 1
