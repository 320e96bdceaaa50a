import json
from unittest.mock import AsyncMock

import pytest

from core.addressing import content_address, content_hash
from core.errors import DependencyError, ValidationError
from services.ingest import IngestionPipeline


pytestmark = [pytest.mark.asyncio(loop_scope="session"), pytest.mark.services]


@pytest.fixture
def pipeline(blob_store, index, queue):
    return IngestionPipeline(blob_store=blob_store, index=index, queue=queue)


async def test_submit_stores_envelope_and_queues_message(pipeline, blob_store, queue, quote):
    result = await pipeline.submit("quotes", quote)

    digest = content_hash(quote)
    assert result.created is True
    assert result.id == f"sha256:{digest}"
    assert result.object_key == f"quotes/sha256_{digest}.json"

    stored = json.loads(blob_store.objects[result.object_key])
    assert stored["type"] == "quotes"
    assert stored["id"] == result.id
    assert stored["data"] == quote
    assert blob_store.metadata[result.object_key]["sha256-hex"] == digest
    assert queue.sent == [{"type": "quotes", "id": result.id, "r2Key": result.object_key}]


async def test_identical_content_is_created_once(pipeline, blob_store, queue, quote):
    first = await pipeline.submit("quotes", quote)
    second = await pipeline.submit("quotes", dict(reversed(list(quote.items()))))

    assert second.id == first.id
    assert second.object_key == first.object_key
    assert second.created is False
    assert blob_store.puts == 1
    assert len(queue.sent) == 1


async def test_indexed_item_is_a_duplicate_even_without_blob(pipeline, index, blob_store, quote):
    index.exists = AsyncMock(return_value=True)
    result = await pipeline.submit("quotes", quote)
    assert result.created is False
    assert blob_store.puts == 0


async def test_invalid_payload_writes_nothing(pipeline, blob_store, queue, quote):
    del quote["slug"]
    with pytest.raises(ValidationError) as exc:
        await pipeline.submit("quotes", quote)
    assert exc.value.field == "slug"
    assert blob_store.objects == {}
    assert queue.sent == []


async def test_unknown_category(pipeline, quote):
    with pytest.raises(ValidationError) as exc:
        await pipeline.submit("podcasts", quote)
    assert exc.value.field == "type"


async def test_blob_failure_queues_nothing(pipeline, blob_store, queue, quote):
    blob_store.fail_put = True
    with pytest.raises(DependencyError):
        await pipeline.submit("quotes", quote)
    assert queue.sent == []


async def test_chatter_is_enriched_outside_data(blob_store, index, queue):
    enricher = AsyncMock()
    enricher.enrich.return_value = {"weather": {"summary": {"temp": 12}}}
    pipeline = IngestionPipeline(blob_store=blob_store, index=index, queue=queue, enricher=enricher)
    data = {
        "date_posted": "2024-03-01T10:00:00Z",
        "year": 2024,
        "month": 3,
        "slug": "walk",
        "location_hint": {"lat": 51.5, "lng": -0.1},
    }

    result = await pipeline.submit("chatter", data)

    stored = json.loads(blob_store.objects[result.object_key])
    assert stored["environment"] == {"weather": {"summary": {"temp": 12}}}
    assert stored["data"] == data
    assert result.id == content_address(data)


async def test_other_categories_are_not_enriched(blob_store, index, queue, quote):
    enricher = AsyncMock()
    pipeline = IngestionPipeline(blob_store=blob_store, index=index, queue=queue, enricher=enricher)
    await pipeline.submit("quotes", quote)
    enricher.enrich.assert_not_awaited()
