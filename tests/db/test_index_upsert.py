"""Metadata index behaviour against a live Postgres.

Set ARCHIVIST_TEST_DSN to a disposable database to run these.
"""
import asyncio
import os

import pytest
import pytest_asyncio

from core.categories import CATEGORIES
from core.envelope import Envelope, validate_envelope
from core.errors import ConflictError
from core.index import MetadataIndex
from core.schema import apply_schema

pytestmark = [
    pytest.mark.asyncio(loop_scope="session"),
    pytest.mark.db,
    pytest.mark.skipif(not os.getenv("ARCHIVIST_TEST_DSN"), reason="ARCHIVIST_TEST_DSN not set"),
]


@pytest_asyncio.fixture(loop_scope="session")
async def db_index():
    dsn = os.environ["ARCHIVIST_TEST_DSN"]
    await apply_schema(dsn)
    index = await MetadataIndex.connect(dsn, max_size=4)
    await index.truncate()
    try:
        yield index
    finally:
        await index.truncate()
        await index.close()


def _record(data, category="quotes"):
    env = Envelope.create(category, data)
    return validate_envelope(env, f"{category}/{env.id.replace(':', '_')}.json")


async def test_repeat_upsert_is_a_no_op(db_index, quote):
    record = _record(dict(quote, tags=["Wit", "humour"]))

    assert await db_index.upsert(record) is True
    first = await db_index.get("quotes", record.id)
    for _ in range(9):
        assert await db_index.upsert(record) is False
    again = await db_index.get("quotes", record.id)

    assert again == first
    assert again["tags"] == ["humour", "wit"]
    assert await db_index.count("quotes") == 1


async def test_slug_conflict_leaves_first_row(db_index, quote):
    first = _record(quote)
    second = _record(dict(quote, text="different"))
    await db_index.upsert(first)

    with pytest.raises(ConflictError) as exc:
        await db_index.upsert(second)

    assert exc.value.constraint == "quotes_slug_key"
    assert await db_index.exists("quotes", first.id)
    assert not await db_index.exists("quotes", second.id)


async def test_concurrent_upserts_of_one_record(db_index, quote):
    record = _record(quote)
    results = await asyncio.gather(*(db_index.upsert(record) for _ in range(8)))
    assert results.count(True) == 1
    assert await db_index.count("quotes") == 1


async def test_tags_follow_the_latest_envelope(db_index, quote):
    record = _record(dict(quote, tags=["a", "b"]))
    await db_index.upsert(record)
    record.tags = ["b", "c"]
    await db_index.upsert(record)
    assert (await db_index.get("quotes", record.id))["tags"] == ["b", "c"]


async def test_counts_cover_every_category(db_index):
    assert set(await db_index.counts()) == set(CATEGORIES)
