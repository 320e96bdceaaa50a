import pytest

from core.categories import get_category
from core.index import build_upsert_sql


pytestmark = pytest.mark.core


def test_upsert_keys_on_id():
    sql = build_upsert_sql(get_category("quotes"))
    assert sql.startswith("INSERT INTO quotes AS t (id, author, date_added, year, month, slug, publish, r2_key)")
    assert "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)" in sql
    assert "ON CONFLICT (id) DO UPDATE SET" in sql
    assert sql.endswith("RETURNING id")


def test_identical_rows_are_not_rewritten():
    sql = build_upsert_sql(get_category("films"))
    assert "WHERE (t.year, t.year_watched" in sql
    assert "IS DISTINCT FROM (EXCLUDED.year, EXCLUDED.year_watched" in sql
    assert "t.id" not in sql


def test_photo_writes_photographs_table():
    assert build_upsert_sql(get_category("photo")).startswith("INSERT INTO photographs AS t")
