"""Similarity search, delegated to an external service.

The service ranks; this module only validates the query, forwards it and
normalises the reply to ``[SearchMatch(id, score)]``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import requests

from core.categories import get_category
from core.errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)

MAX_RESULTS = 100


@dataclass
class SearchMatch:
    id: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "score": self.score}


def parse_matches(payload: Any) -> list[SearchMatch]:
    matches = payload.get("matches") if isinstance(payload, dict) else None
    if not isinstance(matches, list):
        return []
    out: list[SearchMatch] = []
    for m in matches:
        if not isinstance(m, dict):
            continue
        match_id = m.get("id")
        score = m.get("score")
        if isinstance(match_id, str) and isinstance(score, (int, float)) and not isinstance(score, bool):
            out.append(SearchMatch(id=match_id, score=float(score)))
    out.sort(key=lambda s: s.score, reverse=True)
    return out


class SimilaritySearchClient:
    def __init__(self, base_url: str, *, api_key: str = "", timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def search(self, category: str, query: str, top_k: int = 10) -> list[SearchMatch]:
        get_category(category)
        query = (query or "").strip()
        if not query:
            raise ValidationError("q", "Search query must not be empty")
        if not self.base_url:
            raise DependencyError("Similarity search service is not configured")
        top_k = max(1, min(int(top_k), MAX_RESULTS))
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        def _do() -> Any:
            resp = requests.post(
                f"{self.base_url}/query",
                json={"namespace": category, "query": query, "topK": top_k},
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()

        try:
            payload = await asyncio.to_thread(_do)
        except (requests.RequestException, ValueError) as exc:
            logger.error(f"Similarity search failed for {category}: {exc}")
            raise DependencyError(f"Similarity search failed: {exc}") from exc
        return parse_matches(payload)[:top_k]


__all__ = ["MAX_RESULTS", "SearchMatch", "SimilaritySearchClient", "parse_matches"]
