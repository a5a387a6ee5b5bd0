# app/infra/geo_matcher.py
"""
HTTP client for the external Geo-Matcher.

The matcher owns the scoring formula; this service only sends the
request's category and coordinates and reads back a ranked list:

    POST {GEO_MATCHER_URL}
    {"category": "...", "latitude": 12.97, "longitude": 77.59,
     "max_candidates": 20, "max_radius_km": 15.0}
    -> {"candidates": [{"helper_id": "...", "score": 0.93}, ...]}

Transport failures and 5xx responses raise ``GeoMatcherUnavailable`` so
the dispatcher can retry; a malformed candidate is skipped.
"""
from __future__ import annotations

import aiohttp

from app.core.dispatch.domain import Candidate, Coordinates
from app.core.dispatch.ports import GeoMatcher
from app.core.errors import GeoMatcherUnavailable
from app.infra.http_client import get_matcher_session
from app.infra.logging_config import get_logger, mask_coordinates
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class HttpGeoMatcher(GeoMatcher):
    def __init__(self, url: str, *, timeout_seconds: float = 3.0):
        self.url = url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def rank(
        self,
        category: str,
        coordinates: Coordinates,
        max_candidates: int,
        max_radius_km: float,
    ) -> list[Candidate]:
        payload = {
            "category": category,
            "latitude": coordinates.latitude,
            "longitude": coordinates.longitude,
            "max_candidates": max_candidates,
            "max_radius_km": max_radius_km,
        }
        session = get_matcher_session()
        try:
            async with session.post(self.url, json=payload, timeout=self.timeout) as resp:
                if resp.status >= 500:
                    inc_counter("geo_matcher_errors", status=str(resp.status))
                    raise GeoMatcherUnavailable(f"Geo-Matcher returned {resp.status}")
                if resp.status != 200:
                    body = await resp.text()
                    logger.error(f"Geo-Matcher rejected request: status={resp.status}, body={body[:200]}")
                    inc_counter("geo_matcher_errors", status=str(resp.status))
                    return []
                data = await resp.json()
        except aiohttp.ClientError as exc:
            inc_counter("geo_matcher_errors", status="transport")
            raise GeoMatcherUnavailable(f"Geo-Matcher transport error: {exc}") from exc

        candidates = []
        for item in data.get("candidates") or []:
            try:
                candidates.append(Candidate(helper_id=str(item["helper_id"]), score=float(item.get("score", 0))))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed matcher candidate: {item!r}")
        candidates.sort(key=lambda c: c.score, reverse=True)

        logger.debug(
            f"Geo-Matcher ranked {len(candidates)} helpers for {category} near "
            f"{mask_coordinates(coordinates.latitude, coordinates.longitude)}"
        )
        return candidates[:max_candidates]


class NullGeoMatcher(GeoMatcher):
    """Used when no matcher URL is configured: every dispatch finds nobody."""

    async def rank(self, category, coordinates, max_candidates, max_radius_km) -> list[Candidate]:
        logger.warning("GEO_MATCHER_URL not configured; returning no candidates")
        return []
