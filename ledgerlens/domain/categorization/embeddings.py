"""
Embedding matcher - semantic vendor nearest-neighbour search

Vendors an org has already categorized are embedded (text-embedding-3-small,
1536 dimensions) and stored with their category. A new merchant name is
embedded and compared against the org's learned vendors; close neighbours
become weak Pass-1 signals.

Only vendors seen on at least MIN_TRANSACTION_COUNT transactions are eligible,
so a single mis-categorized transaction cannot seed bad matches.

Drift monitoring:
- every search hit is recorded with whether it influenced the final decision
- a daily job rolls the last week of matches into per-vendor stability
  snapshots (dominant category, category breakdown, average similarity)
- get_vendor_stability_metrics flags vendors whose category or similarity moved
"""
import asyncio
import math
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import httpx
import structlog

from ledgerlens.domain.categorization.caches import OrgScopedCache
from ledgerlens.domain.categorization.exceptions import (
    EmbeddingConfigurationError,
    EmbeddingDimensionError,
    EmbeddingFormatError,
    EmbeddingServiceError,
)
from ledgerlens.domain.categorization.repositories import VendorEmbeddingRepository
from ledgerlens.domain.categorization.rules.vendors import normalize_vendor_name
from ledgerlens.domain.categorization.schemas import (
    EmbeddingBatchReport,
    EmbeddingMatch,
    EmbeddingSearchHit,
    StabilitySnapshot,
    VendorEmbedding,
    VendorStabilityMetrics,
)

logger = structlog.get_logger()

EMBEDDING_DIMENSIONS = 1536
DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_MAX_RESULTS = 5
MIN_TRANSACTION_COUNT = 3
SNAPSHOT_WINDOW_DAYS = 7
SNAPSHOT_MIN_MATCHES = 3
SNAPSHOT_SAMPLE_SIZE = 5
DRIFT_SIMILARITY_DROP = 0.1
EMBEDDING_VERSION = "text-embedding-3-small"


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: vectors differ in length
    """
    if len(a) != len(b):
        raise ValueError(f"Embedding dimension mismatch: {len(a)} vs {len(b)}")

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denominator == 0:
        return 0.0
    return dot / denominator


class EmbeddingClient:
    """
    Async client for an OpenAI-compatible /v1/embeddings endpoint.

    Usage:
        client = EmbeddingClient(api_key=settings.openai_api_key)
        vector = await client.embed("adobe creative cloud")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: str = "https://api.openai.com/v1/embeddings",
        model: str = EMBEDDING_VERSION,
        dimensions: int = EMBEDDING_DIMENSIONS,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self._http_client = http_client

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._http_client is not None:
            return await self._http_client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload, headers=headers)

    async def embed(self, text: str) -> List[float]:
        """
        Embed one piece of text.

        Raises:
            EmbeddingConfigurationError: no API key configured
            EmbeddingServiceError: transport failure or non-2xx response
            EmbeddingFormatError: payload is not a list of numbers
            EmbeddingDimensionError: vector has the wrong length
        """
        if not self.api_key:
            raise EmbeddingConfigurationError("Embedding API key is not configured")

        payload = {"model": self.model, "input": text, "encoding_format": "float"}
        try:
            response = await self._post(payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EmbeddingServiceError(
                f"Embeddings API failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise EmbeddingServiceError(f"Embeddings API unreachable: {e}") from e

        try:
            vector = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingFormatError("Invalid embeddings API response: missing embedding data") from e

        if not isinstance(vector, list) or not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in vector
        ):
            raise EmbeddingFormatError("Invalid embeddings API response: embedding is not numeric")
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(vector))
        return [float(v) for v in vector]


class EmbeddingMatcher:
    """
    Learned-vendor similarity search with stability tracking.

    Reads go through an org-scoped cache of eligible embeddings; writes go
    straight to the repository and invalidate the org's cache entry.
    """

    def __init__(
        self,
        repository: VendorEmbeddingRepository,
        client: Optional[EmbeddingClient] = None,
        dimensions: int = EMBEDDING_DIMENSIONS,
        cache_ttl_seconds: float = 300.0,
        batch_size: int = 20,
        batch_delay_seconds: float = 0.1,
    ):
        self.repository = repository
        self.client = client
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self._cache: OrgScopedCache[List[VendorEmbedding]] = OrgScopedCache(
            "vendor_embeddings",
            lambda org_id: self.repository.list_eligible(org_id, MIN_TRANSACTION_COUNT),
            ttl_seconds=cache_ttl_seconds,
        )

    def _check_dimensions(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimensions:
            raise EmbeddingDimensionError(self.dimensions, len(vector))

    async def search(
        self,
        org_id: str,
        query: Sequence[float],
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> List[EmbeddingSearchHit]:
        """
        Nearest learned vendors for a query vector.

        Args:
            org_id: Organization whose vendors are searched
            query: Query embedding
            similarity_threshold: Minimum cosine similarity
            max_results: Maximum hits returned

        Returns:
            Hits sorted by similarity, descending
        """
        self._check_dimensions(query)
        candidates = await self._cache.get(org_id)

        hits = []
        for candidate in candidates:
            # Eligibility is enforced here as well as in the repository query
            if candidate.transaction_count < MIN_TRANSACTION_COUNT:
                continue
            # A stored vector of the wrong size means the table is corrupt
            self._check_dimensions(candidate.embedding)
            similarity = cosine_similarity(query, candidate.embedding)
            if similarity < similarity_threshold:
                continue
            hits.append(EmbeddingSearchHit(
                vendor=candidate.vendor,
                category_id=candidate.category_id,
                similarity=similarity,
                confidence=candidate.confidence,
                transaction_count=candidate.transaction_count,
            ))

        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:max_results]

    async def search_text(
        self,
        org_id: str,
        text: str,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> List[EmbeddingSearchHit]:
        """Embed a merchant name or description, then search."""
        if self.client is None:
            raise EmbeddingConfigurationError("No embedding client configured")
        normalized = normalize_vendor_name(text)
        if not normalized:
            return []
        vector = await self.client.embed(normalized)
        return await self.search(org_id, vector, similarity_threshold, max_results)

    async def track_match(
        self,
        org_id: str,
        transaction_id: str,
        hit: EmbeddingSearchHit,
        contributed: bool,
    ) -> None:
        await self.repository.record_match(EmbeddingMatch(
            org_id=org_id,
            transaction_id=transaction_id,
            matched_vendor=hit.vendor,
            similarity=max(0.0, min(1.0, hit.similarity)),
            matched_category_id=hit.category_id,
            contributed_to_decision=contributed,
        ))

    async def upsert_vendor_embedding(
        self,
        org_id: str,
        vendor: str,
        embedding: Sequence[float],
        category_id: str,
        confidence: float = 0.5,
    ) -> VendorEmbedding:
        """
        Create or refresh a learned vendor.

        Existing rows get the new vector, category and confidence and their
        transaction_count incremented.
        """
        self._check_dimensions(embedding)
        stored = await self.repository.upsert(VendorEmbedding(
            org_id=org_id,
            vendor=normalize_vendor_name(vendor),
            embedding=list(embedding),
            category_id=category_id,
            confidence=confidence,
        ))
        self._cache.invalidate(org_id)
        logger.info(
            "vendor_embedding_upserted",
            org_id=org_id,
            vendor=stored.vendor,
            category_id=category_id,
            transaction_count=stored.transaction_count,
        )
        return stored

    async def generate_vendor_embeddings(self, vendors: Iterable[str]) -> EmbeddingBatchReport:
        """
        Embed many vendors in rate-limited batches.

        Service errors are recorded per vendor and the run continues. Format and
        configuration errors abort the run: every later vendor would fail the
        same way.
        """
        if self.client is None:
            raise EmbeddingConfigurationError("No embedding client configured")

        names = [v for v in dict.fromkeys(normalize_vendor_name(v) for v in vendors) if v]
        report = EmbeddingBatchReport()

        for start in range(0, len(names), self.batch_size):
            batch = names[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.client.embed(name) for name in batch),
                return_exceptions=True,
            )
            for name, result in zip(batch, results):
                if isinstance(result, (EmbeddingFormatError, EmbeddingConfigurationError)):
                    raise result
                if isinstance(result, BaseException):
                    logger.warning("vendor_embedding_failed", vendor=name, error=str(result))
                    report.failed[name] = str(result)
                    continue
                report.succeeded.append(name)
                report.embeddings[name] = result

            if start + self.batch_size < len(names):
                await asyncio.sleep(self.batch_delay_seconds)

        logger.info(
            "vendor_embeddings_generated",
            requested=len(names),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    async def create_stability_snapshot(
        self,
        org_id: str,
        snapshot_date: Optional[date] = None,
        window_days: int = SNAPSHOT_WINDOW_DAYS,
        min_matches: int = SNAPSHOT_MIN_MATCHES,
    ) -> int:
        """
        Roll recent matches into per-vendor snapshots.

        Idempotent: snapshots are upserted on (org_id, snapshot_date, vendor).

        Returns:
            Number of vendor snapshots written
        """
        snapshot_date = snapshot_date or datetime.now(timezone.utc).date()
        until = datetime.combine(snapshot_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        since = until - timedelta(days=window_days)
        matches = await self.repository.list_matches(org_id, since, until)

        by_vendor: Dict[str, List[EmbeddingMatch]] = {}
        for match in matches:
            by_vendor.setdefault(match.matched_vendor, []).append(match)

        written = 0
        for vendor, vendor_matches in sorted(by_vendor.items()):
            if len(vendor_matches) < min_matches:
                continue
            breakdown = Counter(m.matched_category_id for m in vendor_matches if m.matched_category_id)
            dominant = breakdown.most_common(1)[0][0] if breakdown else None
            recent = sorted(vendor_matches, key=lambda m: m.created_at, reverse=True)[:SNAPSHOT_SAMPLE_SIZE]

            await self.repository.upsert_snapshot(StabilitySnapshot(
                org_id=org_id,
                snapshot_date=snapshot_date,
                vendor=vendor,
                category_id=dominant,
                category_breakdown=dict(breakdown),
                avg_similarity=sum(m.similarity for m in vendor_matches) / len(vendor_matches),
                match_count=len(vendor_matches),
                sample_matches=[
                    {
                        "transaction_id": m.transaction_id,
                        "similarity": round(m.similarity, 4),
                        "contributed": m.contributed_to_decision,
                        "date": m.created_at.isoformat(),
                    }
                    for m in recent
                ],
                embedding_version=EMBEDDING_VERSION,
            ))
            written += 1

        logger.info(
            "stability_snapshot_created",
            org_id=org_id,
            snapshot_date=snapshot_date.isoformat(),
            vendors=written,
            matches=len(matches),
        )
        return written

    async def get_vendor_stability_metrics(
        self,
        org_id: str,
        vendor: str,
        days: int = 30,
    ) -> VendorStabilityMetrics:
        """
        Trend of one vendor's snapshots.

        Drift is flagged when snapshots disagree on the dominant category or the
        average similarity fell by more than 0.1 between the oldest and newest.
        """
        normalized = normalize_vendor_name(vendor)
        since = datetime.now(timezone.utc).date() - timedelta(days=days)
        snapshots = await self.repository.list_snapshots(org_id, normalized, since)
        if not snapshots:
            return VendorStabilityMetrics(vendor=normalized, snapshot_count=0)

        ordered = sorted(snapshots, key=lambda s: s.snapshot_date)
        categories = sorted({s.category_id for s in ordered if s.category_id})
        trend = ordered[-1].avg_similarity - ordered[0].avg_similarity
        drift = len(categories) > 1 or trend < -DRIFT_SIMILARITY_DROP

        if drift:
            logger.warning(
                "vendor_embedding_drift",
                org_id=org_id,
                vendor=normalized,
                categories=categories,
                similarity_trend=round(trend, 4),
            )

        return VendorStabilityMetrics(
            vendor=normalized,
            snapshot_count=len(ordered),
            avg_similarity=sum(s.avg_similarity for s in ordered) / len(ordered),
            similarity_trend=trend,
            distinct_categories=categories,
            drift_detected=drift,
        )

    async def refresh_cache(self, org_id: str) -> None:
        await self._cache.refresh(org_id)
