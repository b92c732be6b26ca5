"""
Vendor embedding, match and stability snapshot persistence

Tables:
    vendor_embeddings(org_id, vendor, embedding float8[], category_id, confidence,
                      transaction_count, last_refreshed)  PK (org_id, vendor)
    embedding_matches(id, org_id, transaction_id, matched_vendor, similarity,
                      matched_category_id, contributed_to_decision, created_at)
    embedding_stability_snapshots(org_id, snapshot_date, vendor, category_id,
                      category_breakdown jsonb, avg_similarity, match_count,
                      sample_matches jsonb, embedding_version)
                      PK (org_id, snapshot_date, vendor)
"""
import json
from datetime import date, datetime
from typing import Callable, List

import structlog
from sqlalchemy import text

from ledgerlens.common.database import sessionmanager
from ledgerlens.domain.categorization.schemas import EmbeddingMatch, StabilitySnapshot, VendorEmbedding

logger = structlog.get_logger()


def _loads(value):
    return json.loads(value) if isinstance(value, str) else value


class SqlVendorEmbeddingRepository:
    """Vendor embeddings stored as float arrays; similarity is computed in the matcher."""

    def __init__(self, session_factory: Callable = None):
        self.session_factory = session_factory or sessionmanager.session

    async def upsert(self, embedding: VendorEmbedding) -> VendorEmbedding:
        query = text("""
            INSERT INTO vendor_embeddings (
                org_id, vendor, embedding, category_id, confidence, transaction_count, last_refreshed
            ) VALUES (
                :org_id, :vendor, :embedding, :category_id, :confidence, 1, :last_refreshed
            )
            ON CONFLICT (org_id, vendor) DO UPDATE SET
                embedding = EXCLUDED.embedding,
                category_id = EXCLUDED.category_id,
                confidence = EXCLUDED.confidence,
                transaction_count = vendor_embeddings.transaction_count + 1,
                last_refreshed = EXCLUDED.last_refreshed
            RETURNING transaction_count
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {
                "org_id": embedding.org_id,
                "vendor": embedding.vendor,
                "embedding": list(embedding.embedding),
                "category_id": embedding.category_id,
                "confidence": embedding.confidence,
                "last_refreshed": embedding.last_refreshed,
            })
            count = result.scalar_one()
        return embedding.model_copy(update={"transaction_count": count})

    async def list_eligible(self, org_id: str, min_transaction_count: int) -> List[VendorEmbedding]:
        query = text("""
            SELECT org_id, vendor, embedding, category_id, confidence, transaction_count, last_refreshed
            FROM vendor_embeddings
            WHERE org_id = :org_id AND transaction_count >= :min_count
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "min_count": min_transaction_count})
            return [
                VendorEmbedding(
                    org_id=row.org_id,
                    vendor=row.vendor,
                    embedding=[float(v) for v in row.embedding],
                    category_id=str(row.category_id),
                    confidence=float(row.confidence),
                    transaction_count=row.transaction_count,
                    last_refreshed=row.last_refreshed,
                )
                for row in result.fetchall()
            ]

    async def record_match(self, match: EmbeddingMatch) -> None:
        query = text("""
            INSERT INTO embedding_matches (
                org_id, transaction_id, matched_vendor, similarity,
                matched_category_id, contributed_to_decision, created_at
            ) VALUES (
                :org_id, :transaction_id, :matched_vendor, :similarity,
                :matched_category_id, :contributed_to_decision, :created_at
            )
        """)
        async with self.session_factory() as db:
            await db.execute(query, match.model_dump())

    async def list_matches(self, org_id: str, since: datetime, until: datetime) -> List[EmbeddingMatch]:
        query = text("""
            SELECT org_id, transaction_id, matched_vendor, similarity,
                   matched_category_id, contributed_to_decision, created_at
            FROM embedding_matches
            WHERE org_id = :org_id AND created_at >= :since AND created_at < :until
            ORDER BY created_at ASC
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "since": since, "until": until})
            return [
                EmbeddingMatch(**{**dict(row._mapping), "similarity": float(row.similarity)})
                for row in result.fetchall()
            ]

    async def upsert_snapshot(self, snapshot: StabilitySnapshot) -> None:
        query = text("""
            INSERT INTO embedding_stability_snapshots (
                org_id, snapshot_date, vendor, category_id, category_breakdown,
                avg_similarity, match_count, sample_matches, embedding_version
            ) VALUES (
                :org_id, :snapshot_date, :vendor, :category_id, CAST(:category_breakdown AS jsonb),
                :avg_similarity, :match_count, CAST(:sample_matches AS jsonb), :embedding_version
            )
            ON CONFLICT (org_id, snapshot_date, vendor) DO UPDATE SET
                category_id = EXCLUDED.category_id,
                category_breakdown = EXCLUDED.category_breakdown,
                avg_similarity = EXCLUDED.avg_similarity,
                match_count = EXCLUDED.match_count,
                sample_matches = EXCLUDED.sample_matches,
                embedding_version = EXCLUDED.embedding_version
        """)
        params = snapshot.model_dump()
        params["category_breakdown"] = json.dumps(snapshot.category_breakdown)
        params["sample_matches"] = json.dumps(snapshot.sample_matches, default=str)
        async with self.session_factory() as db:
            await db.execute(query, params)

    async def list_snapshots(self, org_id: str, vendor: str, since: date) -> List[StabilitySnapshot]:
        query = text("""
            SELECT org_id, snapshot_date, vendor, category_id, category_breakdown,
                   avg_similarity, match_count, sample_matches, embedding_version
            FROM embedding_stability_snapshots
            WHERE org_id = :org_id AND vendor = :vendor AND snapshot_date >= :since
            ORDER BY snapshot_date DESC
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "vendor": vendor, "since": since})
            snapshots = []
            for row in result.fetchall():
                data = dict(row._mapping)
                data["category_breakdown"] = _loads(data["category_breakdown"]) or {}
                data["sample_matches"] = _loads(data["sample_matches"]) or []
                data["avg_similarity"] = float(data["avg_similarity"])
                snapshots.append(StabilitySnapshot(**data))
            return snapshots

    async def list_org_ids(self) -> List[str]:
        """Orgs with at least one recorded embedding match."""
        query = text("SELECT DISTINCT org_id FROM embedding_matches ORDER BY org_id")
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [row.org_id for row in result.fetchall()]
