"""
Correction history and category oscillation persistence

Tables:
    category_corrections(id, org_id, transaction_id, category_id, changed_at, changed_by)
    category_oscillations(id, org_id, transaction_id, oscillation_sequence jsonb,
                          oscillation_count, first_detected_at, last_detected_at,
                          is_resolved, resolution_category_id, resolved_at, resolved_by)
"""
import json
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import text

from ledgerlens.common.database import sessionmanager
from ledgerlens.domain.categorization.schemas import CategoryOscillation, Correction

logger = structlog.get_logger()

OSCILLATION_COLUMNS = """
    id, org_id, transaction_id, oscillation_sequence, oscillation_count,
    first_detected_at, last_detected_at, is_resolved, resolution_category_id,
    resolved_at, resolved_by
"""


def _oscillation_from_row(row) -> CategoryOscillation:
    data: Dict[str, Any] = dict(row._mapping)
    data["id"] = str(data["id"])
    sequence = data["oscillation_sequence"]
    data["oscillation_sequence"] = json.loads(sequence) if isinstance(sequence, str) else (sequence or [])
    return CategoryOscillation(**data)


def _oscillation_params(oscillation: CategoryOscillation) -> Dict[str, Any]:
    params = oscillation.model_dump(exclude={"oscillation_sequence"})
    params["oscillation_sequence"] = json.dumps(
        [entry.model_dump(mode="json") for entry in oscillation.oscillation_sequence]
    )
    return params


class SqlOscillationRepository:
    def __init__(self, session_factory: Callable = None):
        self.session_factory = session_factory or sessionmanager.session

    async def add_correction(self, correction: Correction) -> None:
        query = text("""
            INSERT INTO category_corrections (org_id, transaction_id, category_id, changed_at, changed_by)
            VALUES (:org_id, :transaction_id, :category_id, :changed_at, :changed_by)
        """)
        async with self.session_factory() as db:
            await db.execute(query, correction.model_dump())

    async def list_corrections(self, org_id: str, transaction_id: str) -> List[Correction]:
        query = text("""
            SELECT org_id, transaction_id, category_id, changed_at, changed_by
            FROM category_corrections
            WHERE org_id = :org_id AND transaction_id = :transaction_id
            ORDER BY changed_at ASC
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "transaction_id": transaction_id})
            return [Correction(**dict(row._mapping)) for row in result.fetchall()]

    async def upsert_oscillation(self, oscillation: CategoryOscillation) -> CategoryOscillation:
        query = text("""
            INSERT INTO category_oscillations (
                id, org_id, transaction_id, oscillation_sequence, oscillation_count,
                first_detected_at, last_detected_at, is_resolved, resolution_category_id,
                resolved_at, resolved_by
            ) VALUES (
                :id, :org_id, :transaction_id, CAST(:oscillation_sequence AS jsonb), :oscillation_count,
                :first_detected_at, :last_detected_at, :is_resolved, :resolution_category_id,
                :resolved_at, :resolved_by
            )
            ON CONFLICT (org_id, transaction_id) WHERE is_resolved = FALSE DO UPDATE SET
                oscillation_sequence = EXCLUDED.oscillation_sequence,
                oscillation_count = EXCLUDED.oscillation_count,
                last_detected_at = EXCLUDED.last_detected_at
            RETURNING id
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, _oscillation_params(oscillation))
            oscillation_id = str(result.scalar_one())
        return oscillation.model_copy(update={"id": oscillation_id})

    async def get(self, oscillation_id: str) -> Optional[CategoryOscillation]:
        query = text(f"SELECT {OSCILLATION_COLUMNS} FROM category_oscillations WHERE id = :id")
        async with self.session_factory() as db:
            row = (await db.execute(query, {"id": oscillation_id})).fetchone()
            return _oscillation_from_row(row) if row else None

    async def get_for_transaction(self, org_id: str, transaction_id: str) -> Optional[CategoryOscillation]:
        """The unresolved oscillation if there is one, else the most recent."""
        query = text(f"""
            SELECT {OSCILLATION_COLUMNS}
            FROM category_oscillations
            WHERE org_id = :org_id AND transaction_id = :transaction_id
            ORDER BY is_resolved ASC, last_detected_at DESC
            LIMIT 1
        """)
        async with self.session_factory() as db:
            row = (await db.execute(query, {"org_id": org_id, "transaction_id": transaction_id})).fetchone()
            return _oscillation_from_row(row) if row else None

    async def list_unresolved(self, org_id: str, limit: int) -> List[CategoryOscillation]:
        query = text(f"""
            SELECT {OSCILLATION_COLUMNS}
            FROM category_oscillations
            WHERE org_id = :org_id AND is_resolved = FALSE
            ORDER BY last_detected_at DESC
            LIMIT :limit
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "limit": limit})
            return [_oscillation_from_row(row) for row in result.fetchall()]

    async def save(self, oscillation: CategoryOscillation) -> CategoryOscillation:
        query = text("""
            UPDATE category_oscillations
            SET oscillation_sequence = CAST(:oscillation_sequence AS jsonb),
                oscillation_count = :oscillation_count,
                last_detected_at = :last_detected_at,
                is_resolved = :is_resolved,
                resolution_category_id = :resolution_category_id,
                resolved_at = :resolved_at,
                resolved_by = :resolved_by
            WHERE id = :id
        """)
        async with self.session_factory() as db:
            await db.execute(query, _oscillation_params(oscillation))
        return oscillation

    async def unresolved_transaction_ids(self, org_id: str) -> List[str]:
        query = text("""
            SELECT DISTINCT transaction_id FROM category_oscillations
            WHERE org_id = :org_id AND is_resolved = FALSE
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id})
            return [row.transaction_id for row in result.fetchall()]
