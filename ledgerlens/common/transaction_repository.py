"""
Transaction reads and categorization write-back

Transactions belong to the ingestion side; this repository only reads reviewed
ones for canary samples and writes the categorization columns plus the audit
trail.
"""
import json
from typing import Callable, List

import structlog
from sqlalchemy import text

from ledgerlens.common.database import sessionmanager
from ledgerlens.domain.categorization.schemas import CategorizationResult, LabeledTransaction, NormalizedTransaction

logger = structlog.get_logger()


class SqlTransactionRepository:
    def __init__(self, session_factory: Callable = None):
        self.session_factory = session_factory or sessionmanager.session

    async def labeled_sample(self, org_id: str, size: int) -> List[LabeledTransaction]:
        query = text("""
            SELECT id, org_id, date, amount_cents, currency, description,
                   merchant_name, mcc, source, category_id
            FROM transactions
            WHERE org_id = :org_id
              AND reviewed = TRUE
              AND category_id IS NOT NULL
            ORDER BY reviewed_at DESC
            LIMIT :size
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "size": size})
            rows = result.fetchall()

        sample = []
        for row in rows:
            data = dict(row._mapping)
            category_id = str(data.pop("category_id"))
            data["id"] = str(data["id"])
            data["description"] = data["description"] or ""
            sample.append(LabeledTransaction(transaction=NormalizedTransaction(**data), category_id=category_id))
        return sample

    async def write_categorization(self, org_id: str, result: CategorizationResult) -> None:
        query = text("""
            UPDATE transactions
            SET category_id = :category_id,
                confidence = :confidence,
                needs_review = :needs_review,
                categorization_source = :source,
                categorization_audit = CAST(:audit AS jsonb),
                categorized_at = NOW()
            WHERE org_id = :org_id AND id = :transaction_id
              AND reviewed = FALSE
        """)
        audit = {
            "rationale": result.rationale,
            "guardrails_applied": result.guardrails_applied,
            "signals": [s.model_dump(mode="json") for s in result.signals],
            "attributes": result.attributes,
        }
        async with self.session_factory() as db:
            updated = await db.execute(query, {
                "org_id": org_id,
                "transaction_id": result.transaction_id,
                "category_id": result.category_id,
                "confidence": result.confidence,
                "needs_review": result.needs_review,
                "source": result.source.value,
                "audit": json.dumps(audit),
            })
        if updated.rowcount == 0:
            logger.info("categorization_not_written", transaction_id=result.transaction_id, reason="reviewed_or_missing")
