"""
Rule version and canary result persistence

Tables:
    rule_versions(id, org_id, rule_type, rule_identifier, category_id, confidence,
                  version, source, parent_version_id, is_active, metadata jsonb,
                  created_by, created_at, deactivated_at, deactivated_by,
                  deactivation_reason)
    canary_test_results(id, org_id, rule_version_id, test_date, test_set_size,
                        true_positives, false_positives, false_negatives,
                        true_negatives, accuracy, precision, recall, f1_score,
                        passed_threshold, promoted_to_production, metadata jsonb,
                        created_at)

A partial unique index on (coalesce(org_id, ''), rule_type, rule_identifier)
WHERE is_active backs the single-active-version rule.
"""
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import text

from ledgerlens.common.database import sessionmanager
from ledgerlens.domain.categorization.exceptions import ConcurrentRuleUpdateError, NotFoundError
from ledgerlens.domain.categorization.schemas import CanaryTestResult, RuleType, RuleVersion

logger = structlog.get_logger()

RULE_COLUMNS = """
    id, org_id, rule_type, rule_identifier, category_id, confidence, version,
    source, parent_version_id, is_active, metadata, created_by, created_at,
    deactivated_at, deactivated_by, deactivation_reason
"""

CANARY_COLUMNS = """
    id, org_id, rule_version_id, test_date, test_set_size, true_positives,
    false_positives, false_negatives, true_negatives, accuracy, precision,
    recall, f1_score, passed_threshold, promoted_to_production, metadata,
    created_at
"""


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value or {}


def _rule_from_row(row) -> RuleVersion:
    data: Dict[str, Any] = dict(row._mapping)
    data["id"] = str(data["id"])
    data["parent_version_id"] = str(data["parent_version_id"]) if data["parent_version_id"] else None
    data["confidence"] = float(data["confidence"])
    data["metadata"] = _json(data["metadata"])
    return RuleVersion(**data)


def _canary_from_row(row) -> CanaryTestResult:
    data: Dict[str, Any] = dict(row._mapping)
    data["id"] = str(data["id"])
    data["rule_version_id"] = str(data["rule_version_id"])
    for key in ("accuracy", "precision", "recall", "f1_score"):
        data[key] = float(data[key] or 0)
    data["metadata"] = _json(data["metadata"])
    return CanaryTestResult(**data)


class SqlRuleVersionRepository:
    """
    Rule versions backed by PostgreSQL.

    activate_exclusive locks the identifier's rows with SELECT ... FOR UPDATE,
    then flips the active flag with a compare-and-swap on the previously seen
    active id. Losing the swap raises ConcurrentRuleUpdateError.
    """

    def __init__(self, session_factory: Callable = None):
        self.session_factory = session_factory or sessionmanager.session

    async def list_versions(
        self, org_id: Optional[str], rule_type: RuleType, rule_identifier: str
    ) -> List[RuleVersion]:
        query = text(f"""
            SELECT {RULE_COLUMNS}
            FROM rule_versions
            WHERE org_id IS NOT DISTINCT FROM :org_id
              AND rule_type = :rule_type
              AND rule_identifier = :rule_identifier
            ORDER BY version ASC
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {
                "org_id": org_id,
                "rule_type": RuleType(rule_type).value,
                "rule_identifier": rule_identifier,
            })
            return [_rule_from_row(row) for row in result.fetchall()]

    async def get(self, version_id: str) -> Optional[RuleVersion]:
        query = text(f"SELECT {RULE_COLUMNS} FROM rule_versions WHERE id = :id")
        async with self.session_factory() as db:
            row = (await db.execute(query, {"id": version_id})).fetchone()
            return _rule_from_row(row) if row else None

    async def insert(self, version: RuleVersion) -> RuleVersion:
        query = text("""
            INSERT INTO rule_versions (
                id, org_id, rule_type, rule_identifier, category_id, confidence,
                version, source, parent_version_id, is_active, metadata,
                created_by, created_at
            ) VALUES (
                :id, :org_id, :rule_type, :rule_identifier, :category_id, :confidence,
                :version, :source, :parent_version_id, :is_active, CAST(:metadata AS jsonb),
                :created_by, :created_at
            )
        """)
        async with self.session_factory() as db:
            await db.execute(query, {
                "id": version.id,
                "org_id": version.org_id,
                "rule_type": version.rule_type.value,
                "rule_identifier": version.rule_identifier,
                "category_id": version.category_id,
                "confidence": version.confidence,
                "version": version.version,
                "source": version.source.value,
                "parent_version_id": version.parent_version_id,
                "is_active": version.is_active,
                "metadata": json.dumps(version.metadata),
                "created_by": version.created_by,
                "created_at": version.created_at,
            })
        return version

    async def activate_exclusive(
        self, version_id: str, changed_by: Optional[str], reason: Optional[str]
    ) -> RuleVersion:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            target = (await db.execute(
                text(f"SELECT {RULE_COLUMNS} FROM rule_versions WHERE id = :id FOR UPDATE"),
                {"id": version_id},
            )).fetchone()
            if target is None:
                raise NotFoundError(f"Rule version {version_id} not found")
            target_version = _rule_from_row(target)

            siblings = (await db.execute(text("""
                SELECT id FROM rule_versions
                WHERE org_id IS NOT DISTINCT FROM :org_id
                  AND rule_type = :rule_type
                  AND rule_identifier = :rule_identifier
                  AND is_active = TRUE
                FOR UPDATE
            """), {
                "org_id": target_version.org_id,
                "rule_type": target_version.rule_type.value,
                "rule_identifier": target_version.rule_identifier,
            })).fetchall()
            active_ids = [str(row.id) for row in siblings if str(row.id) != version_id]

            if active_ids:
                deactivated = await db.execute(text("""
                    UPDATE rule_versions
                    SET is_active = FALSE,
                        deactivated_at = :now,
                        deactivated_by = :changed_by,
                        deactivation_reason = :reason
                    WHERE id = ANY(:ids) AND is_active = TRUE
                """), {"ids": active_ids, "now": now, "changed_by": changed_by, "reason": reason})
                if deactivated.rowcount != len(active_ids):
                    raise ConcurrentRuleUpdateError(
                        f"Active version of {target_version.rule_identifier} changed during activation"
                    )

            activated = await db.execute(text("""
                UPDATE rule_versions
                SET is_active = TRUE, deactivated_at = NULL, deactivated_by = NULL, deactivation_reason = NULL
                WHERE id = :id AND is_active = :was_active
            """), {"id": version_id, "was_active": target_version.is_active})
            if activated.rowcount != 1:
                raise ConcurrentRuleUpdateError(f"Rule version {version_id} changed during activation")

        logger.info("rule_version_activated", rule_version_id=version_id, deactivated=active_ids)
        return target_version.model_copy(update={
            "is_active": True,
            "deactivated_at": None,
            "deactivated_by": None,
            "deactivation_reason": None,
        })

    async def list_active(self, org_id: str, rule_type: Optional[RuleType] = None) -> List[RuleVersion]:
        query = f"""
            SELECT {RULE_COLUMNS}
            FROM rule_versions
            WHERE is_active = TRUE
              AND (org_id = :org_id OR org_id IS NULL)
        """
        params: Dict[str, Any] = {"org_id": org_id}
        if rule_type is not None:
            query += " AND rule_type = :rule_type"
            params["rule_type"] = RuleType(rule_type).value
        query += " ORDER BY rule_type, rule_identifier"

        async with self.session_factory() as db:
            result = await db.execute(text(query), params)
            return [_rule_from_row(row) for row in result.fetchall()]

    async def save_canary_result(self, result: CanaryTestResult) -> CanaryTestResult:
        query = text(f"""
            INSERT INTO canary_test_results ({CANARY_COLUMNS})
            VALUES (
                :id, :org_id, :rule_version_id, :test_date, :test_set_size, :true_positives,
                :false_positives, :false_negatives, :true_negatives, :accuracy, :precision,
                :recall, :f1_score, :passed_threshold, :promoted_to_production,
                CAST(:metadata AS jsonb), :created_at
            )
        """)
        params = result.model_dump()
        params["metadata"] = json.dumps(result.metadata)
        async with self.session_factory() as db:
            await db.execute(query, params)
        return result

    async def latest_canary_result(self, rule_version_id: str) -> Optional[CanaryTestResult]:
        query = text(f"""
            SELECT {CANARY_COLUMNS}
            FROM canary_test_results
            WHERE rule_version_id = :rule_version_id
            ORDER BY created_at DESC
            LIMIT 1
        """)
        async with self.session_factory() as db:
            row = (await db.execute(query, {"rule_version_id": rule_version_id})).fetchone()
            return _canary_from_row(row) if row else None

    async def mark_canary_promoted(self, canary_id: str) -> None:
        query = text("UPDATE canary_test_results SET promoted_to_production = TRUE WHERE id = :id")
        async with self.session_factory() as db:
            await db.execute(query, {"id": canary_id})

    async def versions_created_since(self, org_id: str, since: datetime) -> List[RuleVersion]:
        query = text(f"""
            SELECT {RULE_COLUMNS}
            FROM rule_versions
            WHERE org_id = :org_id AND created_at >= :since
            ORDER BY created_at ASC
        """)
        async with self.session_factory() as db:
            result = await db.execute(query, {"org_id": org_id, "since": since})
            return [_rule_from_row(row) for row in result.fetchall()]
