"""
Learning-loop batch jobs

- create_stability_snapshots: roll a week of embedding matches into per-vendor
  snapshots (idempotent upsert per org/date/vendor)
- run_canary_test: replay a candidate rule version against reviewed transactions
- generate_vendor_embeddings: embed vendors in rate-limited batches and upsert
  them (per-vendor failures are reported, not fatal)

Celery runs tasks synchronously; each one drives its coroutine with
asyncio.run and closes the DB pool before the loop goes away.
"""
import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from celery import Task

from services.worker.celery_app import app
from ledgerlens.common.config import get_settings
from ledgerlens.common.database import sessionmanager
from ledgerlens.common.embedding_repository import SqlVendorEmbeddingRepository
from ledgerlens.domain.categorization.exceptions import EmbeddingConfigurationError, EmbeddingFormatError, NotFoundError
from ledgerlens.domain.categorization.factory import build_embedding_matcher, build_learning_loop
from ledgerlens.domain.categorization.rules.vendors import normalize_vendor_name

logger = structlog.get_logger()


class LearningTask(Task):
    """Base task for learning jobs with retry logic"""
    autoretry_for = (Exception,)
    dont_autoretry_for = (EmbeddingConfigurationError, EmbeddingFormatError, NotFoundError)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True


def _run(coro):
    async def runner():
        try:
            return await coro
        finally:
            await sessionmanager.close()
    return asyncio.run(runner())


async def _snapshot_orgs(org_ids: List[str], snapshot_date: Optional[date]) -> Dict[str, int]:
    matcher = build_embedding_matcher(get_settings())
    written = {}
    for org_id in org_ids:
        written[org_id] = await matcher.create_stability_snapshot(org_id, snapshot_date)
    return written


@app.task(base=LearningTask, name="services.worker.tasks.learning_jobs.create_stability_snapshots")
def create_stability_snapshots(org_id: str, snapshot_date: Optional[str] = None) -> Dict[str, Any]:
    """
    Create embedding stability snapshots for one org.

    Args:
        org_id: Organization to snapshot
        snapshot_date: ISO date (defaults to today, UTC)
    """
    day = date.fromisoformat(snapshot_date) if snapshot_date else None
    written = _run(_snapshot_orgs([org_id], day))
    logger.info("stability_snapshot_task_complete", org_id=org_id, vendors=written[org_id])
    return {"org_id": org_id, "vendors": written[org_id]}


@app.task(base=LearningTask, name="services.worker.tasks.learning_jobs.create_stability_snapshots_for_all_orgs")
def create_stability_snapshots_for_all_orgs() -> Dict[str, Any]:
    """Nightly snapshot run across every org with embedding matches."""
    async def run():
        org_ids = await SqlVendorEmbeddingRepository().list_org_ids()
        return await _snapshot_orgs(org_ids, None)

    written = _run(run())
    logger.info("stability_snapshots_complete", orgs=len(written), vendors=sum(written.values()))
    return {"orgs": len(written), "vendors": written}


@app.task(base=LearningTask, name="services.worker.tasks.learning_jobs.run_canary_test")
def run_canary_test(org_id: str, rule_version_id: str) -> Dict[str, Any]:
    """Canary-test one rule version and return the persisted result."""
    async def run():
        return await build_learning_loop().run_canary_test(org_id, rule_version_id)

    result = _run(run())
    return result.model_dump(mode="json")


@app.task(base=LearningTask, name="services.worker.tasks.learning_jobs.generate_vendor_embeddings")
def generate_vendor_embeddings(org_id: str, vendors: Dict[str, str], confidence: float = 0.5) -> Dict[str, Any]:
    """
    Embed vendors and store them against their reviewed categories.

    Args:
        org_id: Organization owning the vendors
        vendors: Vendor name -> category id
        confidence: Confidence stored with each embedding
    """
    async def run():
        matcher = build_embedding_matcher(get_settings())
        report = await matcher.generate_vendor_embeddings(vendors.keys())

        # Keys in the report are normalized vendor names
        categories = {normalize_vendor_name(vendor): category_id for vendor, category_id in vendors.items()}

        for vendor, embedding in list(report.embeddings.items()):
            try:
                await matcher.upsert_vendor_embedding(org_id, vendor, embedding, categories[vendor], confidence)
            except Exception as e:
                logger.warning("vendor_embedding_upsert_failed", org_id=org_id, vendor=vendor, error=str(e))
                report.succeeded.remove(vendor)
                report.failed[vendor] = str(e)
        return report

    report = _run(run())
    logger.info(
        "vendor_embedding_task_complete",
        org_id=org_id,
        succeeded=len(report.succeeded),
        failed=len(report.failed),
    )
    return {"succeeded": report.succeeded, "failed": report.failed}
