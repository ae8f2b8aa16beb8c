"""Periodic ledger and touch maintenance using APScheduler."""
from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from affiliate_attribution.db import engine as db_engine
from affiliate_attribution.db.tables import ClinicRow
from affiliate_attribution.services.commission_ledger import approve_pending_commissions
from affiliate_attribution.services.touch_store import reconcile_unresolved_touches

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_commission_approval(session_factory: Optional[async_sessionmaker] = None) -> int:
    """Approve commissions whose hold period has passed."""
    factory = session_factory or db_engine.get_session_factory()
    try:
        async with factory() as session:
            return await approve_pending_commissions(session)
    except Exception:
        logger.exception("Scheduled commission approval failed")
        return 0


async def scheduled_touch_reconciliation(session_factory: Optional[async_sessionmaker] = None) -> int:
    """Resolve touches whose ref code was created after they were recorded."""
    factory = session_factory or db_engine.get_session_factory()
    resolved = 0
    try:
        async with factory() as session:
            clinic_ids = (await session.execute(select(ClinicRow.id))).scalars().all()
            for clinic_id in clinic_ids:
                resolved += await reconcile_unresolved_touches(session, clinic_id)
            await session.commit()
    except Exception:
        logger.exception("Scheduled touch reconciliation failed")
    return resolved


def start_scheduler(
    approval_interval_minutes: int = 60,
    reconcile_interval_hours: int = 6,
):
    """Start the background scheduler."""
    scheduler.add_job(
        scheduled_commission_approval,
        trigger=IntervalTrigger(minutes=approval_interval_minutes),
        id="commission_approval",
        name="Approve held commissions",
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_touch_reconciliation,
        trigger=IntervalTrigger(hours=reconcile_interval_hours),
        id="touch_reconciliation",
        name="Reconcile unresolved touches",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        "Scheduler started: approvals every %dm, reconciliation every %dh",
        approval_interval_minutes, reconcile_interval_hours,
    )


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")