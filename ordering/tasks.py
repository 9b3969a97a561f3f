"""
Celery Tasks
Background maintenance jobs: stale guest cleanup and order report export.

Each task runs its coroutine with asyncio.run on a private engine, since
the worker process has no running event loop of its own.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ordering.celery_worker import celery_app
from ordering.core.config import get_settings
from ordering.database import build_engine, utcnow
from ordering.models import OrderStatus
from ordering.services.guests import GuestIdentityResolver
from ordering.services.reports import ReportExporter, ReportFormat, fetch_orders

logger = logging.getLogger(__name__)


async def _run_cleanup() -> dict:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        async with session_maker() as session:
            result = await GuestIdentityResolver(session, settings=settings).cleanup_stale()
        return result.to_dict()
    finally:
        await engine.dispose()


async def _run_export(fmt: ReportFormat, days: int, status: Optional[OrderStatus]) -> dict:
    settings = get_settings()
    engine = build_engine(settings.database_url)
    try:
        session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        now = utcnow()
        async with session_maker() as session:
            orders = await fetch_orders(
                session,
                status=status,
                date_from=now - timedelta(days=days),
                date_to=now,
            )
        report = ReportExporter.export_orders(orders, fmt, generated_at=now)
        return ReportExporter.write_to_directory(report)
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def cleanup_guest_users(self) -> dict:
    """
    Delete guest users idle longer than the retention window.

    Returns:
        dict: Counts of deleted guests and carts, and the cutoff used
    """
    task_id = self.request.id
    start_time = time.time()
    logger.info(f"Task {task_id}: guest cleanup started")

    result = asyncio.run(_run_cleanup())

    result['task_id'] = task_id
    result['processing_time_seconds'] = round(time.time() - start_time, 3)
    logger.info(f"Task {task_id}: removed {result['deleted_users']} guests in {result['processing_time_seconds']}s")
    return result


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def export_orders_report(self, fmt: str = 'excel', days: int = 1, status: Optional[str] = None) -> dict:
    """
    Write an orders report for the last ``days`` days to the data directory.

    Args:
        fmt: ``csv``, ``excel`` or ``pdf``
        days: How far back to include orders
        status: Only include orders in this status

    Returns:
        dict: Result of the file write
    """
    task_id = self.request.id
    start_time = time.time()
    report_format = ReportFormat(fmt)
    order_status = OrderStatus(status) if status else None

    result = asyncio.run(_run_export(report_format, days, order_status))

    elapsed = round(time.time() - start_time, 3)
    result['task_id'] = task_id
    result['processing_time_seconds'] = elapsed
    if result['success']:
        logger.info(f"Task {task_id}: {result['message']} in {elapsed}s")
    else:
        logger.warning(f"Task {task_id}: report export failed - {result['message']}")
    return result


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': utcnow().isoformat()
    }
