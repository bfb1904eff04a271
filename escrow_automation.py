"""
Escrow Automation Module

Background jobs for the escrow system:
- Stalled assessment sweep: transactions whose risk assessment has been
  processing for too long fall back to manual review
- Review queue report: periodic summary of transactions waiting on admins

Dependencies:
    - APScheduler: For background job scheduling
    - escrow_service.py: For escrow transitions
    - notifications.py: For admin notifications
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config, get_config
from escrow_errors import InvalidStateError
from escrow_service import EscrowService
from notifications import EscrowNotifier

logger = logging.getLogger(__name__)


class EscrowAutomation:
    """
    Automation service for the escrow system.

    Attributes:
        service: Escrow engine the jobs act through
        notifier: Admin notifier
        scheduler: APScheduler instance running the jobs
    """

    def __init__(
        self,
        service: EscrowService,
        notifier: EscrowNotifier,
        config: Optional[Config] = None
    ):
        self.service = service
        self.notifier = notifier
        self.config = config or get_config()
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self.is_running = False

        # Statistics
        self.stats: Dict[str, Any] = {
            'assessment_fallbacks': 0,
            'review_reports_sent': 0,
            'last_run': {},
        }

    async def start(self) -> None:
        """Start the automation scheduler."""
        if self.is_running:
            logger.warning("Automation scheduler already running")
            return

        self._schedule_tasks()
        self.scheduler.start()
        self.is_running = True
        self.stats['start_time'] = datetime.now(timezone.utc)

        logger.info("Escrow automation started successfully")
        logger.info(f"Scheduled jobs: {len(self.scheduler.get_jobs())}")

    async def stop(self) -> None:
        """Stop the automation scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Escrow automation stopped")

    def _schedule_tasks(self) -> None:
        """Schedule all automation tasks."""

        # Stalled assessments - Every minute
        self.scheduler.add_job(
            self.expire_stalled_assessments,
            trigger=IntervalTrigger(minutes=1),
            id='expire_stalled_assessments',
            name='Expire Stalled Assessments',
            max_instances=1,
            misfire_grace_time=30
        )

        # Review queue report - Every REVIEW_REPORT_HOURS
        self.scheduler.add_job(
            self.report_review_queue,
            trigger=IntervalTrigger(hours=self.config.review_report_hours),
            id='report_review_queue',
            name='Report Review Queue',
            max_instances=1,
            misfire_grace_time=300
        )

    async def expire_stalled_assessments(self) -> int:
        """
        Fall back to manual review for assessments that never came back.

        Process:
        1. Find pending transactions processing since before the cutoff
        2. Apply the manual-review fallback, tagged with the outstanding nonce
        3. Notify the admin chat

        Returns:
            Number of transactions moved to manual review
        """
        minutes = self.config.stalled_assessment_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        start_time = datetime.now(timezone.utc)

        try:
            stalled = await self.service.store.query_stalled_assessments(cutoff)
        except Exception as e:
            logger.error(f"Stalled assessment sweep failed: {e}", exc_info=True)
            return 0

        if stalled:
            logger.info(f"Found {len(stalled)} stalled risk assessments")

        expired_count = 0
        reason = f"Risk assessment did not complete within {minutes} minutes"

        for txn in stalled:
            try:
                updated = await self.service.fallback_to_manual_review(
                    txn.id, reason, nonce=txn.assessment_nonce
                )
            except InvalidStateError as e:
                # Assessment landed or the transaction moved on meanwhile
                logger.info(f"Skipping {txn.id}: {e}")
                continue
            except Exception as e:
                logger.error(f"Failed to expire assessment of {txn.id}: {e}")
                continue

            expired_count += 1
            await self.notifier.notify_fallback(updated, reason)

        self.stats['assessment_fallbacks'] += expired_count
        self.stats['last_run']['expire_stalled_assessments'] = datetime.now(timezone.utc)

        if stalled:
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(
                f"Stalled assessment sweep completed: {expired_count} moved to "
                f"manual review in {duration:.2f}s"
            )
        return expired_count

    async def report_review_queue(self) -> Optional[Dict[str, int]]:
        """Send the admin chat a summary of transactions awaiting a decision."""
        logger.info("Starting review queue report")

        try:
            queue = await self.service.get_review_queue()
        except Exception as e:
            logger.error(f"Review queue report failed: {e}", exc_info=True)
            return None

        if await self.notifier.notify_review_queue(queue):
            self.stats['review_reports_sent'] += 1

        self.stats['last_run']['report_review_queue'] = datetime.now(timezone.utc)
        logger.info(f"Review queue: {queue}")
        return queue

    def get_stats(self) -> Dict[str, Any]:
        """Get automation statistics."""
        now = datetime.now(timezone.utc)
        return {
            'is_running': self.is_running,
            'scheduled_jobs': len(self.scheduler.get_jobs()) if self.is_running else 0,
            'stats': self.stats,
            'uptime': (now - self.stats.get('start_time', now)).total_seconds()
        }
