"""
Capture & Quota Engine

Turns device-reported print events into billed, quota-checked print jobs.
Capturing is idempotent on (printer_id, native job id); processing bills a
capture at most once.
"""
import logging
from typing import List, Optional, Tuple

from config.config import DEFAULT_BW_PAGE_COST, DEFAULT_COLOR_PAGE_COST
from printcloud.models import CaptureStatus, CapturedJobEvent, PrintJob, RawJob
from printcloud.services.errors import (
    CaptureAlreadyProcessed,
    CaptureNotFound,
    IntegrationValidationError,
    QuotaExceeded,
    UserNotFound,
)
from printcloud.services.integration_store import IntegrationStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')


class CaptureEngine:
    """Captures raw jobs and bills them against user quotas."""

    def __init__(self, store: IntegrationStore):
        self.store = store

    def capture_job(self, printer_id: str, raw_job: RawJob) -> Tuple[CapturedJobEvent, bool]:
        """Record a raw job for a printer.

        A job already captured for this printer is returned unchanged with
        created=False; duplicates are not errors.
        """
        if raw_job.pages < 1:
            raise IntegrationValidationError('Page count must be positive', field='pages')
        if raw_job.copies < 1:
            raise IntegrationValidationError('Copy count must be positive', field='copies')

        capture, created = self.store.insert_capture(printer_id, raw_job)
        if created:
            logger.info(
                f"Captured job {raw_job.native_id} on printer {printer_id} "
                f"({raw_job.pages} pages x {raw_job.copies} copies, "
                f"{'color' if raw_job.is_color else 'mono'})"
            )
        else:
            logger.debug(f"Job {raw_job.native_id} on printer {printer_id} already captured")
        return capture, created

    def process_capture(self, capture_id: int, user_id: Optional[str] = None) -> Optional[PrintJob]:
        """Bill a capture to a user.

        Args:
            capture_id: Capture to process
            user_id: User to bill; when omitted the capture is marked
                processed without creating a print job

        Returns:
            The billed PrintJob, or None for an unattributed capture

        Raises:
            CaptureNotFound, CaptureAlreadyProcessed, UserNotFound, QuotaExceeded
        """
        capture = self.store.get_capture(capture_id)
        if capture is None:
            raise CaptureNotFound(capture_id)
        if capture.status != CaptureStatus.CAPTURED:
            raise CaptureAlreadyProcessed(capture_id)

        if not user_id:
            self.store.mark_capture_processed(capture_id)
            logger.info(f"Capture {capture_id} processed without user attribution")
            return None

        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        quota = self.store.get_quota(user_id)
        if quota is None:
            raise QuotaExceeded(
                f'User {user_id} has no print quota configured',
                user_id=user_id,
                details={'reason': 'no_quota'},
            )

        units = capture.total_units
        if quota.would_exceed(capture.is_color, units):
            used, limit = (
                (quota.color_usage, quota.color_limit) if capture.is_color
                else (quota.current_usage, quota.monthly_limit)
            )
            logger.warning(
                f"Quota exceeded for user {user_id}: {used} + {units} > {limit} "
                f"(capture {capture_id})"
            )
            raise QuotaExceeded(
                f"{'Color' if capture.is_color else 'Monthly'} quota exceeded for user {user_id}",
                user_id=user_id,
                details={'requested': units, 'used': used, 'limit': limit, 'color': capture.is_color},
            )

        cost = round(units * self._page_rate(user.department, capture.is_color), 4)
        job = self.store.record_billed_job(capture, user_id, cost)

        audit_logger.info('print_job.billed', extra={
            'print_job_id': job.id,
            'capture_id': capture_id,
            'user_id': user_id,
            'printer_id': capture.printer_id,
            'units': units,
            'color': capture.is_color,
            'cost': cost,
        })
        logger.info(f"Billed capture {capture_id} to {user_id} as print job {job.id} (cost {cost})")
        return job

    def pending_captures(self, printer_id: Optional[str] = None, limit: int = 100) -> List[CapturedJobEvent]:
        """Unprocessed captures, oldest first."""
        return self.store.get_captures(printer_id=printer_id, status=CaptureStatus.CAPTURED, limit=limit)

    def _page_rate(self, department: str, is_color: bool) -> float:
        rates = self.store.get_print_cost(department) if department else None
        if rates is None:
            return DEFAULT_COLOR_PAGE_COST if is_color else DEFAULT_BW_PAGE_COST
        return rates.rate_for(is_color)
