"""
Integration Record Store - SQLite implementation of the persistence contract

Holds device integration configuration, captured job events and the device
status history, and performs the quota/print-job billing transaction.

Every call opens its own connection so the store can be shared between the
polling threads and request handlers. Deduplication of captures relies on the
UNIQUE(printer_id, external_job_id) index, not on in-memory state.
"""
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from config.config import DEFAULT_POLL_INTERVAL_SECONDS
from printcloud.models import (
    get_db_connection,
    init_db,
    utcnow,
    AuthMode,
    CaptureStatus,
    CapturedJobEvent,
    DeviceIntegration,
    DeviceStatusSample,
    Printer,
    PrintCost,
    PrintJob,
    PrintQuota,
    ProtocolKind,
    RawJob,
    User,
)
from printcloud.services.errors import (
    CaptureAlreadyProcessed,
    CaptureNotFound,
    QuotaExceeded,
)
from printcloud.utils.encryption import encrypt_credentials

logger = logging.getLogger(__name__)

_INTEGRATION_FIELDS = ('endpoint', 'protocol', 'auth_mode', 'credentials', 'poll_interval', 'is_active')


class IntegrationStore:
    """Repository for integration, capture, status and billing records."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_path)

    def init_schema(self):
        init_db(self.db_path)

    # -------------------------------------------------------------------------
    # Device integrations
    # -------------------------------------------------------------------------

    def create_integration(self, printer_id: str, protocol: ProtocolKind, endpoint: str,
                           auth_mode: AuthMode = AuthMode.NONE,
                           credentials: Optional[Dict[str, Any]] = None,
                           poll_interval: Optional[int] = None,
                           is_active: bool = True) -> DeviceIntegration:
        """Create a new device integration."""
        integration_id = uuid.uuid4().hex
        now = utcnow().isoformat()
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO printer_integrations
            (id, printer_id, protocol, endpoint, auth_mode, credentials,
             poll_interval, is_active, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            integration_id,
            printer_id,
            ProtocolKind(protocol).value,
            endpoint,
            AuthMode(auth_mode).value,
            encrypt_credentials(credentials),
            poll_interval or DEFAULT_POLL_INTERVAL_SECONDS,
            1 if is_active else 0,
            now,
            now,
        ))
        conn.commit()
        conn.close()
        logger.info(f"Created {protocol} integration {integration_id} for printer {printer_id}")
        return self.get_integration(integration_id)

    def get_integration(self, integration_id: str) -> Optional[DeviceIntegration]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM printer_integrations WHERE id = ?", (integration_id,))
        row = cursor.fetchone()
        conn.close()
        return DeviceIntegration.from_row(row) if row else None

    def get_integration_for_printer(self, printer_id: str,
                                    protocol: Optional[ProtocolKind] = None) -> Optional[DeviceIntegration]:
        """Get the integration for a printer, preferring an active one."""
        query = "SELECT * FROM printer_integrations WHERE printer_id = ?"
        params: List[Any] = [printer_id]
        if protocol:
            query += " AND protocol = ?"
            params.append(ProtocolKind(protocol).value)
        query += " ORDER BY is_active DESC, updated_at DESC LIMIT 1"

        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(query, params)
        row = cursor.fetchone()
        conn.close()
        return DeviceIntegration.from_row(row) if row else None

    def get_active_integrations(self) -> List[DeviceIntegration]:
        """Get every integration the scheduler should be polling."""
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM printer_integrations WHERE is_active = 1 ORDER BY created_at")
        rows = cursor.fetchall()
        conn.close()
        return [DeviceIntegration.from_row(row) for row in rows]

    def update_integration(self, integration_id: str, **changes) -> Optional[DeviceIntegration]:
        """Update configuration fields of an integration.

        Accepted fields: endpoint, protocol, auth_mode, credentials,
        poll_interval, is_active.
        """
        unknown = set(changes) - set(_INTEGRATION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown integration fields: {', '.join(sorted(unknown))}")

        assignments = []
        params: List[Any] = []
        for name, value in changes.items():
            if name == 'credentials':
                value = encrypt_credentials(value)
            elif name == 'protocol':
                value = ProtocolKind(value).value
            elif name == 'auth_mode':
                value = AuthMode(value).value
            elif name == 'is_active':
                value = 1 if value else 0
            assignments.append(f"{name} = ?")
            params.append(value)

        if not assignments:
            return self.get_integration(integration_id)

        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())
        params.append(integration_id)

        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            f"UPDATE printer_integrations SET {', '.join(assignments)} WHERE id = ?",
            params
        )
        affected = cursor.rowcount
        conn.commit()
        conn.close()
        if not affected:
            return None
        return self.get_integration(integration_id)

    def set_integration_active(self, integration_id: str, active: bool) -> Optional[DeviceIntegration]:
        """Activate or deactivate monitoring. Integrations are never deleted."""
        return self.update_integration(integration_id, is_active=active)

    def update_last_sync(self, integration_id: str, when: Optional[datetime] = None):
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE printer_integrations SET last_sync = ? WHERE id = ?",
            ((when or utcnow()).isoformat(), integration_id)
        )
        conn.commit()
        conn.close()

    # -------------------------------------------------------------------------
    # Captured job events
    # -------------------------------------------------------------------------

    def insert_capture(self, printer_id: str, job: RawJob) -> Tuple[CapturedJobEvent, bool]:
        """Insert a capture unless (printer_id, native id) already exists.

        Returns:
            (capture, created) where created is False for a duplicate
        """
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR IGNORE INTO print_job_captures
            (printer_id, external_job_id, file_name, pages, copies, is_color,
             paper_size, paper_type, quality, metadata, status, captured_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            printer_id,
            job.native_id,
            job.file_name,
            job.pages,
            job.copies,
            1 if job.is_color else 0,
            job.paper_size,
            job.paper_type,
            job.quality,
            json.dumps(job.metadata or {}, default=str),
            CaptureStatus.CAPTURED.value,
            utcnow().isoformat(),
        ))
        created = cursor.rowcount == 1
        conn.commit()

        cursor.execute(
            "SELECT * FROM print_job_captures WHERE printer_id = ? AND external_job_id = ?",
            (printer_id, job.native_id)
        )
        row = cursor.fetchone()
        conn.close()
        return CapturedJobEvent.from_row(row), created

    def get_capture(self, capture_id: int) -> Optional[CapturedJobEvent]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM print_job_captures WHERE id = ?", (capture_id,))
        row = cursor.fetchone()
        conn.close()
        return CapturedJobEvent.from_row(row) if row else None

    def _capture_filters(self, printer_id: Optional[str], status: Optional[CaptureStatus],
                         since: Optional[datetime] = None) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        if printer_id:
            clauses.append("printer_id = ?")
            params.append(printer_id)
        if status:
            clauses.append("status = ?")
            params.append(CaptureStatus(status).value)
        if since:
            clauses.append("captured_at >= ?")
            params.append(since.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def get_captures(self, printer_id: Optional[str] = None,
                     status: Optional[CaptureStatus] = None,
                     limit: int = 20, offset: int = 0) -> List[CapturedJobEvent]:
        """List captures, oldest first."""
        where, params = self._capture_filters(printer_id, status)
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            f"SELECT * FROM print_job_captures {where} ORDER BY captured_at ASC, id ASC LIMIT ? OFFSET ?",
            params + [limit, offset]
        )
        rows = cursor.fetchall()
        conn.close()
        return [CapturedJobEvent.from_row(row) for row in rows]

    def count_captures(self, printer_id: Optional[str] = None,
                       status: Optional[CaptureStatus] = None,
                       since: Optional[datetime] = None) -> int:
        where, params = self._capture_filters(printer_id, status, since)
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(f"SELECT COUNT(*) FROM print_job_captures {where}", params)
        count = cursor.fetchone()[0]
        conn.close()
        return count

    def mark_capture_processed(self, capture_id: int, user_id: Optional[str] = None) -> CapturedJobEvent:
        """Transition a capture to processed without billing it."""
        conn = self._connect()
        cursor = conn.cursor()
        affected = self._mark_processed(cursor, capture_id, user_id, utcnow(), print_job_id=None)
        conn.commit()
        conn.close()
        if not affected:
            if self.get_capture(capture_id) is None:
                raise CaptureNotFound(capture_id)
            raise CaptureAlreadyProcessed(capture_id)
        return self.get_capture(capture_id)

    # -------------------------------------------------------------------------
    # Device status history
    # -------------------------------------------------------------------------

    def append_status_sample(self, sample: DeviceStatusSample) -> DeviceStatusSample:
        """Append a status sample and derive the printer's administrative status."""
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO printer_status_history
            (printer_id, state, consumables, paper_levels, error_messages,
             queue_depth, monthly_pages, sampled_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            sample.printer_id,
            sample.state.value,
            json.dumps(sample.consumables),
            json.dumps(sample.paper_levels),
            json.dumps(sample.error_messages),
            sample.queue_depth,
            sample.monthly_pages,
            sample.sampled_at.isoformat(),
        ))
        sample.id = cursor.lastrowid
        cursor.execute(
            "UPDATE printers SET status = ?, updated_at = ? WHERE id = ?",
            (sample.printer_status.value, sample.sampled_at.isoformat(), sample.printer_id)
        )
        conn.commit()
        conn.close()
        return sample

    def get_latest_status(self, printer_id: str) -> Optional[DeviceStatusSample]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM printer_status_history
            WHERE printer_id = ?
            ORDER BY sampled_at DESC, id DESC
            LIMIT 1
        """, (printer_id,))
        row = cursor.fetchone()
        conn.close()
        return DeviceStatusSample.from_row(row) if row else None

    def get_status_history(self, printer_id: str, limit: int = 100) -> List[DeviceStatusSample]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM printer_status_history
            WHERE printer_id = ?
            ORDER BY sampled_at DESC, id DESC
            LIMIT ?
        """, (printer_id, limit))
        rows = cursor.fetchall()
        conn.close()
        return [DeviceStatusSample.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        conn.close()
        return User.from_row(row) if row else None

    def get_quota(self, user_id: str) -> Optional[PrintQuota]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM print_quotas WHERE user_id = ?", (user_id,))
        row = cursor.fetchone()
        conn.close()
        return PrintQuota.from_row(row) if row else None

    def get_print_cost(self, department: str) -> Optional[PrintCost]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM print_costs WHERE department = ?", (department,))
        row = cursor.fetchone()
        conn.close()
        if not row:
            return None
        return PrintCost(department=row['department'], bw_page=row['bw_page'], color_page=row['color_page'])

    def record_billed_job(self, capture: CapturedJobEvent, user_id: str, cost: float) -> PrintJob:
        """Bill a capture to a user as one atomic unit.

        Claims the capture, increments the matching quota counter (re-checking
        the limit inside the transaction) and creates the PrintJob. Either all
        writes are committed or none are.

        Raises:
            QuotaExceeded: If the limit would be exceeded at commit time
            CaptureAlreadyProcessed: If another caller billed the capture first
        """
        now = utcnow()
        conn = self._connect()
        conn.isolation_level = None  # explicit transaction control
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            if not self._mark_processed(cursor, capture.id, user_id, now, print_job_id=None):
                raise CaptureAlreadyProcessed(capture.id)
            self._increment_quota(cursor, user_id, capture.is_color, capture.total_units, now)
            job_id = self._insert_print_job(cursor, capture, user_id, cost, now)
            cursor.execute(
                "UPDATE print_job_captures SET print_job_id = ? WHERE id = ?",
                (job_id, capture.id)
            )
            cursor.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                cursor.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        return PrintJob(
            id=job_id,
            user_id=user_id,
            printer_id=capture.printer_id,
            capture_id=capture.id,
            file_name=capture.file_name,
            pages=capture.pages,
            copies=capture.copies,
            is_color=capture.is_color,
            cost=cost,
            status='completed',
            created_at=now,
            completed_at=now,
        )

    def _increment_quota(self, cursor: sqlite3.Cursor, user_id: str, is_color: bool,
                         units: int, now: datetime):
        if is_color:
            cursor.execute("""
                UPDATE print_quotas
                SET color_usage = color_usage + ?, updated_at = ?
                WHERE user_id = ? AND color_usage + ? <= color_limit
            """, (units, now.isoformat(), user_id, units))
        else:
            cursor.execute("""
                UPDATE print_quotas
                SET current_usage = current_usage + ?, updated_at = ?
                WHERE user_id = ? AND current_usage + ? <= monthly_limit
            """, (units, now.isoformat(), user_id, units))
        if cursor.rowcount != 1:
            raise QuotaExceeded(
                f"{'Color' if is_color else 'Monthly'} quota exceeded for user {user_id}",
                user_id=user_id,
                details={'requested': units, 'color': is_color},
            )

    def _insert_print_job(self, cursor: sqlite3.Cursor, capture: CapturedJobEvent,
                          user_id: str, cost: float, now: datetime) -> int:
        cursor.execute("""
            INSERT INTO print_jobs
            (user_id, printer_id, capture_id, file_name, pages, copies, is_color,
             cost, status, created_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'completed', ?, ?)
        """, (
            user_id,
            capture.printer_id,
            capture.id,
            capture.file_name,
            capture.pages,
            capture.copies,
            1 if capture.is_color else 0,
            cost,
            now.isoformat(),
            now.isoformat(),
        ))
        return cursor.lastrowid

    def _mark_processed(self, cursor: sqlite3.Cursor, capture_id: int, user_id: Optional[str],
                        now: datetime, print_job_id: Optional[int]) -> bool:
        cursor.execute("""
            UPDATE print_job_captures
            SET status = ?, user_id = ?, processed_at = ?, print_job_id = ?
            WHERE id = ? AND status = ?
        """, (
            CaptureStatus.PROCESSED.value,
            user_id,
            now.isoformat(),
            print_job_id,
            capture_id,
            CaptureStatus.CAPTURED.value,
        ))
        return cursor.rowcount == 1

    def get_print_jobs(self, user_id: Optional[str] = None,
                       printer_id: Optional[str] = None, limit: int = 50) -> List[PrintJob]:
        query = "SELECT * FROM print_jobs WHERE 1 = 1"
        params: List[Any] = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        if printer_id:
            query += " AND printer_id = ?"
            params.append(printer_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(query, params)
        rows = cursor.fetchall()
        conn.close()
        return [PrintJob.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Reference data (normally written by the dashboard's CRUD layer)
    # -------------------------------------------------------------------------

    def add_printer(self, printer_id: str, name: str, location: str = '', department: str = '') -> Printer:
        now = utcnow().isoformat()
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR REPLACE INTO printers (id, name, location, department, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'inactive', ?, ?)
        """, (printer_id, name, location, department, now, now))
        conn.commit()
        conn.close()
        return self.get_printer(printer_id)

    def get_printer(self, printer_id: str) -> Optional[Printer]:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM printers WHERE id = ?", (printer_id,))
        row = cursor.fetchone()
        conn.close()
        return Printer.from_row(row) if row else None

    def add_user(self, user_id: str, name: str, email: str = '', department: str = '') -> User:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR REPLACE INTO users (id, name, email, department, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, name, email, department, utcnow().isoformat()))
        conn.commit()
        conn.close()
        return self.get_user(user_id)

    def set_quota(self, user_id: str, monthly_limit: int, color_limit: int,
                  current_usage: int = 0, color_usage: int = 0) -> PrintQuota:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO print_quotas (user_id, monthly_limit, current_usage, color_limit, color_usage, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                monthly_limit = excluded.monthly_limit,
                current_usage = excluded.current_usage,
                color_limit = excluded.color_limit,
                color_usage = excluded.color_usage,
                updated_at = excluded.updated_at
        """, (user_id, monthly_limit, current_usage, color_limit, color_usage, utcnow().isoformat()))
        conn.commit()
        conn.close()
        return self.get_quota(user_id)

    def set_print_cost(self, department: str, bw_page: float, color_page: float) -> PrintCost:
        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO print_costs (department, bw_page, color_page) VALUES (?, ?, ?)",
            (department, bw_page, color_page)
        )
        conn.commit()
        conn.close()
        return PrintCost(department=department, bw_page=bw_page, color_page=color_page)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    def get_system_statistics(self) -> Dict[str, Any]:
        """Counts used by the system status endpoint."""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active
            FROM printers
        """)
        printers = cursor.fetchone()

        cursor.execute("""
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(is_active), 0) AS active
            FROM printer_integrations
        """)
        integrations = cursor.fetchone()
        conn.close()

        unprocessed = self.count_captures(status=CaptureStatus.CAPTURED)
        last_24h = self.count_captures(since=utcnow() - timedelta(hours=24))

        return {
            'printers': {
                'total': printers['total'],
                'active': printers['active'],
                'inactive': printers['total'] - printers['active'],
            },
            'integrations': {
                'total': integrations['total'],
                'active': integrations['active'],
                'inactive': integrations['total'] - integrations['active'],
            },
            'captures': {
                'unprocessed': unprocessed,
                'last_24_hours': last_24h,
            },
        }
