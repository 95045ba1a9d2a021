"""
Database models for Print Cloud
"""
import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any

from config.config import DATABASE_PATH, DEFAULT_POLL_INTERVAL_SECONDS
from printcloud.utils.encryption import decrypt_credentials, mask_credentials


def get_db_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Get a database connection with row factory and optimized settings."""
    path = Path(db_path or DATABASE_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=10.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # Enable WAL mode for better concurrent access
    conn.execute('PRAGMA journal_mode=WAL')
    # Optimize for concurrent reads/writes
    conn.execute('PRAGMA synchronous=NORMAL')
    conn.execute('PRAGMA cache_size=10000')
    conn.execute('PRAGMA temp_store=MEMORY')

    return conn


def init_db(db_path: Optional[Path] = None):
    """Initialize the database schema."""
    conn = get_db_connection(db_path)
    cursor = conn.cursor()

    # Reference tables owned by the dashboard's CRUD layer
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            location TEXT,
            department TEXT,
            status TEXT DEFAULT 'inactive',
            created_at TEXT,
            updated_at TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            email TEXT,
            department TEXT,
            created_at TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_quotas (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL UNIQUE,
            monthly_limit INTEGER NOT NULL DEFAULT 1000,
            current_usage INTEGER NOT NULL DEFAULT 0,
            color_limit INTEGER NOT NULL DEFAULT 100,
            color_usage INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_costs (
            department TEXT PRIMARY KEY,
            bw_page REAL NOT NULL,
            color_page REAL NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            printer_id TEXT NOT NULL,
            capture_id INTEGER UNIQUE,
            file_name TEXT,
            pages INTEGER NOT NULL,
            copies INTEGER NOT NULL,
            is_color INTEGER NOT NULL DEFAULT 0,
            cost REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'completed',
            created_at TEXT,
            completed_at TEXT
        )
    """)

    # Integration layer tables
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printer_integrations (
            id TEXT PRIMARY KEY,
            printer_id TEXT NOT NULL,
            protocol TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            auth_mode TEXT NOT NULL DEFAULT 'none',
            credentials TEXT,
            poll_interval INTEGER NOT NULL DEFAULT 300,
            is_active INTEGER NOT NULL DEFAULT 1,
            last_sync TEXT,
            created_at TEXT,
            updated_at TEXT
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_integrations_printer
        ON printer_integrations(printer_id)
    """)

    # The unique index is the deduplication key for both ingestion paths
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS print_job_captures (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            printer_id TEXT NOT NULL,
            external_job_id TEXT NOT NULL,
            file_name TEXT,
            pages INTEGER NOT NULL,
            copies INTEGER NOT NULL,
            is_color INTEGER NOT NULL DEFAULT 0,
            paper_size TEXT,
            paper_type TEXT,
            quality TEXT,
            metadata TEXT,
            status TEXT NOT NULL DEFAULT 'captured',
            user_id TEXT,
            print_job_id INTEGER,
            captured_at TEXT,
            processed_at TEXT,
            UNIQUE(printer_id, external_job_id)
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_captures_status
        ON print_job_captures(status, captured_at)
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS printer_status_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            printer_id TEXT NOT NULL,
            state TEXT NOT NULL,
            consumables TEXT,
            paper_levels TEXT,
            error_messages TEXT,
            queue_depth INTEGER,
            monthly_pages INTEGER,
            sampled_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_status_history_printer
        ON printer_status_history(printer_id, sampled_at DESC)
    """)

    conn.commit()
    conn.close()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO string or datetime) into a datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes', 'color', 'colour')
    return bool(value)


def _load_json(value: Optional[str], default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


# =============================================================================
# Enumerations
# =============================================================================

class ProtocolKind(str, Enum):
    """Wire protocol used to talk to a device."""
    SNMP = 'snmp'
    IPP = 'ipp'
    HTTP = 'http'


class AuthMode(str, Enum):
    """Authentication mode for a device integration."""
    NONE = 'none'
    BASIC = 'basic'
    API_KEY = 'api_key'
    CERTIFICATE = 'certificate'


class CaptureStatus(str, Enum):
    CAPTURED = 'captured'
    PROCESSED = 'processed'
    FAILED = 'failed'


class DeviceState(str, Enum):
    """Operational state as reported by the device itself."""
    ONLINE = 'online'
    OFFLINE = 'offline'
    ERROR = 'error'
    MAINTENANCE = 'maintenance'
    UNKNOWN = 'unknown'

    @classmethod
    def normalize(cls, value: Any) -> 'DeviceState':
        """Map a device-reported state string onto a DeviceState."""
        if isinstance(value, DeviceState):
            return value
        text = str(value or '').strip().lower()
        return _DEVICE_STATE_ALIASES.get(text, cls.UNKNOWN)


_DEVICE_STATE_ALIASES = {
    'online': DeviceState.ONLINE,
    'idle': DeviceState.ONLINE,
    'ready': DeviceState.ONLINE,
    'printing': DeviceState.ONLINE,
    'processing': DeviceState.ONLINE,
    'warning': DeviceState.ONLINE,
    'offline': DeviceState.OFFLINE,
    'error': DeviceState.ERROR,
    'stopped': DeviceState.ERROR,
    'down': DeviceState.ERROR,
    'maintenance': DeviceState.MAINTENANCE,
    'testing': DeviceState.MAINTENANCE,
    'paused': DeviceState.MAINTENANCE,
}


class PrinterStatus(str, Enum):
    """Administrative status of a Printer in the dashboard."""
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    ERROR = 'error'
    MAINTENANCE = 'maintenance'


def derive_printer_status(state: DeviceState) -> PrinterStatus:
    """Derive the Printer's administrative status from a device state."""
    if state == DeviceState.ERROR:
        return PrinterStatus.ERROR
    if state == DeviceState.MAINTENANCE:
        return PrinterStatus.MAINTENANCE
    if state == DeviceState.ONLINE:
        return PrinterStatus.ACTIVE
    return PrinterStatus.INACTIVE


# =============================================================================
# Integration records
# =============================================================================

@dataclass
class DeviceIntegration:
    """Configuration binding one printer to one protocol connector."""
    id: str
    printer_id: str
    protocol: ProtocolKind
    endpoint: str
    auth_mode: AuthMode = AuthMode.NONE
    credentials: Dict[str, Any] = field(default_factory=dict)
    poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS
    is_active: bool = True
    last_sync: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self, include_credentials: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "printer_id": self.printer_id,
            "protocol": self.protocol.value,
            "endpoint": self.endpoint,
            "auth_mode": self.auth_mode.value,
            "credentials": dict(self.credentials) if include_credentials else mask_credentials(self.credentials),
            "poll_interval": self.poll_interval,
            "is_active": self.is_active,
            "last_sync": _iso(self.last_sync),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row) -> 'DeviceIntegration':
        """Create a DeviceIntegration from a database row."""
        return cls(
            id=row['id'],
            printer_id=row['printer_id'],
            protocol=ProtocolKind(row['protocol']),
            endpoint=row['endpoint'],
            auth_mode=AuthMode(row['auth_mode'] or 'none'),
            credentials=decrypt_credentials(row['credentials']),
            poll_interval=row['poll_interval'] or DEFAULT_POLL_INTERVAL_SECONDS,
            is_active=bool(row['is_active']),
            last_sync=parse_timestamp(row['last_sync']),
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
        )


@dataclass
class RawJob:
    """A completed job as reported by a device, in protocol-neutral form."""
    native_id: str
    file_name: str = 'Print Job'
    pages: int = 1
    copies: int = 1
    is_color: bool = False
    paper_size: str = 'A4'
    paper_type: str = 'Plain'
    quality: str = 'Normal'
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_units(self) -> int:
        return self.pages * self.copies

    @classmethod
    def from_payload(cls, data: Dict[str, Any],
                     metadata: Optional[Dict[str, Any]] = None) -> 'RawJob':
        """Build a RawJob from the JSON job shape used by HTTP devices and webhooks.

        Raises:
            ValueError: If the payload carries no job id
        """
        native_id = data.get('jobId')
        if native_id is None or str(native_id).strip() == '':
            native_id = data.get('id')
        if native_id is None or str(native_id).strip() == '':
            raise ValueError('job payload has no job id')

        merged = dict(data.get('metadata') or {})
        merged.update(metadata or {})

        return cls(
            native_id=str(native_id),
            file_name=data.get('fileName') or data.get('name') or 'Print Job',
            pages=_to_int(data.get('pages'), 1),
            copies=_to_int(data.get('copies'), 1),
            is_color=_to_bool(data.get('isColor', False)),
            paper_size=data.get('paperSize') or 'A4',
            paper_type=data.get('paperType') or 'Plain',
            quality=data.get('quality') or 'Normal',
            metadata=merged,
        )


@dataclass
class CapturedJobEvent:
    """A device-reported print event prior to billing."""
    id: int
    printer_id: str
    external_job_id: str
    file_name: str
    pages: int
    copies: int
    is_color: bool = False
    paper_size: str = 'A4'
    paper_type: str = 'Plain'
    quality: str = 'Normal'
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: CaptureStatus = CaptureStatus.CAPTURED
    user_id: Optional[str] = None
    print_job_id: Optional[int] = None
    captured_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def total_units(self) -> int:
        return self.pages * self.copies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "printer_id": self.printer_id,
            "external_job_id": self.external_job_id,
            "file_name": self.file_name,
            "pages": self.pages,
            "copies": self.copies,
            "is_color": self.is_color,
            "paper_size": self.paper_size,
            "paper_type": self.paper_type,
            "quality": self.quality,
            "metadata": self.metadata,
            "status": self.status.value,
            "user_id": self.user_id,
            "print_job_id": self.print_job_id,
            "captured_at": _iso(self.captured_at),
            "processed_at": _iso(self.processed_at),
        }

    @classmethod
    def from_row(cls, row) -> 'CapturedJobEvent':
        return cls(
            id=row['id'],
            printer_id=row['printer_id'],
            external_job_id=row['external_job_id'],
            file_name=row['file_name'] or '',
            pages=row['pages'],
            copies=row['copies'],
            is_color=bool(row['is_color']),
            paper_size=row['paper_size'] or 'A4',
            paper_type=row['paper_type'] or 'Plain',
            quality=row['quality'] or 'Normal',
            metadata=_load_json(row['metadata'], {}),
            status=CaptureStatus(row['status']),
            user_id=row['user_id'],
            print_job_id=row['print_job_id'],
            captured_at=parse_timestamp(row['captured_at']),
            processed_at=parse_timestamp(row['processed_at']),
        )


@dataclass
class DeviceStatusSample:
    """One point in a device's append-only status history."""
    printer_id: str
    state: DeviceState
    consumables: Dict[str, int] = field(default_factory=dict)
    paper_levels: Dict[str, int] = field(default_factory=dict)
    error_messages: List[str] = field(default_factory=list)
    queue_depth: Optional[int] = None
    monthly_pages: Optional[int] = None
    sampled_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def printer_status(self) -> PrinterStatus:
        return derive_printer_status(self.state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "printer_id": self.printer_id,
            "state": self.state.value,
            "printer_status": self.printer_status.value,
            "consumables": self.consumables,
            "paper_levels": self.paper_levels,
            "error_messages": self.error_messages,
            "queue_depth": self.queue_depth,
            "monthly_pages": self.monthly_pages,
            "sampled_at": _iso(self.sampled_at),
        }

    @classmethod
    def failure(cls, printer_id: str, message: str) -> 'DeviceStatusSample':
        """Sample recorded when the integration itself could not reach the device."""
        return cls(printer_id=printer_id, state=DeviceState.ERROR, error_messages=[message])

    @classmethod
    def from_payload(cls, printer_id: str, data: Dict[str, Any]) -> 'DeviceStatusSample':
        """Build a sample from the JSON status shape used by HTTP devices and webhooks."""
        errors = data.get('errors') or []
        if isinstance(errors, str):
            errors = [errors]
        return cls(
            printer_id=printer_id,
            state=DeviceState.normalize(data.get('status')),
            consumables=_levels(data.get('toner')),
            paper_levels=_levels(data.get('paper')),
            error_messages=[str(e) for e in errors],
            queue_depth=_to_int(data.get('queueSize')),
            monthly_pages=_to_int(data.get('monthlyTotal')),
        )

    @classmethod
    def from_row(cls, row) -> 'DeviceStatusSample':
        return cls(
            id=row['id'],
            printer_id=row['printer_id'],
            state=DeviceState.normalize(row['state']),
            consumables=_load_json(row['consumables'], {}),
            paper_levels=_load_json(row['paper_levels'], {}),
            error_messages=_load_json(row['error_messages'], []),
            queue_depth=row['queue_depth'],
            monthly_pages=row['monthly_pages'],
            sampled_at=parse_timestamp(row['sampled_at']),
        )


def _levels(value: Any) -> Dict[str, int]:
    """Keep only numeric percentage entries from a levels map."""
    levels = {}
    if isinstance(value, dict):
        for name, level in value.items():
            pct = _to_int(level)
            if pct is not None:
                levels[str(name)] = max(0, min(100, pct))
    return levels


# =============================================================================
# Billing records (owned by the dashboard, read and written here)
# =============================================================================

@dataclass
class Printer:
    id: str
    name: str
    location: str = ''
    department: str = ''
    status: PrinterStatus = PrinterStatus.INACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "department": self.department,
            "status": self.status.value,
        }

    @classmethod
    def from_row(cls, row) -> 'Printer':
        return cls(
            id=row['id'],
            name=row['name'],
            location=row['location'] or '',
            department=row['department'] or '',
            status=PrinterStatus(row['status'] or 'inactive'),
        )


@dataclass
class User:
    id: str
    name: str
    email: str = ''
    department: str = ''

    @classmethod
    def from_row(cls, row) -> 'User':
        return cls(
            id=row['id'],
            name=row['name'],
            email=row['email'] or '',
            department=row['department'] or '',
        )


@dataclass
class PrintQuota:
    user_id: str
    monthly_limit: int
    current_usage: int = 0
    color_limit: int = 0
    color_usage: int = 0

    def would_exceed(self, is_color: bool, units: int) -> bool:
        if is_color:
            return self.color_usage + units > self.color_limit
        return self.current_usage + units > self.monthly_limit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "monthly_limit": self.monthly_limit,
            "current_usage": self.current_usage,
            "color_limit": self.color_limit,
            "color_usage": self.color_usage,
        }

    @classmethod
    def from_row(cls, row) -> 'PrintQuota':
        return cls(
            user_id=row['user_id'],
            monthly_limit=row['monthly_limit'],
            current_usage=row['current_usage'],
            color_limit=row['color_limit'],
            color_usage=row['color_usage'],
        )


@dataclass
class PrintCost:
    department: str
    bw_page: float
    color_page: float

    def rate_for(self, is_color: bool) -> float:
        return self.color_page if is_color else self.bw_page


@dataclass
class PrintJob:
    """A billed print job."""
    id: int
    user_id: str
    printer_id: str
    file_name: str
    pages: int
    copies: int
    is_color: bool
    cost: float
    status: str = 'completed'
    capture_id: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "printer_id": self.printer_id,
            "capture_id": self.capture_id,
            "file_name": self.file_name,
            "pages": self.pages,
            "copies": self.copies,
            "is_color": self.is_color,
            "cost": self.cost,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_row(cls, row) -> 'PrintJob':
        return cls(
            id=row['id'],
            user_id=row['user_id'],
            printer_id=row['printer_id'],
            capture_id=row['capture_id'],
            file_name=row['file_name'] or '',
            pages=row['pages'],
            copies=row['copies'],
            is_color=bool(row['is_color']),
            cost=row['cost'],
            status=row['status'],
            created_at=parse_timestamp(row['created_at']),
            completed_at=parse_timestamp(row['completed_at']),
        )
