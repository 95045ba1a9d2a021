"""
Print Cloud Configuration
Paths, polling, billing and webhook settings for the printer integration layer.
"""
import os
import secrets
from pathlib import Path


def _get_or_create_secret_key(data_dir: Path) -> str:
    """Get secret key from file or generate a new one."""
    secret_file = data_dir / '.secret_key'

    try:
        if secret_file.exists():
            return secret_file.read_text().strip()
    except OSError:
        pass

    # Generate new secret key
    secret_key = secrets.token_hex(32)

    try:
        data_dir.mkdir(parents=True, exist_ok=True)
        secret_file.write_text(secret_key)
        secret_file.chmod(0o600)
    except OSError:
        pass

    return secret_key


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


# =============================================================================
# Path Configuration
# =============================================================================

# Detect if running from installed location or development
_installed_path = Path('/opt/printcloud')
_is_installed = _installed_path.exists() and (
    Path('/etc/systemd/system/printcloud.service').exists() or
    Path('/lib/systemd/system/printcloud.service').exists()
)

if _is_installed:
    BASE_DIR = _installed_path
    CONFIG_DIR = Path('/etc/printcloud')
    DATA_DIR = Path('/var/lib/printcloud')
    LOG_DIR = Path('/var/log/printcloud')
else:
    BASE_DIR = Path(__file__).parent.parent
    CONFIG_DIR = BASE_DIR / 'config'
    DATA_DIR = Path(os.environ.get('PRINTCLOUD_DATA_DIR', BASE_DIR / 'printcloud' / 'data'))
    LOG_DIR = Path(os.environ.get('PRINTCLOUD_LOG_DIR', BASE_DIR / 'logs'))

# Ensure directories exist
for _dir in [DATA_DIR, LOG_DIR]:
    try:
        _dir.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass

# =============================================================================
# Application Paths
# =============================================================================

DATABASE_PATH = Path(os.environ.get('PRINTCLOUD_DATABASE', DATA_DIR / 'printcloud.db'))

# =============================================================================
# Web Application Settings
# =============================================================================

SECRET_KEY = os.environ.get('SECRET_KEY') or _get_or_create_secret_key(DATA_DIR)

# =============================================================================
# Polling Settings
# =============================================================================

DEFAULT_POLL_INTERVAL_SECONDS = 300
MIN_POLL_INTERVAL_SECONDS = 10

# How often the scheduler re-reads integrations to pick up (de)activations
POLLING_RECONCILE_SECONDS = int(os.environ.get('POLLING_RECONCILE_SECONDS', '60'))
POLLING_AUTO_START = _env_bool('POLLING_AUTO_START', 'true')

# =============================================================================
# Connector Settings
# =============================================================================

CONNECTOR_TIMEOUT_SECONDS = int(os.environ.get('CONNECTOR_TIMEOUT_SECONDS', '10'))

SNMP_PORT = 161
SNMP_TIMEOUT_SECONDS = 3
SNMP_RETRIES = 1
SNMP_DEFAULT_COMMUNITY = 'public'

IPP_DEFAULT_PORT = 631
IPP_JOB_LOG_LIMIT = 50

# =============================================================================
# Billing Settings
# =============================================================================

# Per-page rates used when a department has no print_costs row
DEFAULT_BW_PAGE_COST = 0.05
DEFAULT_COLOR_PAGE_COST = 0.15

UNPROCESSED_CAPTURE_WARNING_THRESHOLD = 100

# =============================================================================
# Webhook Settings
# =============================================================================

# Shared secret used when an integration has no webhook_secret of its own
WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET', '')
WEBHOOK_SIGNATURE_HEADER = 'X-Webhook-Signature'
WEBHOOK_PRINTER_HEADER = 'X-Printer-Id'

# =============================================================================
# Logging Configuration
# =============================================================================

# Use structured JSON logging in production, human-readable in development
LOG_STRUCTURED = _env_bool('LOG_STRUCTURED', 'false')

# Log format for human-readable logs
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Log file rotation settings
LOG_MAX_SIZE_MB = 10
LOG_BACKUP_COUNT = 5

LOG_LEVEL_DEFAULT = os.environ.get('LOG_LEVEL', 'INFO').upper()
LOG_LEVEL_POLLING = os.environ.get('LOG_LEVEL_POLLING', 'INFO').upper()
