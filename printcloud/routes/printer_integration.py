"""
API Routes for the printer integration layer.

Provides REST endpoints for:
- Receiving device webhooks
- Managing device integrations
- Controlling the polling scheduler
- Listing, capturing and processing print job captures
- Reading, recording and syncing device status
- System health
"""

import logging
import sqlite3
from functools import wraps
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from config.config import (
    MIN_POLL_INTERVAL_SECONDS,
    UNPROCESSED_CAPTURE_WARNING_THRESHOLD,
    WEBHOOK_PRINTER_HEADER,
    WEBHOOK_SIGNATURE_HEADER,
)
from printcloud import limiter
from printcloud.models import (
    AuthMode,
    CaptureStatus,
    DeviceIntegration,
    DeviceState,
    DeviceStatusSample,
    ProtocolKind,
    RawJob,
    utcnow,
)
from printcloud.services import (
    IntegrationError,
    IntegrationNotFound,
    IntegrationValidationError,
    create_connector,
)
from printcloud.utils.rate_limiting import RATE_LIMITS

logger = logging.getLogger(__name__)

# Create blueprint
printer_integration_bp = Blueprint('printer_integration', __name__, url_prefix='/api/printer-integration')


def _services() -> Dict[str, Any]:
    return current_app.extensions['printcloud']


def handle_integration_errors(fn):
    """Decorator to turn integration errors into JSON responses."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except IntegrationError as e:
            if e.http_status >= 500:
                logger.error(f'{fn.__name__}: {e.message}')
            return jsonify(e.to_dict()), e.http_status
        except HTTPException:
            raise
        except Exception as e:
            logger.exception(f'Printer integration API error: {e}')
            return jsonify({
                'error': 'INTERNAL_ERROR',
                'message': str(e),
            }), 500
    return wrapper


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise IntegrationValidationError('Request body must be a JSON object', field='body')
    return data


def _required(data: Dict[str, Any], *fields: str):
    for name in fields:
        if data.get(name) in (None, ''):
            raise IntegrationValidationError(f'{name} is required', field=name)


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise IntegrationValidationError(f'{name} must be a positive integer', field=name)
    return value


def _printer_id_arg() -> str:
    printer_id = request.args.get('printerId')
    if not printer_id and request.is_json:
        printer_id = (request.get_json(silent=True) or {}).get('printerId')
    if not printer_id:
        raise IntegrationValidationError('printerId is required', field='printerId')
    return printer_id


def _require_printer(printer_id: str):
    if _services()['store'].get_printer(printer_id) is None:
        raise IntegrationNotFound(f'Printer {printer_id} not found', details={'printer_id': printer_id})


def _parse_enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise IntegrationValidationError(f'Invalid {name}: {value} (expected one of {allowed})', field=name)


def _poll_interval(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < MIN_POLL_INTERVAL_SECONDS:
        raise IntegrationValidationError(
            f'pollInterval must be an integer of at least {MIN_POLL_INTERVAL_SECONDS} seconds',
            field='pollInterval',
        )
    return value


# =============================================================================
# Webhook
# =============================================================================

@printer_integration_bp.route('/webhook', methods=['POST'])
@limiter.limit(RATE_LIMITS['webhook'])
@handle_integration_errors
def receive_webhook():
    """Receive a signed event pushed by a device."""
    printer_id = request.headers.get(WEBHOOK_PRINTER_HEADER)
    if not printer_id:
        raise IntegrationValidationError('Missing printer ID in headers', field=WEBHOOK_PRINTER_HEADER)

    result = _services()['webhook'].process_webhook(
        printer_id,
        request.get_data(),
        request.headers.get(WEBHOOK_SIGNATURE_HEADER),
    )
    return jsonify({
        'success': True,
        'result': result,
        'processed_at': utcnow().isoformat(),
    })


# =============================================================================
# Integration Management
# =============================================================================

@printer_integration_bp.route('', methods=['GET'])
@handle_integration_errors
def get_integration():
    """
    Get the integration configured for a printer.

    Query params:
    - printerId: Printer to look up (required)
    - type: Restrict to one protocol
    """
    printer_id = _printer_id_arg()
    protocol = request.args.get('type')
    protocol = _parse_enum(ProtocolKind, protocol, 'type') if protocol else None

    integration = _services()['store'].get_integration_for_printer(printer_id, protocol)
    if integration is None:
        raise IntegrationNotFound('Integration not found', details={'printer_id': printer_id})
    return jsonify(integration.to_dict())


@printer_integration_bp.route('', methods=['POST'])
@handle_integration_errors
def create_integration():
    """Create a device integration and start polling it when polling is running."""
    data = _json_body()
    _required(data, 'printerId', 'type', 'endpoint')

    protocol = _parse_enum(ProtocolKind, data['type'], 'type')
    auth_mode = _parse_enum(AuthMode, data.get('authType') or 'none', 'authType')
    poll_interval = _poll_interval(data['pollInterval']) if data.get('pollInterval') is not None else None
    credentials = data.get('credentials') or {}
    if not isinstance(credentials, dict):
        raise IntegrationValidationError('credentials must be an object', field='credentials')

    _require_printer(data['printerId'])

    # Fail fast on configuration the connector would reject
    create_connector(DeviceIntegration(
        id='',
        printer_id=data['printerId'],
        protocol=protocol,
        endpoint=data['endpoint'],
        auth_mode=auth_mode,
        credentials=credentials,
    ))

    services = _services()
    integration = services['store'].create_integration(
        printer_id=data['printerId'],
        protocol=protocol,
        endpoint=data['endpoint'],
        auth_mode=auth_mode,
        credentials=credentials,
        poll_interval=poll_interval,
        is_active=data.get('isActive', True),
    )

    armed = False
    if integration.is_active and services['scheduler'].running:
        armed = services['scheduler'].add_device(integration.id)

    return jsonify({
        'success': True,
        'integration': integration.to_dict(),
        'polling': armed,
    }), 201


@printer_integration_bp.route('/<integration_id>', methods=['PATCH'])
@handle_integration_errors
def update_integration(integration_id: str):
    """Update an integration and re-arm or disarm its polling job."""
    data = _json_body()
    services = _services()
    store = services['store']

    existing = store.get_integration(integration_id)
    if existing is None:
        raise IntegrationNotFound(f'Integration {integration_id} not found',
                                  details={'integration_id': integration_id})

    changes: Dict[str, Any] = {}
    if 'endpoint' in data:
        _required(data, 'endpoint')
        changes['endpoint'] = data['endpoint']
    if 'authType' in data:
        changes['auth_mode'] = _parse_enum(AuthMode, data['authType'], 'authType')
    if 'credentials' in data:
        if not isinstance(data['credentials'], dict):
            raise IntegrationValidationError('credentials must be an object', field='credentials')
        changes['credentials'] = data['credentials']
    if 'pollInterval' in data:
        changes['poll_interval'] = _poll_interval(data['pollInterval'])
    if 'isActive' in data:
        changes['is_active'] = bool(data['isActive'])

    if not changes:
        raise IntegrationValidationError('No updatable fields supplied', field='body')

    integration = store.update_integration(integration_id, **changes)

    scheduler = services['scheduler']
    polling = False
    if scheduler.running:
        if integration.is_active:
            polling = scheduler.add_device(integration.id)
        else:
            scheduler.remove_device(integration.printer_id)

    return jsonify({
        'success': True,
        'integration': integration.to_dict(),
        'polling': polling,
    })


# =============================================================================
# Polling Control
# =============================================================================

@printer_integration_bp.route('/polling', methods=['GET'])
@handle_integration_errors
def get_polling_status():
    return jsonify(_services()['scheduler'].get_status())


@printer_integration_bp.route('/polling', methods=['POST'])
@limiter.limit(RATE_LIMITS['polling_control'])
@handle_integration_errors
def control_polling():
    """
    Control the polling scheduler.

    Body:
    - action: start | stop | restart | add_printer | remove_printer
    - integrationId: required for add_printer
    - printerId: required for remove_printer
    """
    data = _json_body()
    action = data.get('action')
    scheduler = _services()['scheduler']

    if not action:
        raise IntegrationValidationError('Action is required', field='action')

    if action == 'start':
        scheduler.start()
        message = 'Polling service started'
    elif action == 'stop':
        scheduler.stop()
        message = 'Polling service stopped'
    elif action == 'restart':
        scheduler.restart()
        message = 'Polling service restarted'
    elif action == 'add_printer':
        _required(data, 'integrationId')
        if not scheduler.add_device(data['integrationId']):
            raise IntegrationValidationError(
                'Printer could not be added to polling (polling stopped or integration inactive)',
                field='integrationId',
            )
        message = 'Printer added to polling'
    elif action == 'remove_printer':
        _required(data, 'printerId')
        removed = scheduler.remove_device(data['printerId'])
        message = 'Printer removed from polling' if removed else 'Printer was not being polled'
    else:
        raise IntegrationValidationError(f'Invalid action: {action}', field='action')

    logger.info(f"Polling action '{action}' completed")
    return jsonify({
        'success': True,
        'message': message,
        'status': scheduler.get_status(),
    })


# =============================================================================
# Captures
# =============================================================================

@printer_integration_bp.route('/capture', methods=['GET'])
@handle_integration_errors
def list_captures():
    """
    List captured print jobs.

    Query params:
    - printerId: Filter by printer
    - status: captured | processed | failed
    - page: Page number (default 1)
    - limit: Page size (default 20, max 100)
    """
    store = _services()['store']
    printer_id = request.args.get('printerId')
    status = request.args.get('status')
    status = _parse_enum(CaptureStatus, status, 'status') if status else None

    try:
        page = max(1, int(request.args.get('page', 1)))
        limit = min(100, max(1, int(request.args.get('limit', 20))))
    except ValueError:
        raise IntegrationValidationError('page and limit must be integers', field='page')

    captures = store.get_captures(printer_id=printer_id, status=status, limit=limit, offset=(page - 1) * limit)
    total = store.count_captures(printer_id=printer_id, status=status)

    return jsonify({
        'captures': [capture.to_dict() for capture in captures],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': (total + limit - 1) // limit,
        },
    })


@printer_integration_bp.route('/capture', methods=['POST'])
@handle_integration_errors
def create_capture():
    """Manually capture a print job. Returns 201 for a new capture, 200 for a duplicate."""
    data = _json_body()
    _required(data, 'printerId', 'externalJobId', 'pages', 'copies')
    pages = _positive_int(data['pages'], 'pages')
    copies = _positive_int(data['copies'], 'copies')
    metadata = data.get('metadata') or {}
    if not isinstance(metadata, dict):
        raise IntegrationValidationError('metadata must be an object', field='metadata')

    _require_printer(data['printerId'])

    raw_job = RawJob(
        native_id=str(data['externalJobId']),
        file_name=data.get('fileName') or 'Print Job',
        pages=pages,
        copies=copies,
        is_color=bool(data.get('isColor', False)),
        paper_size=data.get('paperSize') or 'A4',
        paper_type=data.get('paperType') or 'Plain',
        quality=data.get('quality') or 'Normal',
        metadata={**metadata, 'source': metadata.get('source', 'manual')},
    )
    capture, created = _services()['engine'].capture_job(data['printerId'], raw_job)

    return jsonify({
        'success': True,
        'capture': capture.to_dict(),
        'duplicate': not created,
    }), 201 if created else 200


@printer_integration_bp.route('/capture/<int:capture_id>/process', methods=['POST'])
@handle_integration_errors
def process_capture(capture_id: int):
    """Bill a capture, optionally to a user (body: userId)."""
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId') if isinstance(data, dict) else None

    services = _services()
    job = services['engine'].process_capture(capture_id, user_id)
    capture = services['store'].get_capture(capture_id)

    return jsonify({
        'success': True,
        'message': 'Capture processed successfully',
        'capture': capture.to_dict() if capture else None,
        'print_job': job.to_dict() if job else None,
    })


# =============================================================================
# Device Status
# =============================================================================

@printer_integration_bp.route('/status', methods=['GET'])
@handle_integration_errors
def get_printer_status():
    printer_id = _printer_id_arg()
    sample = _services()['store'].get_latest_status(printer_id)
    if sample is None:
        return jsonify({
            'error': 'STATUS_NOT_FOUND',
            'message': f'No status recorded for printer {printer_id}',
        }), 404
    return jsonify(sample.to_dict())


@printer_integration_bp.route('/status', methods=['POST'])
@handle_integration_errors
def record_printer_status():
    """
    Record a status sample by hand.

    Body uses the device payload shape: printerId, status, toner, paper,
    errors, queueSize, monthlyTotal.
    """
    data = _json_body()
    _required(data, 'printerId', 'status')

    state = DeviceState.normalize(data['status'])
    if state == DeviceState.UNKNOWN and str(data['status']).lower() != DeviceState.UNKNOWN.value:
        raise IntegrationValidationError(f"Invalid status value: {data['status']}", field='status')

    _require_printer(data['printerId'])

    store = _services()['store']
    sample = store.append_status_sample(DeviceStatusSample.from_payload(data['printerId'], data))
    printer = store.get_printer(data['printerId'])

    return jsonify({
        'success': True,
        'status': sample.to_dict(),
        'printer': printer.to_dict() if printer else None,
    })


@printer_integration_bp.route('/status', methods=['PUT'])
@limiter.limit(RATE_LIMITS['status_sync'])
@handle_integration_errors
def sync_printer_status():
    """Run one poll cycle against the device now."""
    printer_id = _printer_id_arg()
    services = _services()

    result = services['scheduler'].poll_now(printer_id)
    printer = services['store'].get_printer(printer_id)
    body = {
        **result,
        'printer': printer.to_dict() if printer else None,
        'synced_at': utcnow().isoformat(),
    }
    if not result['success']:
        body['error'] = 'CONNECTOR_UNREACHABLE'
        body['message'] = result.get('error')
        return jsonify(body), 503
    return jsonify(body)


@printer_integration_bp.route('/status/system', methods=['GET'])
def get_system_status():
    """Polling state, record counts and overall health."""
    services = _services()
    polling = services['scheduler'].get_status()

    try:
        statistics = services['store'].get_system_statistics()
    except sqlite3.Error as e:
        logger.error(f"System status check failed: {e}")
        return jsonify({
            'timestamp': utcnow().isoformat(),
            'services': {
                'polling': polling,
                'database': {'connected': False, 'error': str(e)},
            },
            'health': {
                'overall': 'critical',
                'issues': ['Database connection failed', str(e)],
            },
        }), 500

    issues = []
    if not polling['running'] and statistics['integrations']['active'] > 0:
        issues.append('Polling service is not running but integrations are active')
    unprocessed = statistics['captures']['unprocessed']
    if unprocessed > UNPROCESSED_CAPTURE_WARNING_THRESHOLD:
        issues.append(f'High number of unprocessed captures: {unprocessed}')
    if statistics['printers']['active'] == 0:
        issues.append('No active printers found')

    return jsonify({
        'timestamp': utcnow().isoformat(),
        'services': {
            'polling': polling,
            'database': {'connected': True},
        },
        'statistics': statistics,
        'health': {
            'overall': 'warning' if issues else 'healthy',
            'issues': issues,
        },
    })
