"""
Webhook Ingress

Push-based entry into the capture engine. The raw request body is
authenticated with HMAC-SHA256 before any of it is parsed or trusted.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from printcloud.models import DeviceStatusSample, RawJob, utcnow
from printcloud.services.capture_engine import CaptureEngine
from printcloud.services.errors import (
    IntegrationNotFound,
    IntegrationValidationError,
    InvalidSignature,
)
from printcloud.services.integration_store import IntegrationStore

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = 'sha256='

EVENT_JOB_COMPLETED = 'job_completed'
EVENT_STATUS_UPDATE = 'status_update'


def sign_payload(payload: bytes, secret: str) -> str:
    """Signature header value for a payload: 'sha256=<hex digest>'."""
    digest = hmac.new(secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check of a signature header against the raw body."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(signature.strip(), sign_payload(payload, secret))


class WebhookIngress:
    """Authenticates webhook deliveries and routes them to the engine."""

    def __init__(self, store: IntegrationStore, engine: CaptureEngine, default_secret: str = ''):
        self.store = store
        self.engine = engine
        self.default_secret = default_secret

    def resolve_secret(self, printer_id: str) -> Optional[str]:
        """Integration's webhook_secret, else the configured shared secret."""
        integration = self.store.get_integration_for_printer(printer_id)
        if integration and integration.credentials.get('webhook_secret'):
            return integration.credentials['webhook_secret']
        return self.default_secret or None

    def process_webhook(self, printer_id: str, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify, decode and apply one webhook delivery.

        Raises:
            IntegrationNotFound: Unknown printer
            InvalidSignature: Missing secret, missing header or mismatch
            IntegrationValidationError: Body is not a usable JSON object
        """
        if self.store.get_printer(printer_id) is None:
            raise IntegrationNotFound(f"Printer {printer_id} not found", details={'printer_id': printer_id})

        secret = self.resolve_secret(printer_id)
        if not secret:
            logger.warning(f"Rejected webhook for printer {printer_id}: no webhook secret configured")
            raise InvalidSignature('No webhook secret is configured for this printer')
        if not verify_signature(payload, signature, secret):
            logger.warning(f"Rejected webhook for printer {printer_id}: signature mismatch")
            raise InvalidSignature()

        try:
            body = json.loads(payload.decode('utf-8'))
        except (UnicodeDecodeError, ValueError):
            raise IntegrationValidationError('Webhook body is not valid JSON', field='body')
        if not isinstance(body, dict):
            raise IntegrationValidationError('Webhook body must be a JSON object', field='body')

        event_type = body.get('type')
        if event_type == EVENT_JOB_COMPLETED:
            return self._job_completed(printer_id, body)
        if event_type == EVENT_STATUS_UPDATE:
            return self._status_update(printer_id, body)

        logger.info(f"Ignoring webhook of type {event_type!r} from printer {printer_id}")
        return {'type': event_type, 'ignored': True}

    def _job_completed(self, printer_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        job = body.get('job')
        if not isinstance(job, dict):
            raise IntegrationValidationError('job_completed webhook has no job', field='job')
        if job.get('id') in (None, ''):
            raise IntegrationValidationError('job_completed webhook has no job id', field='job.id')

        try:
            raw_job = RawJob.from_payload(job, metadata={
                'webhook': True,
                'source': body.get('source') or 'unknown',
                'timestamp': body.get('timestamp') or utcnow().isoformat(),
            })
        except ValueError as e:
            raise IntegrationValidationError(f"Invalid job in webhook: {e}", field='job.id')
        capture, created = self.engine.capture_job(printer_id, raw_job)
        logger.info(f"Webhook: {'captured' if created else 'duplicate'} job {raw_job.native_id} from printer {printer_id}")
        return {
            'type': EVENT_JOB_COMPLETED,
            'capture': capture.to_dict(),
            'duplicate': not created,
        }

    def _status_update(self, printer_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        status = body.get('status')
        if not isinstance(status, dict):
            raise IntegrationValidationError('status_update webhook has no status', field='status')

        sample = self.store.append_status_sample(DeviceStatusSample.from_payload(printer_id, status))
        logger.info(f"Webhook: status {sample.state.value} for printer {printer_id}")
        return {
            'type': EVENT_STATUS_UPDATE,
            'status': sample.to_dict(),
        }
