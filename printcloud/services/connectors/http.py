"""
Generic HTTP connector for devices exposing a JSON status/jobs API.

    GET {endpoint}/status  -> {"status", "toner", "paper", "errors", "queueSize", "monthlyTotal"}
    GET {endpoint}/jobs    -> [{"jobId", "fileName", "pages", "copies", "isColor", ...}]
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config.config import CONNECTOR_TIMEOUT_SECONDS
from printcloud.models import DeviceIntegration, DeviceStatusSample, RawJob
from printcloud.services.connectors.base import build_http_session, send_request
from printcloud.services.errors import ConnectorUnreachable

logger = logging.getLogger(__name__)


class HTTPConnector:
    """Connector for printers with a vendor JSON API."""

    def __init__(self, integration: DeviceIntegration, timeout: float = CONNECTOR_TIMEOUT_SECONDS):
        self.printer_id = integration.printer_id
        self.base_url = integration.endpoint.rstrip('/')
        self.timeout = timeout
        self.session = build_http_session(integration.auth_mode, integration.credentials)

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        response = send_request(self.session, 'GET', url, timeout=self.timeout, params=params)
        try:
            return response.json()
        except ValueError:
            raise ConnectorUnreachable(
                f"Device returned a non-JSON response from {url}",
                details={'url': url},
            )

    def fetch_status(self) -> DeviceStatusSample:
        data = self._get_json('/status')
        if not isinstance(data, dict):
            raise ConnectorUnreachable(
                'Unexpected status payload from device',
                details={'url': f"{self.base_url}/status"},
            )
        return DeviceStatusSample.from_payload(self.printer_id, data)

    def fetch_job_log(self, since: Optional[datetime] = None) -> List[RawJob]:
        params = {'since': since.isoformat()} if since else None
        data = self._get_json('/jobs', params=params)

        # Some firmware wraps the list in an object
        if isinstance(data, dict):
            data = data.get('jobs') or []
        if not isinstance(data, list):
            raise ConnectorUnreachable(
                'Unexpected job log payload from device',
                details={'url': f"{self.base_url}/jobs"},
            )

        jobs = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            try:
                jobs.append(RawJob.from_payload(entry, metadata={
                    'source': 'http',
                    'timestamp': entry.get('timestamp'),
                }))
            except ValueError as e:
                logger.warning(f"Skipping job log entry from printer {self.printer_id}: {e}")
        return jobs
