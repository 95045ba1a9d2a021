"""
Device connector contract and shared HTTP plumbing.

A connector is built from one DeviceIntegration and offers two capabilities:
reading the device's current status and reading its recent job log.
Authentication is applied at construction time.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests

from config.config import CONNECTOR_TIMEOUT_SECONDS
from printcloud.models import AuthMode, DeviceStatusSample, RawJob
from printcloud.services.errors import ConnectorUnreachable, IntegrationValidationError

logger = logging.getLogger(__name__)


@runtime_checkable
class DeviceConnector(Protocol):
    """Capabilities every protocol connector provides."""

    def fetch_status(self) -> DeviceStatusSample:
        """Read the device's current state.

        Raises:
            ConnectorUnreachable: On network or authentication failure
        """
        ...

    def fetch_job_log(self, since: Optional[datetime] = None) -> List[RawJob]:
        """Read jobs completed since the last successful sync.

        Returns an empty list when nothing is new.
        """
        ...


def _require(credentials: Dict[str, Any], *names: str):
    missing = [name for name in names if not credentials.get(name)]
    if missing:
        raise IntegrationValidationError(
            f"Missing credential(s): {', '.join(missing)}",
            field='credentials',
            details={'missing': missing},
        )


def build_http_session(auth_mode: AuthMode, credentials: Optional[Dict[str, Any]]) -> requests.Session:
    """Create a requests session carrying the integration's authentication.

    basic -> HTTP basic auth, api_key -> X-API-Key header,
    certificate -> client certificate with an optional CA bundle.
    """
    credentials = credentials or {}
    session = requests.Session()
    session.headers['Accept'] = 'application/json'

    auth_mode = AuthMode(auth_mode)
    if auth_mode == AuthMode.BASIC:
        _require(credentials, 'username', 'password')
        session.auth = (credentials['username'], credentials['password'])
    elif auth_mode == AuthMode.API_KEY:
        _require(credentials, 'api_key')
        session.headers['X-API-Key'] = credentials['api_key']
    elif auth_mode == AuthMode.CERTIFICATE:
        _require(credentials, 'cert_file')
        if credentials.get('key_file'):
            session.cert = (credentials['cert_file'], credentials['key_file'])
        else:
            session.cert = credentials['cert_file']
        if credentials.get('ca_file'):
            session.verify = credentials['ca_file']

    return session


def send_request(session: requests.Session, method: str, url: str,
                 timeout: float = CONNECTOR_TIMEOUT_SECONDS, **kwargs) -> requests.Response:
    """Send a request to a device, mapping transport failures to ConnectorUnreachable."""
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.Timeout:
        raise ConnectorUnreachable(f"Timed out connecting to {url}", details={'url': url})
    except requests.exceptions.SSLError as e:
        raise ConnectorUnreachable(
            f"TLS error connecting to {url}: {e}",
            details={'url': url},
            remediation='Check the device certificate and the configured CA bundle.'
        )
    except requests.exceptions.ConnectionError as e:
        raise ConnectorUnreachable(f"Could not connect to {url}: {e}", details={'url': url})
    except requests.exceptions.RequestException as e:
        raise ConnectorUnreachable(f"Request to {url} failed: {e}", details={'url': url})

    if response.status_code in (401, 403):
        raise ConnectorUnreachable(
            f"Device rejected credentials (HTTP {response.status_code})",
            details={'url': url, 'status_code': response.status_code},
            remediation='Verify the username, password or API key configured for this device.'
        )
    if not response.ok:
        raise ConnectorUnreachable(
            f"HTTP {response.status_code}: {response.reason}",
            details={'url': url, 'status_code': response.status_code},
        )
    return response
