"""
SNMP connector - Printer MIB / Host Resources MIB

Status comes from hrDeviceStatus/hrPrinterStatus, supplies from the
prtMarkerSupplies table and paper from the prtInput table. SNMP has no per-job
log, so jobs are derived from prtMarkerLifeCount deltas between cycles.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    UsmUserData,
    get_cmd,
)

from config.config import SNMP_DEFAULT_COMMUNITY, SNMP_PORT, SNMP_RETRIES, SNMP_TIMEOUT_SECONDS
from printcloud.models import AuthMode, DeviceIntegration, DeviceState, DeviceStatusSample, RawJob
from printcloud.services.errors import ConnectorUnreachable, IntegrationValidationError

logger = logging.getLogger(__name__)

STATUS_OIDS = {
    'hrDeviceStatus': '1.3.6.1.2.1.25.3.2.1.5.1',
    'hrPrinterStatus': '1.3.6.1.2.1.25.3.5.1.1.1',
    'hrPrinterDetectedErrorState': '1.3.6.1.2.1.25.3.5.1.2.1',
    'prtConsoleDisplayBufferText': '1.3.6.1.2.1.43.16.5.1.2.1.1',
}

PAGE_COUNT_OIDS = {
    'prtMarkerLifeCount': '1.3.6.1.2.1.43.10.2.1.4.1.1',
}

SUPPLY_SLOTS = range(1, 5)
TRAY_SLOTS = range(1, 5)

for _i in SUPPLY_SLOTS:
    STATUS_OIDS[f'supply{_i}_desc'] = f'1.3.6.1.2.1.43.11.1.1.6.1.{_i}'
    STATUS_OIDS[f'supply{_i}_max'] = f'1.3.6.1.2.1.43.11.1.1.8.1.{_i}'
    STATUS_OIDS[f'supply{_i}_level'] = f'1.3.6.1.2.1.43.11.1.1.9.1.{_i}'

for _i in TRAY_SLOTS:
    STATUS_OIDS[f'tray{_i}_max'] = f'1.3.6.1.2.1.43.8.2.1.9.1.{_i}'
    STATUS_OIDS[f'tray{_i}_level'] = f'1.3.6.1.2.1.43.8.2.1.10.1.{_i}'
    STATUS_OIDS[f'tray{_i}_name'] = f'1.3.6.1.2.1.43.8.2.1.13.1.{_i}'

# hrDeviceStatus values
HR_DEVICE_RUNNING = 2
HR_DEVICE_WARNING = 3
HR_DEVICE_TESTING = 4
HR_DEVICE_DOWN = 5

# hrPrinterStatus values
HR_PRINTER_IDLE = 3
HR_PRINTER_PRINTING = 4
HR_PRINTER_WARMUP = 5

# hrPrinterDetectedErrorState bits, first octet then second octet (MSB first)
DETECTED_ERROR_BITS = [
    'Low paper', 'No paper', 'Low toner', 'No toner',
    'Door open', 'Paper jam', 'Offline', 'Service requested',
    'Input tray missing', 'Output tray missing', 'Marker supply missing', 'Output near full',
    'Output full', 'Input tray empty', 'Overdue preventive maintenance',
]


def _parse_target(endpoint: str) -> Tuple[str, int]:
    """Split 'host', 'host:port' or 'snmp://host:port' into (host, port)."""
    target = endpoint.split('://', 1)[-1].strip().rstrip('/')
    if not target:
        raise IntegrationValidationError('SNMP endpoint is empty', field='endpoint')
    if target.count(':') == 1:
        host, port = target.split(':')
        try:
            return host, int(port)
        except ValueError:
            raise IntegrationValidationError(f"Invalid SNMP port in endpoint: {endpoint}", field='endpoint')
    return target, SNMP_PORT


def decode_error_state(raw: bytes) -> List[str]:
    """Decode the hrPrinterDetectedErrorState bit string into messages."""
    messages = []
    for index, label in enumerate(DETECTED_ERROR_BITS):
        octet, bit = divmod(index, 8)
        if octet < len(raw) and raw[octet] & (0x80 >> bit):
            messages.append(label)
    return messages


def _supply_name(desc: str, slot: int) -> str:
    lowered = desc.lower()
    for color in ('black', 'cyan', 'magenta', 'yellow'):
        if color in lowered:
            return color
    return desc[:20] if desc else f'supply{slot}'


def _percent(level: Any, maximum: Any) -> Optional[int]:
    try:
        level, maximum = int(level), int(maximum)
    except (TypeError, ValueError):
        return None
    # Negative values are "unknown" / "some remaining" sentinels
    if level < 0 or maximum <= 0:
        return None
    return max(0, min(100, int(level * 100 / maximum)))


class SNMPConnector:
    """Connector for printers exposing the standard Printer MIB."""

    def __init__(self, integration: DeviceIntegration,
                 timeout: float = SNMP_TIMEOUT_SECONDS, retries: int = SNMP_RETRIES):
        self.printer_id = integration.printer_id
        self.host, self.port = _parse_target(integration.endpoint)
        self.timeout = timeout
        self.retries = retries
        self.auth_data = self._build_auth(integration.auth_mode, integration.credentials or {})
        self._last_page_count: Optional[int] = None
        self._predecessor: Optional['SNMPConnector'] = None

    @staticmethod
    def _build_auth(auth_mode: AuthMode, credentials: Dict[str, Any]):
        if auth_mode == AuthMode.NONE:
            return CommunityData(credentials.get('community') or SNMP_DEFAULT_COMMUNITY, mpModel=1)
        if auth_mode == AuthMode.BASIC:
            if not credentials.get('username'):
                raise IntegrationValidationError('SNMPv3 requires a username', field='credentials')
            return UsmUserData(
                credentials['username'],
                authKey=credentials.get('password') or None,
                privKey=credentials.get('privacy_password') or None,
            )
        raise IntegrationValidationError(
            f"Auth mode '{AuthMode(auth_mode).value}' is not supported for SNMP",
            field='auth_mode',
        )

    def _query(self, oids: Dict[str, str]) -> Dict[str, Any]:
        """GET each OID and return {name: value} for the ones the device answered.

        Raises:
            ConnectorUnreachable: If the device answered none of them
        """
        results: Dict[str, Any] = {}
        failures: List[str] = []

        async def query_oid(engine, target, name, oid):
            error_indication, error_status, error_index, var_binds = await get_cmd(
                engine, self.auth_data, target, ContextData(), ObjectType(ObjectIdentity(oid))
            )
            if error_indication:
                failures.append(str(error_indication))
                return
            if error_status:
                return
            for var_bind in var_binds:
                value = var_bind[1]
                text = str(value)
                if text and 'no such' not in text.lower():
                    results[name] = value

        async def query_all():
            engine = SnmpEngine()
            try:
                target = await UdpTransportTarget.create(
                    (self.host, self.port), timeout=self.timeout, retries=self.retries
                )
                await asyncio.gather(*[
                    query_oid(engine, target, name, oid) for name, oid in oids.items()
                ])
            finally:
                engine.close_dispatcher()

        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(query_all())
        except OSError as e:
            raise ConnectorUnreachable(f"SNMP transport error for {self.host}: {e}", details={'host': self.host})
        finally:
            loop.close()

        if not results:
            reason = failures[0] if failures else 'no response'
            raise ConnectorUnreachable(
                f"SNMP agent at {self.host}:{self.port} did not respond: {reason}",
                details={'host': self.host, 'port': self.port},
            )
        return results

    def fetch_status(self) -> DeviceStatusSample:
        results = self._query(STATUS_OIDS)

        errors: List[str] = []
        if 'hrPrinterDetectedErrorState' in results:
            value = results['hrPrinterDetectedErrorState']
            raw = value.asOctets() if hasattr(value, 'asOctets') else bytes(value)
            errors.extend(decode_error_state(raw))

        state = self._device_state(results, errors)
        if state in (DeviceState.ERROR, DeviceState.OFFLINE):
            console = str(results.get('prtConsoleDisplayBufferText', '')).strip()
            if console:
                errors.append(console)

        consumables = {}
        for i in SUPPLY_SLOTS:
            pct = _percent(results.get(f'supply{i}_level'), results.get(f'supply{i}_max'))
            if pct is not None:
                consumables[_supply_name(str(results.get(f'supply{i}_desc', '')), i)] = pct

        paper_levels = {}
        for i in TRAY_SLOTS:
            pct = _percent(results.get(f'tray{i}_level'), results.get(f'tray{i}_max'))
            if pct is not None:
                name = str(results.get(f'tray{i}_name', '')).strip() or f'tray{i}'
                paper_levels[name] = pct

        return DeviceStatusSample(
            printer_id=self.printer_id,
            state=state,
            consumables=consumables,
            paper_levels=paper_levels,
            error_messages=errors,
        )

    @staticmethod
    def _device_state(results: Dict[str, Any], errors: List[str]) -> DeviceState:
        device_status = results.get('hrDeviceStatus')
        printer_status = results.get('hrPrinterStatus')
        device_status = int(device_status) if device_status is not None else None
        printer_status = int(printer_status) if printer_status is not None else None

        if 'Offline' in errors:
            return DeviceState.OFFLINE
        if device_status == HR_DEVICE_DOWN:
            return DeviceState.ERROR
        if device_status == HR_DEVICE_TESTING:
            return DeviceState.MAINTENANCE
        if device_status in (HR_DEVICE_RUNNING, HR_DEVICE_WARNING):
            return DeviceState.ONLINE
        if printer_status in (HR_PRINTER_IDLE, HR_PRINTER_PRINTING, HR_PRINTER_WARMUP):
            return DeviceState.ONLINE
        return DeviceState.UNKNOWN

    @staticmethod
    def _page_count(results: Dict[str, Any]) -> Optional[int]:
        try:
            count = int(results['prtMarkerLifeCount'])
        except (KeyError, TypeError, ValueError):
            return None
        return count if count >= 0 else None

    def resume_from(self, previous: Any):
        """Continue page counting from a connector this one replaces.

        The baseline is taken on the first job-log read, after any cycle still
        running on the old connector has finished.
        """
        if isinstance(previous, SNMPConnector) and (previous.host, previous.port) == (self.host, self.port):
            self._predecessor = previous

    def fetch_job_log(self, since: Optional[datetime] = None) -> List[RawJob]:
        """Derive a job from the page counter delta since the previous call.

        The first call only records a baseline, unless one was carried over
        with resume_from(). A counter that went backwards
        (device reset or replaced) re-baselines without emitting a job.
        """
        if self._predecessor is not None:
            if self._last_page_count is None:
                self._last_page_count = self._predecessor._last_page_count
            self._predecessor = None

        count = self._page_count(self._query(PAGE_COUNT_OIDS))
        if count is None:
            return []

        previous, self._last_page_count = self._last_page_count, count
        if previous is None:
            logger.debug(f"Page counter baseline for printer {self.printer_id}: {count}")
            return []
        if count < previous:
            logger.info(f"Page counter for printer {self.printer_id} went backwards ({previous} -> {count})")
            return []
        if count == previous:
            return []

        return [RawJob(
            native_id=f'pagecount-{previous}-{count}',
            file_name='SNMP page counter',
            pages=count - previous,
            metadata={'source': 'snmp', 'from_count': previous, 'to_count': count},
        )]
