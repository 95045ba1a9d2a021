"""
IPP connector

Speaks just enough IPP/1.1 (RFC 8010/8011) to read printer attributes and the
completed-jobs list: requests are POSTed as application/ipp over HTTP(S).
"""
import itertools
import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from config.config import CONNECTOR_TIMEOUT_SECONDS, IPP_DEFAULT_PORT, IPP_JOB_LOG_LIMIT
from printcloud.models import DeviceIntegration, DeviceState, DeviceStatusSample, RawJob
from printcloud.services.connectors.base import build_http_session, send_request
from printcloud.services.errors import ConnectorUnreachable, IntegrationValidationError

logger = logging.getLogger(__name__)

# Operations
GET_JOBS = 0x000A
GET_PRINTER_ATTRIBUTES = 0x000B

# Delimiter tags
OPERATION_ATTRIBUTES_TAG = 0x01
JOB_ATTRIBUTES_TAG = 0x02
END_OF_ATTRIBUTES_TAG = 0x03
PRINTER_ATTRIBUTES_TAG = 0x04
UNSUPPORTED_ATTRIBUTES_TAG = 0x05

# Value tags
TAG_INTEGER = 0x21
TAG_BOOLEAN = 0x22
TAG_ENUM = 0x23
TAG_OCTET_STRING = 0x30
TAG_DATETIME = 0x31
TAG_RESOLUTION = 0x32
TAG_RANGE = 0x33
TAG_BEGIN_COLLECTION = 0x34
TAG_TEXT_WITH_LANGUAGE = 0x35
TAG_NAME_WITH_LANGUAGE = 0x36
TAG_END_COLLECTION = 0x37
TAG_TEXT = 0x41
TAG_NAME = 0x42
TAG_KEYWORD = 0x44
TAG_URI = 0x45
TAG_CHARSET = 0x47
TAG_LANGUAGE = 0x48
TAG_MEMBER_NAME = 0x4A

PRINTER_STATE_IDLE = 3
PRINTER_STATE_PROCESSING = 4
PRINTER_STATE_STOPPED = 5

PRINT_QUALITY = {3: 'Draft', 4: 'Normal', 5: 'High'}

PRINTER_STATUS_ATTRIBUTES = [
    'printer-state',
    'printer-state-reasons',
    'printer-state-message',
    'marker-names',
    'marker-levels',
    'queued-job-count',
]

JOB_LOG_ATTRIBUTES = [
    'job-id',
    'job-name',
    'job-state',
    'job-impressions-completed',
    'copies',
    'print-color-mode',
    'media',
    'print-quality',
    'date-time-at-completed',
]

_request_ids = itertools.count(1)


class IppCodecError(ValueError):
    """Malformed IPP message."""


# =============================================================================
# Codec
# =============================================================================

def _encode_attribute(tag: int, name: str, values: List[Any]) -> bytes:
    out = bytearray()
    for index, value in enumerate(values):
        attr_name = name.encode('utf-8') if index == 0 else b''
        if tag in (TAG_INTEGER, TAG_ENUM):
            raw = struct.pack('>i', int(value))
        elif tag == TAG_BOOLEAN:
            raw = b'\x01' if value else b'\x00'
        else:
            raw = str(value).encode('utf-8')
        out += struct.pack('>BH', tag, len(attr_name)) + attr_name
        out += struct.pack('>H', len(raw)) + raw
    return bytes(out)


def encode_request(operation: int, printer_uri: str,
                   attributes: Optional[List[Tuple[int, str, Any]]] = None,
                   request_id: Optional[int] = None) -> bytes:
    """Encode an IPP/1.1 request with an operation attributes group.

    attributes is a list of (value_tag, name, value_or_values) appended after
    the mandatory charset, natural-language and printer-uri attributes.
    """
    if request_id is None:
        request_id = next(_request_ids)
    body = bytearray(struct.pack('>BBHI', 1, 1, operation, request_id))
    body.append(OPERATION_ATTRIBUTES_TAG)
    body += _encode_attribute(TAG_CHARSET, 'attributes-charset', ['utf-8'])
    body += _encode_attribute(TAG_LANGUAGE, 'attributes-natural-language', ['en'])
    body += _encode_attribute(TAG_URI, 'printer-uri', [printer_uri])
    for tag, name, value in attributes or []:
        values = value if isinstance(value, (list, tuple)) else [value]
        body += _encode_attribute(tag, name, list(values))
    body.append(END_OF_ATTRIBUTES_TAG)
    return bytes(body)


def _decode_datetime(raw: bytes) -> Optional[datetime]:
    if len(raw) != 11:
        return None
    year, month, day, hour, minute, second, deci, direction, off_h, off_m = struct.unpack('>HBBBBBBcBB', raw)
    offset = timedelta(hours=off_h, minutes=off_m)
    if direction == b'-':
        offset = -offset
    try:
        return datetime(year, month, day, hour, minute, second, deci * 100000,
                        tzinfo=timezone(offset))
    except ValueError:
        return None


def _decode_value(tag: int, raw: bytes) -> Any:
    if tag in (TAG_INTEGER, TAG_ENUM):
        return struct.unpack('>i', raw)[0] if len(raw) == 4 else None
    if tag == TAG_BOOLEAN:
        return bool(raw[0]) if raw else False
    if tag == TAG_DATETIME:
        return _decode_datetime(raw)
    if tag == TAG_RANGE:
        return struct.unpack('>ii', raw) if len(raw) == 8 else None
    if tag == TAG_RESOLUTION:
        return struct.unpack('>iib', raw) if len(raw) == 9 else None
    if tag in (TAG_TEXT_WITH_LANGUAGE, TAG_NAME_WITH_LANGUAGE):
        lang_len = struct.unpack('>H', raw[:2])[0]
        text_len = struct.unpack('>H', raw[2 + lang_len:4 + lang_len])[0]
        return raw[4 + lang_len:4 + lang_len + text_len].decode('utf-8', errors='replace')
    if tag == TAG_OCTET_STRING:
        return raw
    if tag >= 0x40:
        return raw.decode('utf-8', errors='replace')
    return raw


@dataclass
class IppResponse:
    version: Tuple[int, int]
    status_code: int
    request_id: int
    groups: List[Tuple[int, Dict[str, List[Any]]]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status_code < 0x0100

    def _groups(self, tag: int) -> List[Dict[str, List[Any]]]:
        return [attrs for group_tag, attrs in self.groups if group_tag == tag]

    @property
    def operation_attributes(self) -> Dict[str, List[Any]]:
        merged: Dict[str, List[Any]] = {}
        for attrs in self._groups(OPERATION_ATTRIBUTES_TAG):
            merged.update(attrs)
        return merged

    @property
    def printer_attributes(self) -> Dict[str, List[Any]]:
        merged: Dict[str, List[Any]] = {}
        for attrs in self._groups(PRINTER_ATTRIBUTES_TAG):
            merged.update(attrs)
        return merged

    @property
    def jobs(self) -> List[Dict[str, List[Any]]]:
        return self._groups(JOB_ATTRIBUTES_TAG)


def decode_response(data: bytes) -> IppResponse:
    """Decode an IPP response into its attribute groups.

    Attribute values are always lists. Collection values are skipped.
    """
    if len(data) < 8:
        raise IppCodecError('IPP response shorter than its header')

    major, minor, status_code, request_id = struct.unpack('>BBHI', data[:8])
    response = IppResponse(version=(major, minor), status_code=status_code, request_id=request_id)

    pos = 8
    current: Optional[Dict[str, List[Any]]] = None
    last_name: Optional[str] = None
    collection_depth = 0

    while pos < len(data):
        tag = data[pos]
        pos += 1

        if tag == END_OF_ATTRIBUTES_TAG:
            break
        if tag < 0x10:
            current = {}
            response.groups.append((tag, current))
            last_name = None
            continue

        if pos + 2 > len(data):
            raise IppCodecError('Truncated attribute name length')
        name_len = struct.unpack('>H', data[pos:pos + 2])[0]
        pos += 2
        name = data[pos:pos + name_len].decode('utf-8', errors='replace')
        pos += name_len

        if pos + 2 > len(data):
            raise IppCodecError('Truncated attribute value length')
        value_len = struct.unpack('>H', data[pos:pos + 2])[0]
        pos += 2
        raw = data[pos:pos + value_len]
        if len(raw) != value_len:
            raise IppCodecError(f"Truncated value for attribute {name or last_name}")
        pos += value_len

        if tag == TAG_BEGIN_COLLECTION:
            if collection_depth == 0 and current is not None:
                attr = name or last_name
                if attr:
                    current.setdefault(attr, []).append({})
                    last_name = attr
            collection_depth += 1
            continue
        if tag == TAG_END_COLLECTION:
            collection_depth = max(0, collection_depth - 1)
            continue
        if collection_depth or current is None:
            continue

        if name:
            last_name = name
            current[name] = [_decode_value(tag, raw)]
        elif last_name:
            current[last_name].append(_decode_value(tag, raw))

    return response


# =============================================================================
# Connector
# =============================================================================

def _first(attrs: Dict[str, List[Any]], name: str, default: Any = None) -> Any:
    values = attrs.get(name)
    return values[0] if values else default


def _paper_size(media: Optional[str]) -> str:
    if not media:
        return 'A4'
    lowered = media.lower()
    for key, label in (('a4', 'A4'), ('a3', 'A3'), ('a5', 'A5'), ('letter', 'Letter'), ('legal', 'Legal')):
        if key in lowered:
            return label
    return media


def printer_state_to_device_state(state: Optional[int], reasons: List[str]) -> DeviceState:
    if 'offline' in reasons or any(r.startswith('offline-') for r in reasons):
        return DeviceState.OFFLINE
    if state in (PRINTER_STATE_IDLE, PRINTER_STATE_PROCESSING):
        return DeviceState.ONLINE
    if state == PRINTER_STATE_STOPPED:
        if any(r.startswith('paused') or r.startswith('moving-to-paused') for r in reasons):
            return DeviceState.MAINTENANCE
        return DeviceState.ERROR
    return DeviceState.UNKNOWN


class IPPConnector:
    """Connector for IPP printers (ipp:// or ipps:// endpoints)."""

    def __init__(self, integration: DeviceIntegration, timeout: float = CONNECTOR_TIMEOUT_SECONDS):
        self.printer_id = integration.printer_id
        self.timeout = timeout
        self.printer_uri, self.url = self._resolve_endpoint(integration.endpoint)
        self.session = build_http_session(integration.auth_mode, integration.credentials)
        self.session.headers['Accept'] = 'application/ipp'
        self.requesting_user = (integration.credentials or {}).get('username') or 'printcloud'

    @staticmethod
    def _resolve_endpoint(endpoint: str) -> Tuple[str, str]:
        """Return (printer-uri, HTTP URL) for an endpoint.

        ipp:// maps to http:// and ipps:// to https://, default port 631.
        """
        if '://' not in endpoint:
            endpoint = f"ipp://{endpoint}"
        parts = urlsplit(endpoint)
        if not parts.hostname:
            raise IntegrationValidationError(f"Invalid IPP endpoint: {endpoint}", field='endpoint')

        scheme = {'ipp': 'http', 'ipps': 'https'}.get(parts.scheme, parts.scheme)
        if scheme not in ('http', 'https'):
            raise IntegrationValidationError(f"Unsupported IPP scheme: {parts.scheme}", field='endpoint')

        netloc = parts.netloc if parts.port else f"{parts.netloc}:{IPP_DEFAULT_PORT}"
        path = parts.path or '/ipp/print'
        printer_uri = urlunsplit((parts.scheme, netloc, path, '', ''))
        url = urlunsplit((scheme, netloc, path, parts.query, ''))
        return printer_uri, url

    def _call(self, operation: int, attributes: List[Tuple[int, str, Any]]) -> IppResponse:
        body = encode_request(operation, self.printer_uri, attributes)
        response = send_request(
            self.session, 'POST', self.url,
            timeout=self.timeout,
            data=body,
            headers={'Content-Type': 'application/ipp'},
        )
        try:
            decoded = decode_response(response.content)
        except IppCodecError as e:
            raise ConnectorUnreachable(f"Malformed IPP response from {self.url}: {e}", details={'url': self.url})

        if not decoded.ok:
            message = _first(decoded.operation_attributes, 'status-message', '')
            raise ConnectorUnreachable(
                f"IPP operation failed with status 0x{decoded.status_code:04x} {message}".strip(),
                details={'url': self.url, 'status_code': decoded.status_code},
            )
        return decoded

    def fetch_status(self) -> DeviceStatusSample:
        response = self._call(GET_PRINTER_ATTRIBUTES, [
            (TAG_NAME, 'requesting-user-name', self.requesting_user),
            (TAG_KEYWORD, 'requested-attributes', PRINTER_STATUS_ATTRIBUTES),
        ])
        attrs = response.printer_attributes

        reasons = [r for r in attrs.get('printer-state-reasons', []) if r and r != 'none']
        state = printer_state_to_device_state(_first(attrs, 'printer-state'), reasons)

        errors = list(reasons)
        message = _first(attrs, 'printer-state-message')
        if message and state in (DeviceState.ERROR, DeviceState.OFFLINE):
            errors.append(message)

        consumables = {}
        for name, level in zip(attrs.get('marker-names', []), attrs.get('marker-levels', [])):
            # Negative levels mean unknown/unavailable
            if isinstance(level, int) and level >= 0:
                consumables[str(name)] = min(level, 100)

        return DeviceStatusSample(
            printer_id=self.printer_id,
            state=state,
            consumables=consumables,
            error_messages=errors,
            queue_depth=_first(attrs, 'queued-job-count'),
        )

    def fetch_job_log(self, since: Optional[datetime] = None) -> List[RawJob]:
        response = self._call(GET_JOBS, [
            (TAG_NAME, 'requesting-user-name', self.requesting_user),
            (TAG_INTEGER, 'limit', IPP_JOB_LOG_LIMIT),
            (TAG_KEYWORD, 'which-jobs', 'completed'),
            (TAG_KEYWORD, 'requested-attributes', JOB_LOG_ATTRIBUTES),
        ])

        jobs = []
        for attrs in response.jobs:
            job_id = _first(attrs, 'job-id')
            if job_id is None:
                continue
            completed_at = _first(attrs, 'date-time-at-completed')
            if since and isinstance(completed_at, datetime) and completed_at < since:
                continue

            copies = _first(attrs, 'copies') or 1
            impressions = _first(attrs, 'job-impressions-completed') or 0
            # Impression counts include every copy
            pages = max(1, impressions // copies) if impressions else 1

            jobs.append(RawJob(
                native_id=str(job_id),
                file_name=_first(attrs, 'job-name') or 'Print Job',
                pages=pages,
                copies=copies,
                is_color=_first(attrs, 'print-color-mode') == 'color',
                paper_size=_paper_size(_first(attrs, 'media')),
                quality=PRINT_QUALITY.get(_first(attrs, 'print-quality'), 'Normal'),
                metadata={
                    'source': 'ipp',
                    'timestamp': completed_at.isoformat() if isinstance(completed_at, datetime) else None,
                },
            ))
        return jobs
