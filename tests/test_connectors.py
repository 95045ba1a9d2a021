"""
Tests for the HTTP, IPP and SNMP device connectors.
"""
import struct
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import pytest
import requests

from printcloud.models import AuthMode, DeviceIntegration, DeviceState, ProtocolKind
from printcloud.services.connectors import (
    DeviceConnector,
    HTTPConnector,
    IPPConnector,
    SNMPConnector,
    build_http_session,
    create_connector,
)
from printcloud.services.connectors import ipp
from printcloud.services.connectors.snmp import decode_error_state
from printcloud.services.errors import ConnectorUnreachable, IntegrationValidationError


def _integration(protocol=ProtocolKind.HTTP, endpoint='http://device.local/api',
                 auth_mode=AuthMode.NONE, credentials=None):
    return DeviceIntegration(
        id='int-1',
        printer_id='P1',
        protocol=protocol,
        endpoint=endpoint,
        auth_mode=auth_mode,
        credentials=credentials or {},
    )


def _json_response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.reason = 'OK' if status_code < 400 else 'Error'
    response.json.return_value = payload
    return response


class TestConnectorFactory:

    @pytest.mark.parametrize('protocol,endpoint,cls', [
        (ProtocolKind.HTTP, 'http://device.local/api', HTTPConnector),
        (ProtocolKind.IPP, 'ipp://device.local/ipp/print', IPPConnector),
        (ProtocolKind.SNMP, '10.0.0.5', SNMPConnector),
    ])
    def test_creates_connector_by_protocol(self, protocol, endpoint, cls):
        connector = create_connector(_integration(protocol=protocol, endpoint=endpoint))
        assert isinstance(connector, cls)
        assert isinstance(connector, DeviceConnector)

    def test_unsupported_protocol(self):
        integration = _integration()
        integration.protocol = 'wsd'

        with pytest.raises(IntegrationValidationError) as exc_info:
            create_connector(integration)

        assert 'Unsupported integration type' in exc_info.value.message


class TestHTTPSession:

    def test_api_key_header(self):
        session = build_http_session(AuthMode.API_KEY, {'api_key': 'k-123'})
        assert session.headers['X-API-Key'] == 'k-123'

    def test_basic_auth(self):
        session = build_http_session(AuthMode.BASIC, {'username': 'svc', 'password': 'pw'})
        assert session.auth == ('svc', 'pw')

    def test_basic_auth_requires_password(self):
        with pytest.raises(IntegrationValidationError) as exc_info:
            build_http_session(AuthMode.BASIC, {'username': 'svc'})
        assert exc_info.value.details['missing'] == ['password']

    def test_certificate_auth(self):
        session = build_http_session(AuthMode.CERTIFICATE, {
            'cert_file': '/etc/printcloud/client.pem',
            'key_file': '/etc/printcloud/client.key',
            'ca_file': '/etc/printcloud/ca.pem',
        })
        assert session.cert == ('/etc/printcloud/client.pem', '/etc/printcloud/client.key')
        assert session.verify == '/etc/printcloud/ca.pem'


class TestHTTPConnector:

    @patch.object(requests.Session, 'request')
    def test_fetch_status(self, mock_request):
        mock_request.return_value = _json_response({
            'status': 'printing',
            'toner': {'black': 45, 'cyan': 'n/a'},
            'paper': {'tray1': 80},
            'errors': ['Low toner'],
            'queueSize': 3,
            'monthlyTotal': 1520,
        })

        sample = HTTPConnector(_integration()).fetch_status()

        assert sample.printer_id == 'P1'
        assert sample.state == DeviceState.ONLINE
        assert sample.consumables == {'black': 45}
        assert sample.paper_levels == {'tray1': 80}
        assert sample.error_messages == ['Low toner']
        assert sample.queue_depth == 3
        assert sample.monthly_pages == 1520
        args, kwargs = mock_request.call_args
        assert args == ('GET', 'http://device.local/api/status')

    @patch.object(requests.Session, 'request')
    def test_fetch_job_log(self, mock_request):
        since = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        mock_request.return_value = _json_response({'jobs': [
            {'jobId': 'J-1', 'fileName': 'a.pdf', 'pages': 2, 'copies': 3, 'isColor': True},
            {'fileName': 'no-id.pdf'},
            {'id': 77, 'pages': 1},
        ]})

        jobs = HTTPConnector(_integration()).fetch_job_log(since)

        assert [j.native_id for j in jobs] == ['J-1', '77']
        assert jobs[0].total_units == 6
        assert jobs[0].is_color is True
        assert jobs[0].metadata['source'] == 'http'
        assert mock_request.call_args.kwargs['params'] == {'since': since.isoformat()}

    @patch.object(requests.Session, 'request')
    def test_timeout_is_unreachable(self, mock_request):
        mock_request.side_effect = requests.exceptions.ConnectTimeout('timed out')

        with pytest.raises(ConnectorUnreachable) as exc_info:
            HTTPConnector(_integration()).fetch_status()

        assert 'Timed out' in exc_info.value.message
        assert exc_info.value.http_status == 503

    @patch.object(requests.Session, 'request')
    def test_rejected_credentials_are_unreachable(self, mock_request):
        mock_request.return_value = _json_response({}, status_code=401)

        with pytest.raises(ConnectorUnreachable) as exc_info:
            HTTPConnector(_integration()).fetch_status()

        assert exc_info.value.details['status_code'] == 401

    @patch.object(requests.Session, 'request')
    def test_non_json_payload(self, mock_request):
        response = _json_response(None)
        response.json.side_effect = ValueError('not json')
        mock_request.return_value = response

        with pytest.raises(ConnectorUnreachable):
            HTTPConnector(_integration()).fetch_job_log()


def _ipp_datetime(value):
    return struct.pack('>HBBBBBBcBB', value.year, value.month, value.day,
                       value.hour, value.minute, value.second, 0, b'+', 0, 0)


def _ipp_response(groups, status_code=0x0000):
    body = bytearray(struct.pack('>BBHI', 1, 1, status_code, 1))
    body.append(ipp.OPERATION_ATTRIBUTES_TAG)
    body += ipp._encode_attribute(ipp.TAG_CHARSET, 'attributes-charset', ['utf-8'])
    body += ipp._encode_attribute(ipp.TAG_LANGUAGE, 'attributes-natural-language', ['en'])
    for group_tag, attributes in groups:
        body.append(group_tag)
        for tag, name, values in attributes:
            if tag == ipp.TAG_DATETIME:
                raw = _ipp_datetime(values[0])
                body += struct.pack('>BH', tag, len(name)) + name.encode()
                body += struct.pack('>H', len(raw)) + raw
            else:
                body += ipp._encode_attribute(tag, name, values)
    body.append(ipp.END_OF_ATTRIBUTES_TAG)
    return bytes(body)


def _ipp_http_response(content):
    response = Mock()
    response.status_code = 200
    response.ok = True
    response.content = content
    return response


class TestIppCodec:

    def test_encode_request_header_and_attributes(self):
        data = ipp.encode_request(
            ipp.GET_JOBS, 'ipp://printer.local:631/ipp/print',
            [(ipp.TAG_KEYWORD, 'which-jobs', 'completed')],
            request_id=7,
        )

        assert struct.unpack('>BBHI', data[:8]) == (1, 1, ipp.GET_JOBS, 7)
        assert data[8] == ipp.OPERATION_ATTRIBUTES_TAG
        assert b'printer-uri' in data
        assert b'which-jobs' in data
        assert data[-1] == ipp.END_OF_ATTRIBUTES_TAG

    def test_decode_multi_valued_attributes(self):
        payload = _ipp_response([(ipp.PRINTER_ATTRIBUTES_TAG, [
            (ipp.TAG_ENUM, 'printer-state', [3]),
            (ipp.TAG_KEYWORD, 'marker-names', ['Black', 'Cyan']),
        ])])

        response = ipp.decode_response(payload)

        assert response.ok
        assert response.version == (1, 1)
        assert response.printer_attributes['printer-state'] == [3]
        assert response.printer_attributes['marker-names'] == ['Black', 'Cyan']
        assert response.operation_attributes['attributes-charset'] == ['utf-8']

    def test_decode_truncated_message(self):
        payload = _ipp_response([(ipp.PRINTER_ATTRIBUTES_TAG, [
            (ipp.TAG_KEYWORD, 'marker-names', ['Black']),
        ])])

        with pytest.raises(ipp.IppCodecError):
            ipp.decode_response(payload[:-4])
        with pytest.raises(ipp.IppCodecError):
            ipp.decode_response(b'\x01\x01')

    @pytest.mark.parametrize('state,reasons,expected', [
        (3, [], DeviceState.ONLINE),
        (4, ['toner-low-warning'], DeviceState.ONLINE),
        (5, ['media-jam-error'], DeviceState.ERROR),
        (5, ['paused'], DeviceState.MAINTENANCE),
        (3, ['offline-report'], DeviceState.OFFLINE),
        (None, [], DeviceState.UNKNOWN),
    ])
    def test_printer_state_mapping(self, state, reasons, expected):
        assert ipp.printer_state_to_device_state(state, reasons) == expected


class TestIPPConnector:

    @pytest.mark.parametrize('endpoint,printer_uri,url', [
        ('ipp://printer.local/ipp/print', 'ipp://printer.local:631/ipp/print',
         'http://printer.local:631/ipp/print'),
        ('ipps://printer.local:443/ipp/print', 'ipps://printer.local:443/ipp/print',
         'https://printer.local:443/ipp/print'),
        ('printer.local', 'ipp://printer.local:631/ipp/print', 'http://printer.local:631/ipp/print'),
    ])
    def test_resolve_endpoint(self, endpoint, printer_uri, url):
        assert IPPConnector._resolve_endpoint(endpoint) == (printer_uri, url)

    def test_rejects_unknown_scheme(self):
        with pytest.raises(IntegrationValidationError):
            IPPConnector._resolve_endpoint('ftp://printer.local/queue')

    @patch.object(requests.Session, 'request')
    def test_fetch_status(self, mock_request):
        mock_request.return_value = _ipp_http_response(_ipp_response([(ipp.PRINTER_ATTRIBUTES_TAG, [
            (ipp.TAG_ENUM, 'printer-state', [5]),
            (ipp.TAG_KEYWORD, 'printer-state-reasons', ['media-jam-error']),
            (ipp.TAG_TEXT, 'printer-state-message', ['Paper jam in tray 2']),
            (ipp.TAG_NAME, 'marker-names', ['Black', 'Cyan']),
            (ipp.TAG_INTEGER, 'marker-levels', [40, -1]),
            (ipp.TAG_INTEGER, 'queued-job-count', [2]),
        ])]))
        connector = IPPConnector(_integration(ProtocolKind.IPP, 'ipp://printer.local/ipp/print'))

        sample = connector.fetch_status()

        assert sample.state == DeviceState.ERROR
        assert sample.consumables == {'Black': 40}
        assert sample.error_messages == ['media-jam-error', 'Paper jam in tray 2']
        assert sample.queue_depth == 2
        args, kwargs = mock_request.call_args
        assert args == ('POST', 'http://printer.local:631/ipp/print')
        assert kwargs['headers']['Content-Type'] == 'application/ipp'

    @patch.object(requests.Session, 'request')
    def test_fetch_job_log(self, mock_request):
        old = datetime(2024, 4, 30, 8, 0, tzinfo=timezone.utc)
        new = datetime(2024, 5, 1, 15, 30, tzinfo=timezone.utc)
        mock_request.return_value = _ipp_http_response(_ipp_response([
            (ipp.JOB_ATTRIBUTES_TAG, [
                (ipp.TAG_INTEGER, 'job-id', [101]),
                (ipp.TAG_NAME, 'job-name', ['old.pdf']),
                (ipp.TAG_DATETIME, 'date-time-at-completed', [old]),
            ]),
            (ipp.JOB_ATTRIBUTES_TAG, [
                (ipp.TAG_INTEGER, 'job-id', [102]),
                (ipp.TAG_NAME, 'job-name', ['brochure.pdf']),
                (ipp.TAG_INTEGER, 'job-impressions-completed', [6]),
                (ipp.TAG_INTEGER, 'copies', [2]),
                (ipp.TAG_KEYWORD, 'print-color-mode', ['color']),
                (ipp.TAG_KEYWORD, 'media', ['iso_a3_297x420mm']),
                (ipp.TAG_ENUM, 'print-quality', [5]),
                (ipp.TAG_DATETIME, 'date-time-at-completed', [new]),
            ]),
        ]))
        connector = IPPConnector(_integration(ProtocolKind.IPP, 'ipp://printer.local/ipp/print'))

        jobs = connector.fetch_job_log(since=datetime(2024, 5, 1, tzinfo=timezone.utc))

        assert len(jobs) == 1
        job = jobs[0]
        assert job.native_id == '102'
        assert job.file_name == 'brochure.pdf'
        assert job.pages == 3
        assert job.copies == 2
        assert job.is_color is True
        assert job.paper_size == 'A3'
        assert job.quality == 'High'
        assert job.metadata['source'] == 'ipp'

    @patch.object(requests.Session, 'request')
    def test_error_status_is_unreachable(self, mock_request):
        mock_request.return_value = _ipp_http_response(_ipp_response([], status_code=0x0403))
        connector = IPPConnector(_integration(ProtocolKind.IPP, 'ipp://printer.local/ipp/print'))

        with pytest.raises(ConnectorUnreachable) as exc_info:
            connector.fetch_status()

        assert exc_info.value.details['status_code'] == 0x0403


class TestSNMPConnector:

    def _connector(self, **kwargs):
        return SNMPConnector(_integration(ProtocolKind.SNMP, '10.0.0.5', **kwargs))

    def test_parses_endpoint(self):
        connector = SNMPConnector(_integration(ProtocolKind.SNMP, 'snmp://10.0.0.5:1161'))
        assert (connector.host, connector.port) == ('10.0.0.5', 1161)
        assert (self._connector().host, self._connector().port) == ('10.0.0.5', 161)

    def test_snmpv3_requires_username(self):
        with pytest.raises(IntegrationValidationError):
            self._connector(auth_mode=AuthMode.BASIC, credentials={'password': 'authpass1'})

    def test_rejects_api_key_auth(self):
        with pytest.raises(IntegrationValidationError):
            self._connector(auth_mode=AuthMode.API_KEY, credentials={'api_key': 'x'})

    def test_decode_error_state(self):
        # Low toner (bit 2) and Paper jam (bit 5) in the first octet, Output full (bit 12) in the second
        assert decode_error_state(bytes([0x24, 0x08])) == ['Low toner', 'Paper jam', 'Output full']
        assert decode_error_state(b'\x00') == []

    def test_fetch_status(self):
        connector = self._connector()
        results = {
            'hrDeviceStatus': 5,
            'hrPrinterStatus': 1,
            'hrPrinterDetectedErrorState': bytes([0x04]),
            'prtConsoleDisplayBufferText': 'JAM IN TRAY 2',
            'supply1_desc': 'Black Toner Cartridge',
            'supply1_max': 2000,
            'supply1_level': 500,
            'supply2_desc': 'Waste Toner',
            'supply2_max': 100,
            'supply2_level': -3,
            'tray1_name': 'Tray 1',
            'tray1_max': 250,
            'tray1_level': 125,
        }

        with patch.object(SNMPConnector, '_query', return_value=results):
            sample = connector.fetch_status()

        assert sample.state == DeviceState.ERROR
        assert sample.consumables == {'black': 25}
        assert sample.paper_levels == {'Tray 1': 50}
        assert sample.error_messages == ['Paper jam', 'JAM IN TRAY 2']

    def test_offline_bit_wins(self):
        connector = self._connector()
        with patch.object(SNMPConnector, '_query', return_value={
            'hrDeviceStatus': 2,
            'hrPrinterDetectedErrorState': bytes([0x02]),
        }):
            assert connector.fetch_status().state == DeviceState.OFFLINE

    def test_job_log_from_page_counter_deltas(self):
        connector = self._connector()
        counts = [{'prtMarkerLifeCount': 1000}, {'prtMarkerLifeCount': 1012},
                  {'prtMarkerLifeCount': 1012}, {'prtMarkerLifeCount': 1030}]

        with patch.object(SNMPConnector, '_query', side_effect=counts):
            baseline = connector.fetch_job_log()
            first = connector.fetch_job_log()
            idle = connector.fetch_job_log()
            second = connector.fetch_job_log()

        assert baseline == []
        assert idle == []
        assert first[0].native_id == 'pagecount-1000-1012'
        assert first[0].pages == 12
        assert first[0].metadata['source'] == 'snmp'
        assert second[0].native_id == 'pagecount-1012-1030'

    def test_counter_reset_rebaselines(self):
        connector = self._connector()
        counts = [{'prtMarkerLifeCount': 5000}, {'prtMarkerLifeCount': 20},
                  {'prtMarkerLifeCount': 25}]

        with patch.object(SNMPConnector, '_query', side_effect=counts):
            connector.fetch_job_log()
            reset = connector.fetch_job_log()
            after = connector.fetch_job_log()

        assert reset == []
        assert after[0].native_id == 'pagecount-20-25'
        assert after[0].pages == 5

    def test_unreachable_agent(self):
        connector = self._connector()
        with patch.object(SNMPConnector, '_query',
                          side_effect=ConnectorUnreachable('SNMP agent at 10.0.0.5:161 did not respond')):
            with pytest.raises(ConnectorUnreachable):
                connector.fetch_status()

    def test_replacement_connector_resumes_page_count(self):
        old = self._connector()
        new = self._connector()
        with patch.object(SNMPConnector, '_query', side_effect=[{'prtMarkerLifeCount': 400},
                                                                 {'prtMarkerLifeCount': 409}]):
            old.fetch_job_log()
            new.resume_from(old)
            jobs = new.fetch_job_log()

        assert [job.native_id for job in jobs] == ['pagecount-400-409']
        assert jobs[0].pages == 9

    def test_resume_ignores_another_device(self):
        old = SNMPConnector(_integration(ProtocolKind.SNMP, '10.0.0.9'))
        new = self._connector()
        with patch.object(SNMPConnector, '_query', side_effect=[{'prtMarkerLifeCount': 400},
                                                                 {'prtMarkerLifeCount': 409}]):
            old.fetch_job_log()
            new.resume_from(old)
            assert new.fetch_job_log() == []
