"""
Shared fixtures: a throwaway SQLite store per test, seeded reference data,
fake device connectors and a Flask test client.
"""
import os
import tempfile
import threading

# Keep generated secrets, data and logs out of the source tree
os.environ.setdefault('PRINTCLOUD_DATA_DIR', tempfile.mkdtemp(prefix='printcloud-data-'))
os.environ.setdefault('PRINTCLOUD_LOG_DIR', tempfile.mkdtemp(prefix='printcloud-logs-'))
os.environ.setdefault('SECRET_KEY', 'printcloud-test-secret')
os.environ['POLLING_AUTO_START'] = 'false'

import pytest

from printcloud import create_app
from printcloud.models import DeviceState, DeviceStatusSample, ProtocolKind
from printcloud.services import CaptureEngine, IntegrationStore, PollingScheduler


class FakeConnector:
    """In-memory connector used in place of real devices."""

    def __init__(self, integration, state='online', jobs=None, error=None):
        self.integration = integration
        self.state = state
        self.jobs = list(jobs or [])
        self.error = error
        self.status_calls = 0
        self.job_log_calls = []
        # Set gate to block fetch_status until released
        self.gate = None
        self.entered = threading.Event()

    def fetch_status(self):
        self.status_calls += 1
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return DeviceStatusSample(
            printer_id=self.integration.printer_id,
            state=DeviceState.normalize(self.state),
            consumables={'black': 80},
        )

    def fetch_job_log(self, since=None):
        self.job_log_calls.append(since)
        return list(self.jobs)


@pytest.fixture
def fake_connector_cls():
    return FakeConnector


@pytest.fixture
def store(tmp_path):
    store = IntegrationStore(tmp_path / 'printcloud-test.db')
    store.init_schema()
    return store


@pytest.fixture
def seeded_store(store):
    """Two printers, a Finance user with a quota and a user with no quota."""
    store.set_print_cost('Finance', bw_page=0.02, color_page=0.10)
    store.add_printer('P1', 'Finance Laser', 'Floor 3', 'Finance')
    store.add_printer('P2', 'Marketing Color', 'Floor 2', 'Marketing')
    store.add_user('u1', 'Anna Costa', 'anna@example.com', 'Finance')
    store.set_quota('u1', monthly_limit=100, color_limit=10)
    store.add_user('u2', 'No Quota', 'noquota@example.com', 'Finance')
    return store


@pytest.fixture
def engine(seeded_store):
    return CaptureEngine(seeded_store)


@pytest.fixture
def make_integration(seeded_store):
    def _make(printer_id='P1', protocol=ProtocolKind.HTTP, endpoint='http://device.local/api',
              credentials=None, **kwargs):
        return seeded_store.create_integration(
            printer_id=printer_id,
            protocol=protocol,
            endpoint=endpoint,
            credentials=credentials,
            **kwargs
        )
    return _make


@pytest.fixture
def scheduler(seeded_store, engine):
    connectors = {}

    def factory(integration):
        connector = connectors.get(integration.printer_id)
        if isinstance(connector, Exception):
            raise connector
        if connector is None:
            connector = FakeConnector(integration)
            connectors[integration.printer_id] = connector
        connector.integration = integration
        return connector

    scheduler = PollingScheduler(seeded_store, engine, connector_factory=factory)
    scheduler.connectors = connectors
    yield scheduler
    scheduler.stop()


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'DATABASE_PATH': tmp_path / 'printcloud-app.db',
        'LOG_DIR': tmp_path / 'logs',
        'POLLING_AUTO_START': False,
        'RATELIMIT_ENABLED': False,
        'WEBHOOK_SECRET': '',
    })
    store = app.extensions['printcloud']['store']
    store.set_print_cost('Finance', bw_page=0.02, color_page=0.10)
    store.add_printer('P1', 'Finance Laser', 'Floor 3', 'Finance')
    store.add_user('u1', 'Anna Costa', 'anna@example.com', 'Finance')
    store.set_quota('u1', monthly_limit=100, color_limit=10)
    yield app
    app.extensions['printcloud']['scheduler'].stop()


@pytest.fixture
def client(app):
    return app.test_client()
