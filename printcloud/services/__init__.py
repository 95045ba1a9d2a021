"""
Services module for Print Cloud

Business logic of the printer integration layer: persistence, capture and
billing, device connectors, polling and webhook ingress.
"""

# Errors
from printcloud.services.errors import (
    IntegrationError,
    ConnectorUnreachable,
    QuotaExceeded,
    CaptureNotFound,
    CaptureAlreadyProcessed,
    UserNotFound,
    IntegrationNotFound,
    InvalidSignature,
    IntegrationValidationError,
)

# Persistence
from printcloud.services.integration_store import IntegrationStore

# Capture & quota engine
from printcloud.services.capture_engine import CaptureEngine

# Device connectors
from printcloud.services.connectors import (
    CONNECTOR_TYPES,
    DeviceConnector,
    create_connector,
)

# Polling
from printcloud.services.schedulers import PollingScheduler

# Webhooks
from printcloud.services.webhook import WebhookIngress, sign_payload, verify_signature


__all__ = [
    # Errors
    'IntegrationError',
    'ConnectorUnreachable',
    'QuotaExceeded',
    'CaptureNotFound',
    'CaptureAlreadyProcessed',
    'UserNotFound',
    'IntegrationNotFound',
    'InvalidSignature',
    'IntegrationValidationError',
    # Persistence
    'IntegrationStore',
    # Engine
    'CaptureEngine',
    # Connectors
    'CONNECTOR_TYPES',
    'DeviceConnector',
    'create_connector',
    # Polling
    'PollingScheduler',
    # Webhooks
    'WebhookIngress',
    'sign_payload',
    'verify_signature',
]
