"""
Device connectors, one per wire protocol.

Connectors are looked up by protocol kind; adding a protocol means adding a
class here, not touching the scheduler or the engine.
"""
from typing import Dict

from printcloud.models import DeviceIntegration, ProtocolKind
from printcloud.services.connectors.base import DeviceConnector, build_http_session, send_request
from printcloud.services.connectors.http import HTTPConnector
from printcloud.services.connectors.ipp import IPPConnector
from printcloud.services.connectors.snmp import SNMPConnector
from printcloud.services.errors import IntegrationValidationError


CONNECTOR_TYPES: Dict[ProtocolKind, type] = {
    ProtocolKind.SNMP: SNMPConnector,
    ProtocolKind.IPP: IPPConnector,
    ProtocolKind.HTTP: HTTPConnector,
}


def create_connector(integration: DeviceIntegration) -> DeviceConnector:
    """Build the connector for an integration.

    Raises:
        IntegrationValidationError: For an unsupported protocol or bad auth config
    """
    try:
        connector_cls = CONNECTOR_TYPES[ProtocolKind(integration.protocol)]
    except (KeyError, ValueError):
        raise IntegrationValidationError(
            f"Unsupported integration type: {integration.protocol}",
            field='protocol',
        )
    return connector_cls(integration)


__all__ = [
    'CONNECTOR_TYPES',
    'DeviceConnector',
    'HTTPConnector',
    'IPPConnector',
    'SNMPConnector',
    'build_http_session',
    'create_connector',
    'send_request',
]
