"""
Database models for Print Cloud

This module re-exports all models from the base models file.
"""

# Re-export everything from base models
from printcloud.models.base import (
    get_db_connection,
    init_db,
    utcnow,
    parse_timestamp,
    derive_printer_status,
    ProtocolKind,
    AuthMode,
    CaptureStatus,
    DeviceState,
    PrinterStatus,
    DeviceIntegration,
    RawJob,
    CapturedJobEvent,
    DeviceStatusSample,
    Printer,
    User,
    PrintQuota,
    PrintCost,
    PrintJob,
)


__all__ = [
    # Database utilities
    'get_db_connection',
    'init_db',
    'utcnow',
    'parse_timestamp',
    # Enumerations
    'ProtocolKind',
    'AuthMode',
    'CaptureStatus',
    'DeviceState',
    'PrinterStatus',
    'derive_printer_status',
    # Integration records
    'DeviceIntegration',
    'RawJob',
    'CapturedJobEvent',
    'DeviceStatusSample',
    # Billing records
    'Printer',
    'User',
    'PrintQuota',
    'PrintCost',
    'PrintJob',
]
