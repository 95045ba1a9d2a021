"""
Background schedulers for Print Cloud

The polling scheduler runs one interval job per monitored printer.
"""

from printcloud.services.schedulers.polling import (
    DeviceSlot,
    PollingScheduler,
    job_id_for,
)


__all__ = [
    'DeviceSlot',
    'PollingScheduler',
    'job_id_for',
]
