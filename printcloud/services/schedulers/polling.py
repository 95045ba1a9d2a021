"""
Printer Polling Scheduler

Runs one independent APScheduler interval job per active device integration.
Each cycle reads the device status and job log through its connector and
feeds the results to the capture engine. Devices can be added, removed or
re-armed while the scheduler runs without touching the other devices' jobs.
Each device runs on its own single-worker executor, so a hung device only
delays its own ticks.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.config import MIN_POLL_INTERVAL_SECONDS, POLLING_RECONCILE_SECONDS
from printcloud.models import DeviceIntegration, DeviceStatusSample, utcnow
from printcloud.services.capture_engine import CaptureEngine
from printcloud.services.connectors import DeviceConnector, create_connector
from printcloud.services.errors import IntegrationError, IntegrationNotFound
from printcloud.services.integration_store import IntegrationStore

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = 'reconcile'

# Per-device states
STATE_SCHEDULED = 'scheduled'
STATE_POLLING = 'polling'


def job_id_for(printer_id: str) -> str:
    return f"poll:{printer_id}"


def executor_for(printer_id: str) -> str:
    return f"device:{printer_id}"


@dataclass
class DeviceSlot:
    """Runtime state of one armed device."""
    integration: DeviceIntegration
    connector: DeviceConnector
    # Single-worker pool owned by this device only
    executor: Optional[ThreadPoolExecutor] = None
    state: str = STATE_SCHEDULED
    last_sync: Optional[datetime] = None
    last_cycle: Optional[datetime] = None
    last_error: Optional[str] = None


class PollingScheduler:
    """Per-device polling on top of a BackgroundScheduler."""

    def __init__(self, store: IntegrationStore, engine: CaptureEngine,
                 connector_factory: Callable[[DeviceIntegration], DeviceConnector] = create_connector,
                 reconcile_interval: int = POLLING_RECONCILE_SECONDS):
        self.store = store
        self.engine = engine
        self.connector_factory = connector_factory
        self.reconcile_interval = reconcile_interval
        self.scheduler: Optional[BackgroundScheduler] = None
        # Guards the device map only; never held across a device call
        self._lock = threading.Lock()
        self._devices: Dict[str, DeviceSlot] = {}
        # Integrations whose connector could not be built, keyed by printer
        self._rejected: Dict[str, Tuple[str, Optional[datetime]]] = {}
        # One in-flight cycle per device; set when that cycle finishes
        self._in_flight: Dict[str, threading.Event] = {}

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, paused: bool = False):
        """Arm every active integration and start polling.

        Args:
            paused: Start the scheduler without firing jobs (jobs stay armed)
        """
        with self._lock:
            if self.scheduler is not None:
                logger.debug("Polling scheduler already running")
                return
            # A shut-down scheduler cannot be restarted, so each start gets a new one
            scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(1)},
                job_defaults={'coalesce': True, 'max_instances': 1, 'misfire_grace_time': None},
                timezone=timezone.utc,
            )
            scheduler.start(paused=paused)
            self.scheduler = scheduler
            self._rejected.clear()

        armed = 0
        for integration in self.store.get_active_integrations():
            if self._arm(integration):
                armed += 1

        scheduler.add_job(
            func=self._reconcile,
            trigger=IntervalTrigger(seconds=self.reconcile_interval, timezone=timezone.utc),
            id=RECONCILE_JOB_ID,
            name='Reconcile polling jobs',
            replace_existing=True,
        )
        logger.info(f"Polling scheduler started with {armed} device(s)")

    def stop(self):
        """Disarm every device. In-flight cycles finish, none start afterwards."""
        with self._lock:
            scheduler, self.scheduler = self.scheduler, None
            self._devices.clear()
            self._rejected.clear()

        if scheduler is None:
            return
        scheduler.remove_all_jobs()
        scheduler.shutdown(wait=False)
        logger.info("Polling scheduler stopped")

    def restart(self):
        self.stop()
        self.start()

    # -------------------------------------------------------------------------
    # Per-device control
    # -------------------------------------------------------------------------

    def add_device(self, integration_id: str) -> bool:
        """Arm (or re-arm) one device from its stored integration.

        Returns:
            True if the device is now being polled
        """
        integration = self.store.get_integration(integration_id)
        if integration is None:
            raise IntegrationNotFound(
                f"Integration {integration_id} not found",
                details={'integration_id': integration_id},
            )
        if not self.running:
            logger.info(f"Polling is not running; {integration.printer_id} will be armed on start")
            return False
        if not integration.is_active:
            self._disarm(integration.printer_id)
            return False
        return self._arm(integration)

    def remove_device(self, printer_id: str) -> bool:
        """Disarm one device. Returns False if it was not armed."""
        if not self.running:
            return False
        return self._disarm(printer_id)

    def poll_now(self, printer_id: str) -> Dict[str, Any]:
        """Run one poll cycle for a device synchronously.

        Uses the armed connector when the device is being polled, otherwise
        builds one from the printer's stored integration. Waits for a cycle
        already in flight for the same device before starting.
        """
        done = self._begin_cycle(printer_id, wait=True)
        try:
            with self._lock:
                slot = self._devices.get(printer_id)

            if slot is None:
                integration = self.store.get_integration_for_printer(printer_id)
                if integration is None:
                    raise IntegrationNotFound(
                        f"No integration configured for printer {printer_id}",
                        details={'printer_id': printer_id},
                    )
                slot = DeviceSlot(
                    integration=integration,
                    connector=self.connector_factory(integration),
                    last_sync=integration.last_sync,
                )
            return self._run_cycle(slot)
        finally:
            self._end_cycle(printer_id, done)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            slots = list(self._devices.items())
            scheduler = self.scheduler

        devices = []
        for printer_id, slot in slots:
            job = scheduler.get_job(job_id_for(printer_id)) if scheduler else None
            next_run = getattr(job, 'next_run_time', None) if job else None
            devices.append({
                'printer_id': printer_id,
                'integration_id': slot.integration.id,
                'protocol': slot.integration.protocol.value,
                'poll_interval': slot.integration.poll_interval,
                'state': slot.state,
                'next_run_time': next_run.isoformat() if next_run else None,
                'last_cycle': slot.last_cycle.isoformat() if slot.last_cycle else None,
                'last_sync': slot.last_sync.isoformat() if slot.last_sync else None,
                'last_error': slot.last_error,
            })

        return {
            'running': self.running,
            'device_count': len(devices),
            'devices': devices,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _arm(self, integration: DeviceIntegration) -> bool:
        printer_id = integration.printer_id
        try:
            connector = self.connector_factory(integration)
        except IntegrationError as e:
            logger.error(f"Cannot poll printer {printer_id}: {e.message}")
            self._disarm(printer_id)
            with self._lock:
                self._rejected[printer_id] = (integration.id, integration.updated_at)
            self.store.append_status_sample(
                DeviceStatusSample.failure(printer_id, f"Polling failed: {e.message}")
            )
            return False

        interval = max(integration.poll_interval, MIN_POLL_INTERVAL_SECONDS)
        with self._lock:
            if self.scheduler is None:
                return False
            previous = self._devices.get(printer_id)
            if previous is not None:
                executor = previous.executor
                resume = getattr(connector, 'resume_from', None)
                if resume is not None and previous.connector is not connector:
                    resume(previous.connector)
            else:
                executor = ThreadPoolExecutor(1)
                self.scheduler.add_executor(executor, alias=executor_for(printer_id))
            self._devices[printer_id] = DeviceSlot(
                integration=integration,
                connector=connector,
                executor=executor,
                last_sync=integration.last_sync or (previous.last_sync if previous else None),
            )
            self._rejected.pop(printer_id, None)
            self.scheduler.add_job(
                func=self._poll,
                trigger=IntervalTrigger(seconds=interval, timezone=timezone.utc),
                args=[printer_id],
                id=job_id_for(printer_id),
                executor=executor_for(printer_id),
                name=f"Poll printer {printer_id}",
                replace_existing=True,
                next_run_time=datetime.now(timezone.utc),
            )

        logger.info(f"Armed {integration.protocol.value} polling for printer {printer_id} every {interval}s")
        return True

    def _disarm(self, printer_id: str) -> bool:
        with self._lock:
            slot = self._devices.pop(printer_id, None)
            if self.scheduler is not None:
                if self.scheduler.get_job(job_id_for(printer_id)):
                    self.scheduler.remove_job(job_id_for(printer_id))
                if slot is not None and slot.executor is not None:
                    self.scheduler.remove_executor(executor_for(printer_id), shutdown=False)
        if slot is not None:
            if slot.executor is not None:
                # Lets an in-flight cycle finish without blocking the caller
                slot.executor.shutdown(wait=False)
            logger.info(f"Disarmed polling for printer {printer_id}")
        return slot is not None

    def _poll(self, printer_id: str):
        """Scheduled job body. Never raises into the scheduler."""
        done = self._begin_cycle(printer_id, wait=False)
        if done is None:
            logger.debug(f"Skipping tick for printer {printer_id}: a cycle is already running")
            return
        with self._lock:
            slot = self._devices.get(printer_id)
        try:
            if slot is not None:
                self._run_cycle(slot)
        except Exception as e:
            slot.last_error = str(e)
            logger.error(f"Poll cycle for printer {printer_id} crashed: {e}", exc_info=True)
        finally:
            self._end_cycle(printer_id, done)

    def _begin_cycle(self, printer_id: str, wait: bool) -> Optional[threading.Event]:
        """Mark a cycle in flight for one device.

        Returns the event to pass to _end_cycle, or None when another cycle
        for the device is running and wait is False.
        """
        while True:
            with self._lock:
                running = self._in_flight.get(printer_id)
                if running is None:
                    done = threading.Event()
                    self._in_flight[printer_id] = done
                    return done
            if not wait:
                return None
            running.wait()

    def _end_cycle(self, printer_id: str, done: threading.Event):
        with self._lock:
            if self._in_flight.get(printer_id) is done:
                del self._in_flight[printer_id]
        done.set()

    def _run_cycle(self, slot: DeviceSlot) -> Dict[str, Any]:
        """Status first, then the job log, then captures, then last_sync."""
        printer_id = slot.integration.printer_id
        started = utcnow()
        slot.state = STATE_POLLING
        try:
            try:
                sample = slot.connector.fetch_status()
                jobs = slot.connector.fetch_job_log(since=slot.last_sync)
            except Exception as e:
                reason = e.message if isinstance(e, IntegrationError) else str(e)
                message = f"Polling failed: {reason}"
                logger.warning(f"Printer {printer_id}: {message}")
                failure = self.store.append_status_sample(DeviceStatusSample.failure(printer_id, message))
                slot.last_error = message
                return {
                    'success': False,
                    'printer_id': printer_id,
                    'error': message,
                    'status': failure.to_dict(),
                    'jobs_found': 0,
                    'jobs_captured': 0,
                }

            sample.printer_id = printer_id
            self.store.append_status_sample(sample)

            captured = 0
            for raw_job in jobs:
                try:
                    _, created = self.engine.capture_job(printer_id, raw_job)
                    if created:
                        captured += 1
                except Exception as e:
                    logger.error(f"Failed to capture job {raw_job.native_id} from printer {printer_id}: {e}")

            self.store.update_last_sync(slot.integration.id, started)
            slot.last_sync = started
            slot.last_error = None
            logger.debug(f"Polled printer {printer_id}: {sample.state.value}, {captured}/{len(jobs)} new job(s)")
            return {
                'success': True,
                'printer_id': printer_id,
                'status': sample.to_dict(),
                'jobs_found': len(jobs),
                'jobs_captured': captured,
            }
        finally:
            slot.state = STATE_SCHEDULED
            slot.last_cycle = utcnow()

    def _reconcile(self):
        """Pick up activations, deactivations and configuration changes."""
        if not self.running:
            return
        active: Dict[str, DeviceIntegration] = {}
        for integration in self.store.get_active_integrations():
            active[integration.printer_id] = integration

        with self._lock:
            current = {pid: slot.integration for pid, slot in self._devices.items()}
            rejected = dict(self._rejected)

        for printer_id in set(current) - set(active):
            self._disarm(printer_id)

        for printer_id, integration in active.items():
            armed = current.get(printer_id)
            if armed is not None and armed.id == integration.id and armed.updated_at == integration.updated_at:
                continue
            if rejected.get(printer_id) == (integration.id, integration.updated_at):
                continue
            self._arm(integration)
