"""
Tests for capture deduplication and quota billing.
"""
import logging
import sqlite3
import threading
from unittest.mock import patch

import pytest

from printcloud.models import CaptureStatus, RawJob
from printcloud.services import CaptureEngine, IntegrationStore
from printcloud.services.errors import (
    CaptureAlreadyProcessed,
    CaptureNotFound,
    IntegrationValidationError,
    QuotaExceeded,
    UserNotFound,
)


def _capture(engine, native_id='J-1', printer_id='P1', **kwargs):
    capture, _ = engine.capture_job(printer_id, RawJob(native_id=native_id, **kwargs))
    return capture


class TestCaptureJob:

    def test_duplicate_capture_returns_existing(self, engine, seeded_store):
        job = RawJob(native_id='J-9', pages=4)

        first, created = engine.capture_job('P1', job)
        second, created_again = engine.capture_job('P1', job)

        assert created is True
        assert created_again is False
        assert second.id == first.id
        assert seeded_store.count_captures() == 1

    @pytest.mark.parametrize('pages,copies,field', [(0, 1, 'pages'), (2, 0, 'copies')])
    def test_rejects_non_positive_counts(self, engine, seeded_store, pages, copies, field):
        with pytest.raises(IntegrationValidationError) as exc_info:
            engine.capture_job('P1', RawJob(native_id='J-bad', pages=pages, copies=copies))

        assert exc_info.value.field == field
        assert seeded_store.count_captures() == 0

    def test_concurrent_capture_of_same_job(self, engine, seeded_store):
        job = RawJob(native_id='J-race', pages=2)
        results = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            results.append(engine.capture_job('P1', job))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for _, created in results if created) == 1
        assert len({capture.id for capture, _ in results}) == 1
        assert seeded_store.count_captures() == 1

    def test_pending_captures(self, engine):
        _capture(engine, 'J-1')
        done = _capture(engine, 'J-2')
        engine.process_capture(done.id)

        assert [c.external_job_id for c in engine.pending_captures()] == ['J-1']


class TestProcessCapture:

    def test_bills_mono_job(self, engine, seeded_store):
        capture = _capture(engine, 'J-1', pages=3, copies=2)

        job = engine.process_capture(capture.id, 'u1')

        assert job.cost == pytest.approx(0.12)
        assert job.capture_id == capture.id
        assert job.pages == 3 and job.copies == 2
        assert seeded_store.get_quota('u1').current_usage == 6
        assert seeded_store.get_quota('u1').color_usage == 0

        stored = seeded_store.get_capture(capture.id)
        assert stored.status == CaptureStatus.PROCESSED
        assert stored.user_id == 'u1'
        assert stored.print_job_id == job.id

    def test_bills_color_job_at_color_rate(self, engine, seeded_store):
        capture = _capture(engine, 'J-c', pages=2, copies=1, is_color=True)

        job = engine.process_capture(capture.id, 'u1')

        assert job.cost == pytest.approx(0.20)
        assert seeded_store.get_quota('u1').color_usage == 2
        assert seeded_store.get_quota('u1').current_usage == 0

    def test_color_quota_exceeded_leaves_state_unchanged(self, engine, seeded_store):
        seeded_store.set_quota('u1', monthly_limit=100, color_limit=10, color_usage=8)
        capture = _capture(engine, 'J-c', pages=3, is_color=True)

        with pytest.raises(QuotaExceeded) as exc_info:
            engine.process_capture(capture.id, 'u1')

        assert exc_info.value.details['limit'] == 10
        assert exc_info.value.details['requested'] == 3
        assert seeded_store.get_quota('u1').color_usage == 8
        assert seeded_store.get_capture(capture.id).status == CaptureStatus.CAPTURED
        assert seeded_store.get_print_jobs(user_id='u1') == []

    def test_job_exactly_at_limit_is_billed(self, engine, seeded_store):
        seeded_store.set_quota('u1', monthly_limit=10, color_limit=0, current_usage=6)
        capture = _capture(engine, 'J-1', pages=4)

        engine.process_capture(capture.id, 'u1')

        assert seeded_store.get_quota('u1').current_usage == 10

    def test_usage_matches_billed_units(self, engine, seeded_store):
        seeded_store.set_quota('u1', monthly_limit=10, color_limit=0)
        captures = [_capture(engine, f'J-{n}', pages=4) for n in range(3)]

        engine.process_capture(captures[0].id, 'u1')
        engine.process_capture(captures[1].id, 'u1')
        with pytest.raises(QuotaExceeded):
            engine.process_capture(captures[2].id, 'u1')

        billed = sum(j.pages * j.copies for j in seeded_store.get_print_jobs(user_id='u1'))
        quota = seeded_store.get_quota('u1')
        assert billed == quota.current_usage == 8
        assert quota.current_usage <= quota.monthly_limit

    def test_rejected_capture_can_be_resubmitted_for_another_user(self, engine, seeded_store):
        seeded_store.add_user('u3', 'Second User', 'u3@example.com', 'Finance')
        seeded_store.set_quota('u3', monthly_limit=100, color_limit=100)
        seeded_store.set_quota('u1', monthly_limit=100, color_limit=0)
        capture = _capture(engine, 'J-c', is_color=True)

        with pytest.raises(QuotaExceeded):
            engine.process_capture(capture.id, 'u1')
        job = engine.process_capture(capture.id, 'u3')

        assert job.user_id == 'u3'

    def test_processing_twice_raises(self, engine, seeded_store):
        capture = _capture(engine, 'J-1')
        engine.process_capture(capture.id, 'u1')

        with pytest.raises(CaptureAlreadyProcessed):
            engine.process_capture(capture.id, 'u1')

        assert seeded_store.get_quota('u1').current_usage == 1
        assert len(seeded_store.get_print_jobs(user_id='u1')) == 1

    def test_unattributed_capture(self, engine, seeded_store):
        capture = _capture(engine, 'J-1')

        assert engine.process_capture(capture.id) is None

        stored = seeded_store.get_capture(capture.id)
        assert stored.status == CaptureStatus.PROCESSED
        assert stored.user_id is None
        assert seeded_store.get_print_jobs() == []

    def test_unknown_capture(self, engine):
        with pytest.raises(CaptureNotFound):
            engine.process_capture(4242, 'u1')

    def test_unknown_user(self, engine, seeded_store):
        capture = _capture(engine, 'J-1')

        with pytest.raises(UserNotFound):
            engine.process_capture(capture.id, 'ghost')

        assert seeded_store.get_capture(capture.id).status == CaptureStatus.CAPTURED

    def test_user_without_quota(self, engine):
        capture = _capture(engine, 'J-1')

        with pytest.raises(QuotaExceeded) as exc_info:
            engine.process_capture(capture.id, 'u2')

        assert exc_info.value.details['reason'] == 'no_quota'

    def test_default_rates_without_department_costs(self, engine, seeded_store):
        seeded_store.add_user('u4', 'Visitor', 'visitor@example.com', 'Reception')
        seeded_store.set_quota('u4', monthly_limit=100, color_limit=100)
        mono = _capture(engine, 'J-m', pages=10)
        color = _capture(engine, 'J-c', pages=10, is_color=True)

        assert engine.process_capture(mono.id, 'u4').cost == pytest.approx(0.50)
        assert engine.process_capture(color.id, 'u4').cost == pytest.approx(1.50)

    def test_failure_mid_transaction_rolls_back(self, engine, seeded_store):
        capture = _capture(engine, 'J-1', pages=5)

        with patch.object(IntegrationStore, '_insert_print_job',
                          side_effect=sqlite3.OperationalError('disk I/O error')):
            with pytest.raises(sqlite3.OperationalError):
                engine.process_capture(capture.id, 'u1')

        assert seeded_store.get_quota('u1').current_usage == 0
        assert seeded_store.get_print_jobs() == []
        stored = seeded_store.get_capture(capture.id)
        assert stored.status == CaptureStatus.CAPTURED
        assert stored.user_id is None

    def test_concurrent_processing_bills_once(self, engine, seeded_store):
        capture = _capture(engine, 'J-1', pages=2)
        outcomes = []
        barrier = threading.Barrier(4)

        def worker():
            worker_engine = CaptureEngine(seeded_store)
            barrier.wait()
            try:
                outcomes.append(worker_engine.process_capture(capture.id, 'u1'))
            except CaptureAlreadyProcessed as e:
                outcomes.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        billed = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(billed) == 1
        assert len(outcomes) == 4
        assert seeded_store.get_quota('u1').current_usage == 2
        assert len(seeded_store.get_print_jobs()) == 1

    def test_billing_writes_audit_record(self, engine, caplog):
        capture = _capture(engine, 'J-1', pages=2)

        with caplog.at_level(logging.INFO, logger='audit'):
            job = engine.process_capture(capture.id, 'u1')

        records = [r for r in caplog.records if r.name == 'audit']
        assert len(records) == 1
        assert records[0].getMessage() == 'print_job.billed'
        assert records[0].print_job_id == job.id
        assert records[0].user_id == 'u1'
        assert records[0].units == 2
