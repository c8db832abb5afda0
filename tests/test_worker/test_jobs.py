"""
Tests for billing-day job enqueueing.
"""

from datetime import date
from types import SimpleNamespace

from rq.job import JobStatus

from eom_billing.worker import jobs


class FakeQueue:
    def __init__(self):
        self.jobs = {}
        self.enqueued = []

    def fetch_job(self, job_id):
        return self.jobs.get(job_id)

    def enqueue(self, func, *args, job_id=None, **kwargs):
        self.enqueued.append((func, args, job_id))
        job = SimpleNamespace(id=job_id, get_status=lambda: JobStatus.QUEUED)
        self.jobs[job_id] = job
        return job


class TestEnqueueBillingDay:

    def test_job_id_derived_from_business_date(self, monkeypatch):
        queue = FakeQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        job_id = jobs.enqueue_billing_day(date(2026, 1, 25))

        assert job_id == "billing-day-2026-01-25"
        [(func, args, _)] = queue.enqueued
        assert func is jobs.run_billing_day_job
        assert args == ("2026-01-25",)

    def test_in_flight_job_reused(self, monkeypatch):
        queue = FakeQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        first = jobs.enqueue_billing_day(date(2026, 1, 25))
        second = jobs.enqueue_billing_day(date(2026, 1, 25))

        assert first == second
        assert len(queue.enqueued) == 1

    def test_finished_job_can_be_requeued(self, monkeypatch):
        queue = FakeQueue()
        queue.jobs["billing-day-2026-01-25"] = SimpleNamespace(
            id="billing-day-2026-01-25", get_status=lambda: JobStatus.FINISHED
        )
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        jobs.enqueue_billing_day(date(2026, 1, 25))
        assert len(queue.enqueued) == 1
