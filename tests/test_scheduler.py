from datetime import timedelta

from fulfillment.providers import MockSigner
from integrations.price_oracle import PriceOracle
from treasury_orchestrator.scheduler import MONITOR_JOB_ID, QUEUE_JOB_ID, build_scheduler


def test_jobs_never_overlap(session_factory):
    scheduler = build_scheduler(session_factory, signer=MockSigner(fail=False), price_oracle=PriceOracle())
    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {QUEUE_JOB_ID, MONITOR_JOB_ID}
    for job in jobs.values():
        assert job.max_instances == 1
        assert job.coalesce is True
    assert jobs[QUEUE_JOB_ID].trigger.interval == timedelta(seconds=60)
    assert jobs[MONITOR_JOB_ID].trigger.interval == timedelta(seconds=120)


def test_intervals_from_env(session_factory, monkeypatch):
    monkeypatch.setenv("QUEUE_INTERVAL_SEC", "15")
    monkeypatch.setenv("MONITOR_INTERVAL_SEC", "not-a-number")
    scheduler = build_scheduler(session_factory, signer=MockSigner(fail=False))
    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert jobs[QUEUE_JOB_ID].trigger.interval == timedelta(seconds=15)
    assert jobs[MONITOR_JOB_ID].trigger.interval == timedelta(seconds=120)
