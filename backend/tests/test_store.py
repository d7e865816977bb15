from datetime import datetime, timezone

import pytest

from depwatch.errors import JobNotFound
from depwatch.models import Dependency, ScanError, ScanResult
from depwatch.store import JobStore, ResultStore


def _result(status="completed", errors=None):
    return ScanResult(
        service_name="web",
        ecosystem="nodejs",
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        dependencies=[Dependency("a", "1.0.0")] if status != "failed" else [],
        errors=errors or [],
        status=status,
    )


def test_job_lifecycle():
    store = JobStore()
    job = store.create("web", trigger="manual")
    assert job.status == "queued"

    store.transition(job.id, "running")
    done = store.transition(job.id, "completed")
    assert done.status == "completed"
    assert done.ended_at is not None

    # Terminal states are final
    assert store.transition(job.id, "failed").status == "completed"
    assert store.get(job.id).to_dict()["service"] == "web"
    store.close()


def test_unknown_job():
    store = JobStore()
    with pytest.raises(JobNotFound):
        store.get("missing")
    with pytest.raises(JobNotFound):
        store.transition("missing", "running")


def test_list_filters_by_service():
    store = JobStore()
    store.create("web")
    store.create("api")
    store.create("web")

    assert len(store.list()) == 3
    assert {j.service_name for j in store.list(service_name="web")} == {"web"}
    assert len(store.list(limit=1)) == 1


def test_interrupted_jobs_are_recovered(tmp_path):
    uri = f"sqlite:///{tmp_path / 'jobs.db'}"
    store = JobStore(uri)
    queued = store.create("web")
    running = store.create("api")
    store.transition(running.id, "running")
    finished = store.create("go")
    store.transition(finished.id, "running")
    store.transition(finished.id, "completed")
    store.close()

    restarted = JobStore(uri)
    assert restarted.recover_interrupted() == 2
    assert restarted.get(queued.id).status == "cancelled"
    assert restarted.get(running.id).error == "interrupted by restart"
    assert restarted.get(finished.id).status == "completed"
    restarted.close()


def test_result_store_stale_fallback():
    store = ResultStore()
    good = store.publish("web", _result())
    assert store.latest("web") is good

    served = store.publish("web", _result("failed", [ScanError("ProcessTimeout", "slow", True)]))

    assert served.stale is True
    assert served.last_error == "ProcessTimeout: slow"
    assert served.sequence > good.sequence
    assert store.last_good("web") is good
    assert good.stale is False


def test_result_store_forget():
    store = ResultStore()
    store.publish("web", _result())
    store.forget("web")
    assert store.latest("web") is None
    assert store.all() == {}
