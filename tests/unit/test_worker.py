import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from kombu.exceptions import OperationalError

import status_store as status_store_module
import worker
from conftest import LocalWorker, codemod, run_request, write_fake_repo
from errors import EngineError, QueueUnavailable, RepositoryError, WorkerCrashed, WorkerTimeout
from protocol import RunCodemodMessage
from schemas import errored, in_progress, succeeded, RunResult


@pytest.fixture
def job_id(admission):
    [entry] = admission.submit_run(run_request(codemod()), "user-1")
    return entry.job_id


class CrashingWorker(LocalWorker):
    def request(self, message, timeout=None):
        if isinstance(message, RunCodemodMessage):
            raise WorkerTimeout("Worker did not answer within 120s")
        return super().request(message, timeout)


@pytest.mark.unit
class TestProcessCodemodJob:
    def test_success_aggregates_files(self, run_job, job_id, status_store):
        assert run_job(job_id) == "success"

        entry = status_store.peek(job_id)
        assert entry.status == "success"
        assert entry.result.processed_files == 3
        assert entry.result.changed_files == {"src/a.js": "bar();\n"}
        assert entry.result.failed_files == {"src/c.js": "boom"}

    def test_repository_failure_is_errored(self, run_job, job_id, status_store):
        def unreachable(repo_url, branch, destination):
            raise RepositoryError("Could not clone https://github.com/acme/app.git at main: repository not found")

        assert run_job(job_id, clone=unreachable) == "errored"
        entry = status_store.peek(job_id)
        assert entry.status == "errored"
        assert "repository not found" in entry.message

    def test_engine_failure_is_errored(self, run_job, job_id, status_store):
        def no_engine(identifier):
            raise EngineError("Engine 'jscodeshift' is not available: 'npx' not found")

        assert run_job(job_id, worker_factory=lambda: LocalWorker(resolve=no_engine)) == "errored"
        assert status_store.peek(job_id).message == "Engine 'jscodeshift' is not available: 'npx' not found"

    def test_stuck_worker_is_errored(self, run_job, job_id, status_store):
        assert run_job(job_id, worker_factory=CrashingWorker) == "errored"
        assert "did not answer" in status_store.peek(job_id).message

    def test_unexpected_error_is_errored(self, run_job, job_id, status_store):
        def explode(repo_url, branch, destination):
            raise KeyError("surprise")

        assert run_job(job_id, clone=explode) == "errored"
        assert status_store.peek(job_id).message.startswith("Unexpected worker failure")

    def test_redelivered_finished_job_is_skipped(self, run_job, job_id, status_store):
        status_store.advance(job_id, succeeded(RunResult(processed_files=7)))
        assert run_job(job_id) is None
        assert status_store.peek(job_id).result.processed_files == 7

    def test_expired_job_is_not_resurrected(self, run_job, job_id, status_store):
        status_store.delete(job_id)
        assert run_job(job_id) is None
        assert status_store.peek(job_id) is None

    def test_unknown_job(self, run_job):
        assert run_job("does-not-exist") is None

    def test_progress_stops_when_job_was_swept(self, run_job, job_id, status_store, monkeypatch):
        monkeypatch.setattr(worker, "PROGRESS_EVERY", 1)

        def clone_then_sweep(repo_url, branch, destination):
            path = write_fake_repo(repo_url, branch, destination)
            status_store.advance(job_id, errored("Job was abandoned by its worker"))
            return path

        run_job(job_id, clone=clone_then_sweep)
        entry = status_store.peek(job_id)
        assert entry.status == "errored"
        assert entry.message == "Job was abandoned by its worker"


@pytest.mark.unit
class TestSweep:
    def _write_stale(self, redis_client, job_id, status, minutes_ago):
        updated = datetime.now(timezone.utc) - timedelta(minutes=minutes_ago)
        redis_client.set(
            f"job-{job_id}::status",
            json.dumps({"status": status, "message": "working", "updatedAt": updated.isoformat()}),
        )

    def test_marks_stale_jobs_errored(self, admission, status_store, session_factory, redis_client):
        stale, fresh, done = [
            e.job_id for e in admission.submit_run(
                run_request(codemod(name="a"), codemod(name="b"), codemod(name="c")), "user-1"
            )
        ]
        self._write_stale(redis_client, stale, "in_progress", minutes_ago=90)
        status_store.advance(fresh, in_progress())
        status_store.advance(done, succeeded(RunResult()))

        swept = worker.sweep_abandoned_jobs(status_store, session_factory, max_age_seconds=1800)

        assert swept == [stale]
        assert status_store.peek(stale).status == "errored"
        assert status_store.peek(fresh).status == "in_progress"
        assert status_store.peek(done).status == "success"

    def test_queued_job_waiting_in_backlog_is_left_alone(self, job_id, status_store, session_factory, redis_client):
        self._write_stale(redis_client, job_id, "queued", minutes_ago=60)
        assert worker.sweep_abandoned_jobs(status_store, session_factory, max_age_seconds=600) == []
        assert status_store.peek(job_id).status == "queued"

    def test_slow_running_job_survives_sweep(self, job_id, status_store, session_factory, monkeypatch):
        elapsed = [0.0]
        start = datetime.now(timezone.utc)
        monkeypatch.setattr(status_store_module, "utcnow", lambda: start + timedelta(seconds=elapsed[0]))
        swept = []

        class SlowWorker(LocalWorker):
            def request(self, message, timeout=None):
                if isinstance(message, RunCodemodMessage):
                    # 700s per file, 2100s for the whole repo
                    elapsed[0] += 700
                    swept.extend(worker.sweep_abandoned_jobs(
                        status_store, session_factory, max_age_seconds=1800,
                        now=start + timedelta(seconds=elapsed[0]),
                    ))
                return super().request(message, timeout)

        outcome = worker.process_codemod_logic(
            job_id,
            store=status_store,
            session_factory=session_factory,
            worker_factory=SlowWorker,
            clone=write_fake_repo,
            clock=lambda: elapsed[0],
        )

        assert swept == []
        assert outcome == "success"
        assert status_store.peek(job_id).status == "success"


@pytest.mark.unit
class TestBroker:
    def test_dispatch_fails_fast(self):
        with patch.object(worker.celery_task, "apply_async", side_effect=OperationalError("refused")):
            with pytest.raises(QueueUnavailable):
                worker.dispatch_job("abc")

    def test_dispatch_uses_job_id_as_task_id(self):
        with patch.object(worker.celery_task, "apply_async") as apply_async:
            worker.dispatch_job("abc")
        apply_async.assert_called_once_with(args=["abc"], task_id="abc", retry=False)


@pytest.mark.unit
def test_worker_crash_is_a_worker_error():
    assert issubclass(WorkerTimeout, WorkerCrashed)
