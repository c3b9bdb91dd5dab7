import tempfile
import time
import logging
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, Optional

from celery import Celery
from kombu.exceptions import OperationalError

# Local imports
from database import SessionLocal
from engines import resolve_engine
from errors import (
    CodemodRunError,
    EngineError,
    QueueUnavailable,
    RepositoryError,
    StoreUnavailable,
    WorkerCrashed,
)
from models import Job
from protocol import (
    CodemodResultReply,
    FatalErrorReply,
    FileErrorReply,
    InitializationMessage,
    InitializedReply,
    RunCodemodMessage,
)
from repository import clone_repository, iter_source_files
from runtime import WorkerProcess
from schemas import RunResult, RunStatus, TERMINAL_STATUSES, errored, in_progress, succeeded
from status_store import StatusStore
from utils import (
    ABANDONED_JOB_SECONDS,
    CELERY_BROKER_URL,
    HEARTBEAT_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    utcnow,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

PROGRESS_EVERY = 25
# jobs older than this are no longer considered by the abandoned-job sweep
SWEEP_LOOKBACK = timedelta(days=1)

# Initialize Celery
celery_app = Celery(
    "codemod_worker",
    broker=CELERY_BROKER_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=True,
    # at-least-once: a job is only acked once its terminal status is written
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    broker_connection_timeout=2,
    beat_schedule={
        "sweep-abandoned-jobs": {
            "task": "sweep_abandoned_jobs",
            "schedule": SWEEP_INTERVAL_SECONDS,
        },
    },
)

status_store = StatusStore.from_url()


@celery_app.task(name="run_codemod_job")
def celery_task(job_id: str):
    return process_codemod_logic(job_id)


@celery_app.task(name="sweep_abandoned_jobs")
def sweep_task():
    return sweep_abandoned_jobs()


def dispatch_job(job_id: str) -> None:
    """Publish a persisted job to the broker, failing fast if it is down."""
    try:
        celery_task.apply_async(args=[job_id], task_id=job_id, retry=False)
    except (OperationalError, OSError) as e:
        raise QueueUnavailable("Queue service is not running.") from e
    logger.info(f"🚀 Job {job_id} sent to Celery")


def check_broker() -> None:
    try:
        with celery_app.connection_for_write() as conn:
            conn.ensure_connection(max_retries=1, timeout=2)
    except (OperationalError, OSError) as e:
        raise QueueUnavailable("Queue service is not running.") from e


def load_job(job_id: str, session_factory=SessionLocal) -> Optional[Job]:
    db = session_factory()
    try:
        return db.get(Job, job_id)
    finally:
        db.close()


def execute_job(
    job: Job,
    store: StatusStore,
    worker_factory: Callable[[], WorkerProcess] = WorkerProcess,
    clone: Callable = clone_repository,
    clock: Callable[[], float] = time.monotonic,
) -> RunResult:
    """Clone the target repository and drive one isolated worker over its files."""
    engine = resolve_engine(job.codemod_engine.value)
    result = RunResult()

    with tempfile.TemporaryDirectory(prefix="codemod-run-") as tmp:
        repo_dir = clone(job.repo_url, job.branch, Path(tmp) / "repo")
        files = list(iter_source_files(repo_dir, engine.extensions))
        logger.info(f"Job {job.job_id}: {len(files)} candidate files")

        with worker_factory() as worker:
            reply = worker.request(InitializationMessage(
                codemod_path=f"{job.codemod_name}{engine.transform_suffix}",
                codemod_source=job.codemod_source,
                codemod_engine=job.codemod_engine.value,
                disable_prettier=job.disable_prettier,
                safe_argument_record=job.codemod_arguments or {},
            ))
            if isinstance(reply, FatalErrorReply):
                raise EngineError(reply.message)
            if not isinstance(reply, InitializedReply):
                raise WorkerCrashed(f"Unexpected reply to initialization: {reply.kind}")

            last_beat = clock()
            for index, relative_path in enumerate(files, start=1):
                try:
                    data = (repo_dir / relative_path).read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as e:
                    result.failed_files[relative_path] = f"Could not read file: {e}"
                else:
                    reply = worker.request(RunCodemodMessage(path=relative_path, data=data))
                    if isinstance(reply, CodemodResultReply):
                        if reply.changed:
                            result.changed_files[relative_path] = reply.data
                    elif isinstance(reply, FileErrorReply):
                        result.failed_files[relative_path] = reply.message
                    else:
                        raise WorkerCrashed(f"Unexpected reply to runCodemod: {reply.kind}")
                result.processed_files += 1

                if index == len(files):
                    break
                if index % PROGRESS_EVERY == 0 or clock() - last_beat >= HEARTBEAT_SECONDS:
                    last_beat = clock()
                    if not store.advance(job.job_id, in_progress(f"Processed {index}/{len(files)} files")):
                        logger.warning(f"Job {job.job_id} is no longer active, stopping early")
                        break

    return result


def process_codemod_logic(
    job_id: str,
    store: Optional[StatusStore] = None,
    session_factory=SessionLocal,
    worker_factory: Callable[[], WorkerProcess] = WorkerProcess,
    clone: Callable = clone_repository,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[str]:
    """
    Run one job end to end and leave a terminal status behind.

    Returns the terminal status written, or None when the job was skipped.
    """
    store = store or status_store
    job = load_job(job_id, session_factory)
    if not job:
        logger.error(f"Job {job_id} not found in database.")
        return None

    current = store.peek(job_id)
    if current is None or RunStatus(current.status) in TERMINAL_STATUSES:
        # redelivery of a finished (or already consumed) job
        logger.info(f"Skipping job {job_id}: status is {current.status if current else 'gone'}")
        return None

    if not store.advance(job_id, in_progress("Cloning repository")):
        return None
    logger.info(f"Processing job {job_id} ({job.codemod_engine.value}: {job.codemod_name})...")

    try:
        result = execute_job(job, store, worker_factory=worker_factory, clone=clone, clock=clock)
    except StoreUnavailable:
        # nothing can be recorded; the sweep marks the job once the store is back
        logger.error(f"Status store lost while processing job {job_id}", exc_info=True)
        raise
    except (RepositoryError, EngineError, WorkerCrashed) as e:
        logger.error(f"Job {job_id} failed: {e.message}")
        store.advance(job_id, errored(e.message))
        return RunStatus.ERRORED.value
    except Exception as e:
        logger.error(f"Error processing job {job_id}: {str(e)}", exc_info=True)
        message = e.message if isinstance(e, CodemodRunError) else f"Unexpected worker failure: {e}"
        store.advance(job_id, errored(message))
        return RunStatus.ERRORED.value

    store.advance(job_id, succeeded(result))
    logger.info(
        f"Job {job_id} completed successfully: {len(result.changed_files)} changed, "
        f"{len(result.failed_files)} failed of {result.processed_files} files."
    )
    return RunStatus.SUCCESS.value


def sweep_abandoned_jobs(
    store: Optional[StatusStore] = None,
    session_factory=SessionLocal,
    max_age_seconds: int = ABANDONED_JOB_SECONDS,
    now=None,
) -> List[str]:
    """
    Mark running jobs whose status has not moved for ``max_age_seconds`` as errored.

    Queued jobs are left alone: their message stays with the broker, which
    redelivers it until a worker acknowledges it.
    """
    store = store or status_store
    now = now or utcnow()
    cutoff = now - timedelta(seconds=max_age_seconds)

    db = session_factory()
    try:
        job_ids = [
            row.job_id
            for row in db.query(Job.job_id).filter(Job.created_at >= now - SWEEP_LOOKBACK).all()
        ]
    finally:
        db.close()

    swept = []
    for job_id in job_ids:
        current = store.peek(job_id)
        if current is None or RunStatus(current.status) is not RunStatus.IN_PROGRESS:
            continue
        if current.updated_at is None or current.updated_at >= cutoff:
            continue
        if store.advance(job_id, errored("Job was abandoned by its worker")):
            logger.warning(f"🧹 Job {job_id} marked errored after {max_age_seconds}s without progress")
            swept.append(job_id)
    return swept


def run_worker():
    """Fallback for manual running"""
    logger.info("Starting worker as Celery node...")
    celery_app.start(argv=["worker", "--loglevel=info", "--beat"])


if __name__ == "__main__":
    run_worker()
