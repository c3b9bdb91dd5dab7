import logging
import uuid
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import SessionLocal
from errors import QueueUnavailable, StoreUnavailable
from models import Job
from schemas import queued
from status_store import StatusStore

logger = logging.getLogger(__name__)

Publisher = Callable[[str], None]
BrokerCheck = Callable[[], None]


class JobQueue:
    """
    Durable hand-off of codemod jobs to workers.

    The job row is the immutable payload; the broker only carries the job id.
    ``publisher`` and ``broker_check`` are supplied by whoever owns the broker
    connection (the Celery app in production).
    """

    def __init__(
        self,
        status_store: StatusStore,
        publisher: Publisher,
        broker_check: Optional[BrokerCheck] = None,
        session_factory: sessionmaker = SessionLocal,
    ):
        self.status_store = status_store
        self.publisher = publisher
        self.broker_check = broker_check
        self.session_factory = session_factory

    def ping(self) -> None:
        if self.broker_check is None:
            return
        try:
            self.broker_check()
        except QueueUnavailable:
            raise
        except Exception as e:
            logger.error(f"Broker liveness check failed: {e}")
            raise QueueUnavailable("Queue service is not running.") from e

    def enqueue(self, job: Job) -> str:
        """Persist ``job``, mark it queued and publish it. Returns the job id."""
        job.job_id = job.job_id or str(uuid.uuid4())
        job_id = job.job_id

        db = self.session_factory()
        try:
            db.add(job)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not persist job {job_id}: {e}", exc_info=True)
            raise QueueUnavailable("Job store is not reachable") from e
        finally:
            db.close()

        try:
            self.status_store.write(job_id, queued())
        except StoreUnavailable:
            self._discard(job_id)
            raise

        try:
            self.publisher(job_id)
        except Exception as e:
            logger.error(f"Could not publish job {job_id}: {e}")
            self._discard(job_id, drop_status=True)
            if isinstance(e, QueueUnavailable):
                raise
            raise QueueUnavailable("Queue service is not running.") from e

        logger.info(f"📥 Job {job_id} enqueued")
        return job_id

    def lookup(self, job_id: str) -> Optional[Job]:
        db = self.session_factory()
        try:
            return db.get(Job, job_id)
        except SQLAlchemyError as e:
            logger.error(f"Job lookup failed for {job_id}: {e}")
            raise QueueUnavailable("Job store is not reachable") from e
        finally:
            db.close()

    def _discard(self, job_id: str, drop_status: bool = False) -> None:
        """Roll back a half-enqueued job so nothing is left waiting on it."""
        if drop_status:
            try:
                self.status_store.delete(job_id)
            except StoreUnavailable:
                logger.warning(f"Could not remove status of unpublished job {job_id}")
        db = self.session_factory()
        try:
            db.query(Job).filter(Job.job_id == job_id).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Could not remove unpublished job {job_id}: {e}")
        finally:
            db.close()
