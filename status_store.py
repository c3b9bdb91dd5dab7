"""
Redis-backed status store.

One entry per job under ``job-<id>::status``. Workers write, pollers read.
``consume`` deletes only terminal entries, atomically, so a non-persistent
result is handed to at most one caller even when several pollers race for it.
"""
import json
import logging
from contextlib import contextmanager
from typing import Optional, Union

import redis
from pydantic import ValidationError as PydanticValidationError

from errors import CodemodRunError, StoreUnavailable
from schemas import (
    MessageStatus,
    RunStatus,
    STATUS_RANK,
    SuccessStatus,
    TERMINAL_STATUSES,
    status_entry_adapter,
)
from utils import REDIS_URL, STATUS_TTL_SECONDS, status_key, utcnow

logger = logging.getLogger(__name__)

Status = Union[MessageStatus, SuccessStatus]


def can_advance(current: Optional[Status], new: Status) -> bool:
    """Whether ``new`` may replace ``current`` without moving the job backwards."""
    if current is None:
        # gone means consumed or expired; never resurrect it
        return False
    current_status = RunStatus(current.status)
    if current_status in TERMINAL_STATUSES:
        return False
    return STATUS_RANK[RunStatus(new.status)] >= STATUS_RANK[current_status]


class StatusStore:
    def __init__(self, client: redis.Redis, ttl_seconds: int = STATUS_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds or None

    @classmethod
    def from_url(cls, url: str = REDIS_URL, **kwargs) -> "StatusStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=1,
            socket_timeout=5,
        )
        return cls(client, **kwargs)

    @contextmanager
    def _guard(self, action: str, job_id: Optional[str] = None):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            target = f" for job {job_id}" if job_id else ""
            logger.error(f"Status store {action} failed{target}: {e}")
            raise StoreUnavailable("Status store is not reachable") from e

    def _encode(self, status: Status) -> str:
        payload = status_entry_adapter.dump_python(status, mode="json", by_alias=True)
        payload["updatedAt"] = utcnow().isoformat()
        return json.dumps(payload)

    def _decode(self, job_id: str, raw: Optional[str]) -> Optional[Status]:
        if raw is None:
            return None
        try:
            return status_entry_adapter.validate_json(raw)
        except PydanticValidationError as e:
            logger.error(f"Corrupt status entry for job {job_id}: {e}")
            raise CodemodRunError(f"Corrupt status entry for job {job_id}") from e

    def ping(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def write(self, job_id: str, status: Status) -> None:
        with self._guard("write", job_id):
            self.client.set(status_key(job_id), self._encode(status), ex=self.ttl_seconds)

    def peek(self, job_id: str) -> Optional[Status]:
        with self._guard("peek", job_id):
            raw = self.client.get(status_key(job_id))
        return self._decode(job_id, raw)

    def consume(self, job_id: str) -> Optional[Status]:
        """
        Hand out a finished entry exactly once.

        Only a terminal entry is deleted, inside a WATCH/MULTI transaction so
        two racing readers cannot both receive it. A job that is still queued
        or running is returned as-is and left in place.
        """
        key = status_key(job_id)

        def _take(pipe) -> Optional[Status]:
            current = self._decode(job_id, pipe.get(key))
            if current is None or RunStatus(current.status) not in TERMINAL_STATUSES:
                return current
            pipe.multi()
            pipe.delete(key)
            return current

        with self._guard("consume", job_id):
            return self.client.transaction(_take, key, value_from_callable=True)

    def delete(self, job_id: str) -> None:
        with self._guard("delete", job_id):
            self.client.delete(status_key(job_id))

    def advance(self, job_id: str, status: Status) -> bool:
        """
        Write ``status`` only if it keeps the job's lifecycle monotonic.

        Runs as a WATCH/MULTI transaction so a concurrent consume or a
        supervisor marking the job errored is never overwritten.
        Returns False when the transition was refused.
        """
        key = status_key(job_id)
        encoded = self._encode(status)

        def _apply(pipe) -> bool:
            current = self._decode(job_id, pipe.get(key))
            if not can_advance(current, status):
                return False
            pipe.multi()
            pipe.set(key, encoded, ex=self.ttl_seconds)
            return True

        with self._guard("advance", job_id):
            applied = self.client.transaction(_apply, key, value_from_callable=True)
        if not applied:
            logger.info(f"Refused status transition to '{status.status}' for job {job_id}")
        return applied


class RateLimiter:
    """Fixed-window request counter shared by every API process through Redis."""

    def __init__(self, client: redis.Redis, max_requests: int, window_seconds: int):
        self.client = client
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def hit(self, identity: str) -> bool:
        bucket = int(utcnow().timestamp()) // self.window_seconds
        key = f"ratelimit::{identity}::{bucket}"
        try:
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window_seconds)
            count, _ = pipe.execute()
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            logger.error(f"Rate limiter unavailable: {e}")
            raise StoreUnavailable("Status store is not reachable") from e
        return count <= self.max_requests
