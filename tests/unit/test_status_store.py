import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import redis

from errors import StoreUnavailable
from schemas import RunResult, errored, in_progress, queued, succeeded
from status_store import RateLimiter, StatusStore


@pytest.mark.unit
class TestStatusStore:
    def test_key_format(self, status_store, redis_client):
        status_store.write("abc", queued())
        stored = json.loads(redis_client.get("job-abc::status"))
        assert stored["status"] == "queued"
        assert stored["message"] == "Job is queued"
        assert "updatedAt" in stored

    def test_peek_is_not_destructive(self, status_store):
        status_store.write("abc", in_progress("Processed 1/2 files"))
        first = status_store.peek("abc")
        second = status_store.peek("abc")
        assert first.status == second.status == "in_progress"
        assert first.message == "Processed 1/2 files"
        assert isinstance(first.updated_at, datetime)

    def test_peek_missing(self, status_store):
        assert status_store.peek("missing") is None

    def test_consume_hands_out_once(self, status_store):
        status_store.write("abc", succeeded(RunResult(processed_files=1, changed_files={"a.js": "bar"})))
        entry = status_store.consume("abc")
        assert entry.status == "success"
        assert entry.result.changed_files == {"a.js": "bar"}
        assert status_store.consume("abc") is None
        assert status_store.peek("abc") is None

    @pytest.mark.parametrize("status", [queued(), in_progress("Processed 25/90 files")])
    def test_consume_leaves_unfinished_entry(self, status_store, status):
        status_store.write("abc", status)
        assert status_store.consume("abc").status == status.status
        assert status_store.peek("abc").status == status.status
        assert status_store.advance("abc", succeeded(RunResult()))

    def test_consume_errored_entry(self, status_store):
        status_store.write("abc", errored("Could not clone"))
        assert status_store.consume("abc").message == "Could not clone"
        assert status_store.peek("abc") is None

    def test_write_is_last_write_wins(self, status_store):
        status_store.write("abc", errored("boom"))
        status_store.write("abc", queued())
        assert status_store.peek("abc").status == "queued"

    def test_ttl_applied(self, redis_client):
        store = StatusStore(redis_client, ttl_seconds=60)
        store.write("abc", queued())
        assert 0 < redis_client.ttl("job-abc::status") <= 60

    def test_no_ttl_by_default(self, status_store, redis_client):
        status_store.write("abc", queued())
        assert redis_client.ttl("job-abc::status") == -1

    def test_unreachable_redis(self):
        client = MagicMock()
        client.get.side_effect = redis.exceptions.ConnectionError("refused")
        client.ping.side_effect = redis.exceptions.TimeoutError("slow")
        store = StatusStore(client)
        with pytest.raises(StoreUnavailable):
            store.peek("abc")
        with pytest.raises(StoreUnavailable):
            store.ping()


@pytest.mark.unit
class TestAdvance:
    def test_forward_transitions(self, status_store):
        status_store.write("abc", queued())
        assert status_store.advance("abc", in_progress())
        assert status_store.advance("abc", in_progress("Processed 25/50 files"))
        assert status_store.advance("abc", succeeded(RunResult()))
        assert status_store.peek("abc").status == "success"

    def test_refuses_backward_move(self, status_store):
        status_store.write("abc", in_progress())
        assert not status_store.advance("abc", queued())
        assert status_store.peek("abc").status == "in_progress"

    def test_terminal_is_final(self, status_store):
        status_store.write("abc", errored("abandoned"))
        assert not status_store.advance("abc", succeeded(RunResult()))
        entry = status_store.peek("abc")
        assert entry.status == "errored"
        assert entry.message == "abandoned"

    def test_does_not_resurrect_consumed_entry(self, status_store):
        assert not status_store.advance("gone", in_progress())
        assert status_store.peek("gone") is None


@pytest.mark.unit
class TestRateLimiter:
    def test_blocks_after_max(self, redis_client):
        limiter = RateLimiter(redis_client, max_requests=2, window_seconds=60)
        assert limiter.hit("10.0.0.1")
        assert limiter.hit("10.0.0.1")
        assert not limiter.hit("10.0.0.1")
        assert limiter.hit("10.0.0.2")


def test_updated_at_is_utc(status_store, redis_client):
    status_store.write("abc", queued())
    updated_at = status_store.peek("abc").updated_at
    assert updated_at.tzinfo is not None
    assert datetime.now(timezone.utc) - updated_at < timedelta(minutes=1)
