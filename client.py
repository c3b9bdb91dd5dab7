import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

import requests

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({"success", "errored"})
NOT_FOUND_STATE = "error"
SETTLED_STATES = TERMINAL_STATES | {NOT_FOUND_STATE}
DEFAULT_POLLING_INTERVAL = 1.0
DEFAULT_POLLING_TIMEOUT = 10 * 60.0


class CodemodRunClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class CodemodRunClient:
    """Thin HTTP client for the run service, with the fixed-interval polling loop."""

    def __init__(
        self,
        base_url: str,
        token: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers["Authorization"] = f"Bearer {token}"
        self.timeout = timeout
        self._sleep = sleep

    def _request(self, method: str, path: str, **kwargs) -> list:
        try:
            resp = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise CodemodRunClientError(f"Run service unreachable: {e}") from e
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code != 200 or not payload.get("success"):
            message = payload.get("errorText") or payload.get("error") or resp.text
            raise CodemodRunClientError(message, status_code=resp.status_code, payload=payload)
        return payload["data"]

    def submit(
        self,
        codemods: Sequence[Dict],
        repo_url: str,
        branch: str,
        persistent: bool = False,
    ) -> List[Dict[str, str]]:
        body = {"codemods": list(codemods), "repoUrl": repo_url, "branch": branch, "persistent": persistent}
        return self._request("POST", "/codemodRun", json=body)

    def get_status(self, job_ids: Sequence[str]) -> List[Dict]:
        return self._request("GET", f"/codemodRun/status/{','.join(job_ids)}")

    def get_output(self, job_ids: Sequence[str]) -> List[Dict]:
        return self._request("GET", f"/codemodRun/output/{','.join(job_ids)}")

    def wait_for_jobs(
        self,
        job_ids: Sequence[str],
        interval: float = DEFAULT_POLLING_INTERVAL,
        on_update: Optional[Callable[[List[Dict]], None]] = None,
        timeout: float = DEFAULT_POLLING_TIMEOUT,
    ) -> List[Dict]:
        """
        Poll status every ``interval`` seconds until every job is settled.

        A job is settled once it is terminal or reported as not found. Stops at
        the first failed status request and re-raises it, like the dashboards
        do; the statuses seen last are attached to the error. Gives up with a
        ``CodemodRunClientError`` after ``timeout`` seconds of polling.
        """
        if not job_ids:
            return []
        statuses: List[Dict] = []
        waited = 0.0
        while True:
            if waited >= timeout:
                raise CodemodRunClientError(
                    f"Jobs still running after {timeout:g}s",
                    payload={"lastStatuses": statuses},
                )
            self._sleep(interval)
            waited += interval
            try:
                statuses = self.get_status(job_ids)
            except CodemodRunClientError as e:
                logger.warning(f"Stopped polling {len(job_ids)} jobs: {e}")
                e.payload.setdefault("lastStatuses", statuses)
                raise
            if on_update:
                on_update(statuses)
            if all(entry.get("status") in SETTLED_STATES for entry in statuses):
                missing = sum(1 for entry in statuses if entry.get("status") == NOT_FOUND_STATE)
                if missing:
                    logger.warning(f"{missing} of {len(job_ids)} jobs were not found")
                return statuses
