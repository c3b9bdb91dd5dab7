import logging
from typing import Optional

import requests

from errors import AuthUnavailable, Unauthorized
from utils import AUTH_SERVICE_URL, AUTH_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class AuthServiceClient:
    """Resolves a bearer token to a user id through the external auth service."""

    def __init__(
        self,
        base_url: str = AUTH_SERVICE_URL,
        timeout: float = AUTH_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def authenticate(self, token: Optional[str]) -> str:
        if not token:
            raise Unauthorized()
        try:
            resp = self.session.get(
                f"{self.base_url}/userData",
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Auth service unreachable: {e}")
            raise AuthUnavailable("Authentication service is not reachable") from e

        if resp.status_code in (401, 403):
            raise Unauthorized()
        if not resp.ok:
            logger.error(f"Auth service answered {resp.status_code}")
            raise AuthUnavailable(f"Authentication service answered {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise AuthUnavailable("Authentication service sent an invalid response") from e
        user = (payload.get("user") or payload) if isinstance(payload, dict) else {}
        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            raise Unauthorized()
        return str(user_id)
