import os
from datetime import datetime, timezone
from typing import List

from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://localhost:8080")
AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "5"))
PORT = int(os.getenv("PORT", "8081"))

# 0 disables expiry of status entries
STATUS_TTL_SECONDS = int(os.getenv("STATUS_TTL_SECONDS", "0"))
ABANDONED_JOB_SECONDS = int(os.getenv("ABANDONED_JOB_SECONDS", "1800"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "300"))
# running jobs refresh their status at least this often; keep well below ABANDONED_JOB_SECONDS
HEARTBEAT_SECONDS = float(os.getenv("HEARTBEAT_SECONDS", "60"))

WORKER_FILE_TIMEOUT_SECONDS = float(os.getenv("WORKER_FILE_TIMEOUT_SECONDS", "120"))
ENGINE_TIMEOUT_SECONDS = float(os.getenv("ENGINE_TIMEOUT_SECONDS", "60"))
CLONE_TIMEOUT_SECONDS = float(os.getenv("CLONE_TIMEOUT_SECONDS", "300"))
MAX_FILES_PER_JOB = int(os.getenv("MAX_FILES_PER_JOB", "5000"))
GIT_BINARY = os.getenv("GIT_BINARY", "git")

JSCODESHIFT_COMMAND = os.getenv(
    "JSCODESHIFT_COMMAND",
    "npx --yes jscodeshift --run-in-band --silent --fail-on-error --parser=tsx -t {transform} {target}",
)
JSCODESHIFT_CHECK_COMMAND = os.getenv("JSCODESHIFT_CHECK_COMMAND", "node --check {transform}")
# ts-morph ships no CLI; a runner has to be configured per deployment
TS_MORPH_COMMAND = os.getenv("TS_MORPH_COMMAND", "")
AST_GREP_COMMAND = os.getenv("AST_GREP_COMMAND", "ast-grep scan --rule {transform} --update-all {target}")
PRETTIER_COMMAND = os.getenv("PRETTIER_COMMAND", "npx --yes prettier --stdin-filepath {target}")

RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "1000"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
CORS_ALLOWED_ORIGINS_REGEX = os.getenv(
    "CORS_ALLOWED_ORIGINS_REGEX",
    r"^https?://(.*-codemod\.vercel\.app|localhost(:\d+)?|codemod\.com|staging\.codemod\.com)$",
)


def status_key(job_id: str) -> str:
    return f"job-{job_id}::status"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_job_ids(raw: str) -> List[str]:
    """Split a comma-separated path segment into job ids, keeping order and duplicates."""
    return [part.strip() for part in raw.split(",") if part.strip()]
