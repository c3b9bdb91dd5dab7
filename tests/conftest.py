import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add the project root directory to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from admission import AdmissionService  # noqa: E402
from database import Base  # noqa: E402
from errors import EngineError, PerFileError, Unauthorized  # noqa: E402
from job_queue import JobQueue  # noqa: E402
from main import create_app  # noqa: E402
from runtime import CodemodWorker  # noqa: E402
from status_store import StatusStore  # noqa: E402
import models  # noqa: E402,F401

VALID_TOKEN = "valid-token"
USER_ID = "user-1"


def pytest_configure(config):
    """Add custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: API tests")


class FakeTransform:
    """Rewrites foo -> bar, leaves files without foo alone, chokes on boom."""

    def __init__(self):
        self.closed = False
        self.applied = []

    def apply(self, path, data):
        self.applied.append(path)
        if "boom" in data:
            raise PerFileError(path, "boom")
        if "foo" not in data:
            return None
        return data.replace("foo", "bar")

    def close(self):
        self.closed = True


class FakeEngine:
    def __init__(self):
        self.transforms = []

    def prepare(self, codemod_path, source, arguments):
        if "syntax error" in source:
            raise EngineError("Codemod source could not be parsed")
        transform = FakeTransform()
        self.transforms.append(transform)
        return transform


def fake_resolve(identifier):
    if identifier not in {"jscodeshift", "ts-morph", "ast-grep"}:
        raise EngineError(f"Unknown codemod engine: {identifier!r}")
    return FakeEngine()


class LocalWorker:
    """Drives a CodemodWorker in-process through the same request/reply surface as WorkerProcess."""

    def __init__(self, resolve=fake_resolve):
        self.worker = CodemodWorker(resolve=resolve, formatter=lambda path, data: data)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.worker.terminate()

    def request(self, message, timeout=None):
        return self.worker.handle(message.model_dump(by_alias=True))


class FakeAuthenticator:
    def authenticate(self, token):
        if token != VALID_TOKEN:
            raise Unauthorized()
        return USER_ID


def write_fake_repo(repo_url, branch, destination: Path) -> Path:
    files = {
        "src/a.js": "foo();\n",
        "src/b.ts": "const x = 1;\n",
        "src/c.js": "boom();\n",
        "node_modules/dep/index.js": "foo();\n",
        "README.md": "foo\n",
    }
    for relative, content in files.items():
        path = destination / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return destination


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def status_store(redis_client):
    return StatusStore(redis_client)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def job_queue(status_store, publisher, session_factory):
    return JobQueue(status_store, publisher=publisher, session_factory=session_factory)


@pytest.fixture
def admission(job_queue, status_store):
    return AdmissionService(job_queue, status_store)


@pytest.fixture
def client(admission):
    return TestClient(create_app(admission=admission, authenticator=FakeAuthenticator()))


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {VALID_TOKEN}"}


@pytest.fixture
def run_job(status_store, session_factory):
    """Process a queued job in-process against the fake repository."""
    from worker import process_codemod_logic

    def _run(job_id, worker_factory=LocalWorker, clone=write_fake_repo):
        return process_codemod_logic(
            job_id,
            store=status_store,
            session_factory=session_factory,
            worker_factory=worker_factory,
            clone=clone,
        )

    return _run


def codemod(engine="jscodeshift", name="rename-foo", source="export default function transform() {}"):
    return {"engine": engine, "name": name, "source": source}


def run_request(*codemods_, persistent=False, repo_url="https://github.com/acme/app.git", branch="main"):
    return {
        "codemods": list(codemods_) or [codemod()],
        "repoUrl": repo_url,
        "branch": branch,
        "persistent": persistent,
    }
