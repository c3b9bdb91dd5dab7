import logging
import os
import subprocess
from pathlib import Path
from typing import Iterable, Iterator

from errors import RepositoryError
from utils import CLONE_TIMEOUT_SECONDS, GIT_BINARY, MAX_FILES_PER_JOB

logger = logging.getLogger(__name__)

SKIPPED_DIRECTORIES = frozenset({".git", "node_modules", "dist", "build", ".next", "coverage", "vendor", "__pycache__"})


def clone_repository(repo_url: str, branch: str, destination: Path, timeout: float = CLONE_TIMEOUT_SECONDS) -> Path:
    """Shallow-clone ``branch`` of ``repo_url`` into ``destination``."""
    argv = [
        GIT_BINARY, "clone",
        "--depth", "1",
        "--single-branch",
        "--branch", branch,
        "--", repo_url, str(destination),
    ]
    env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    logger.info(f"Cloning {repo_url}@{branch}")
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, timeout=timeout, env=env)
    except subprocess.TimeoutExpired as e:
        raise RepositoryError(f"Cloning {repo_url} timed out after {timeout:g}s") from e
    except OSError as e:
        raise RepositoryError(f"git is not available: {e}") from e
    if completed.returncode != 0:
        detail = (completed.stderr or "").strip().splitlines()
        raise RepositoryError(
            f"Could not clone {repo_url} at {branch}: {detail[-1] if detail else 'git exited with code ' + str(completed.returncode)}"
        )
    return destination


def iter_source_files(root: Path, extensions: Iterable[str], limit: int = MAX_FILES_PER_JOB) -> Iterator[str]:
    """Yield repository-relative POSIX paths of files the engine can handle, sorted per directory."""
    extensions = frozenset(extensions)
    count = 0
    for current, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRECTORIES)
        for filename in sorted(filenames):
            path = Path(current) / filename
            if path.suffix not in extensions or path.is_symlink():
                continue
            if count >= limit:
                logger.warning(f"File limit of {limit} reached in {root}, remaining files skipped")
                return
            count += 1
            yield path.relative_to(root).as_posix()
