"""
Transform engines.

The set of engines is closed (``CodemodEngine``). Each one is driven through
a configured command template with ``{transform}`` and ``{target}``
placeholders, so the engine's own runtime (node, ast-grep) stays outside the
Python process.
"""
import logging
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional

from errors import EngineError, PerFileError
from models import CodemodEngine
from utils import (
    AST_GREP_COMMAND,
    ENGINE_TIMEOUT_SECONDS,
    JSCODESHIFT_CHECK_COMMAND,
    JSCODESHIFT_COMMAND,
    PRETTIER_COMMAND,
    TS_MORPH_COMMAND,
)

logger = logging.getLogger(__name__)

JS_EXTENSIONS = frozenset({".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts"})
AST_GREP_EXTENSIONS = JS_EXTENSIONS | {
    ".py", ".rs", ".go", ".java", ".kt", ".c", ".h", ".cpp", ".hpp", ".cs",
    ".rb", ".swift", ".scala", ".lua", ".php", ".css", ".html", ".json", ".yaml", ".yml",
}
PRETTIER_EXTENSIONS = JS_EXTENSIONS | {".json", ".css", ".scss", ".less", ".html", ".vue", ".md", ".yaml", ".yml"}


def render_command(template: str, **values: str) -> List[str]:
    stripped = template.strip()
    if not stripped:
        raise EngineError("Command template is empty")
    try:
        rendered = stripped.format(**{k: shlex.quote(v) for k, v in values.items()})
    except (KeyError, IndexError) as e:
        raise EngineError(f"Unsupported command template placeholder: {e}") from e
    return shlex.split(rendered)


def _tail(text: str, limit: int = 500) -> str:
    text = (text or "").strip()
    return text[-limit:]


def _argument_flags(arguments: Mapping[str, object]) -> List[str]:
    flags = []
    for name, value in arguments.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        flags.append(f"--{name}={value}")
    return flags


class PreparedTransform:
    """A codemod written to disk once and applied file by file."""

    def __init__(self, engine: "CommandEngine", transform_path: Path, workdir: Path, arguments: Mapping[str, object]):
        self.engine = engine
        self.transform_path = transform_path
        self.workdir = workdir
        self.arguments = dict(arguments)

    def apply(self, path: str, data: str) -> Optional[str]:
        """Return the rewritten content, or None when the transform left the file alone."""
        files_dir = self.workdir / "files"
        files_dir.mkdir(exist_ok=True)
        target = files_dir / (PurePosixPath(path).name or "input")
        target.write_text(data, encoding="utf-8")

        argv = render_command(self.engine.command, transform=str(self.transform_path), target=str(target))
        if self.engine.passes_arguments:
            argv += _argument_flags(self.arguments)

        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.engine.timeout_seconds,
                cwd=self.workdir,
            )
        except subprocess.TimeoutExpired as e:
            raise PerFileError(path, f"{self.engine.name} timed out after {self.engine.timeout_seconds:g}s") from e
        except OSError as e:
            raise PerFileError(path, f"{self.engine.name} failed to start: {e}") from e

        try:
            if completed.returncode != 0:
                raise PerFileError(
                    path,
                    f"{self.engine.name} exited with code {completed.returncode}: {_tail(completed.stderr or completed.stdout)}",
                )
            rewritten = target.read_text(encoding="utf-8")
        finally:
            target.unlink(missing_ok=True)

        return None if rewritten == data else rewritten

    def close(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)


class CommandEngine:
    def __init__(
        self,
        engine: CodemodEngine,
        command: str,
        extensions: Iterable[str],
        transform_suffix: str,
        check_command: Optional[str] = None,
        passes_arguments: bool = True,
        timeout_seconds: float = ENGINE_TIMEOUT_SECONDS,
    ):
        self.engine = engine
        self.command = command
        self.extensions = frozenset(extensions)
        self.transform_suffix = transform_suffix
        self.check_command = check_command
        self.passes_arguments = passes_arguments
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self.engine.value

    def prepare(self, codemod_path: str, source: str, arguments: Mapping[str, object]) -> PreparedTransform:
        if not source.strip():
            raise EngineError("Codemod source is empty")
        if not self.command.strip():
            raise EngineError(f"Engine '{self.name}' is not configured on this worker")
        executable = shlex.split(self.command)[0]
        if shutil.which(executable) is None:
            raise EngineError(f"Engine '{self.name}' is not available: '{executable}' not found")

        workdir = Path(tempfile.mkdtemp(prefix=f"codemod-{self.name}-"))
        suffix = PurePosixPath(codemod_path).suffix or self.transform_suffix
        transform_path = workdir / f"transform{suffix}"
        transform_path.write_text(source, encoding="utf-8")
        prepared = PreparedTransform(self, transform_path, workdir, arguments)

        try:
            self._check(transform_path)
        except EngineError:
            prepared.close()
            raise
        return prepared

    def _check(self, transform_path: Path) -> None:
        if not self.check_command or transform_path.suffix not in {".js", ".mjs", ".cjs"}:
            return
        argv = render_command(self.check_command, transform=str(transform_path))
        if shutil.which(argv[0]) is None:
            logger.warning(f"Skipping source check for {self.name}: '{argv[0]}' not found")
            return
        try:
            completed = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired as e:
            raise EngineError(f"Source check for {self.name} timed out") from e
        if completed.returncode != 0:
            raise EngineError(f"Codemod source could not be parsed: {_tail(completed.stderr)}")


ENGINES: Dict[CodemodEngine, CommandEngine] = {
    CodemodEngine.JSCODESHIFT: CommandEngine(
        CodemodEngine.JSCODESHIFT, JSCODESHIFT_COMMAND, JS_EXTENSIONS, ".js",
        check_command=JSCODESHIFT_CHECK_COMMAND,
    ),
    CodemodEngine.TS_MORPH: CommandEngine(
        CodemodEngine.TS_MORPH, TS_MORPH_COMMAND, JS_EXTENSIONS, ".ts",
    ),
    CodemodEngine.AST_GREP: CommandEngine(
        CodemodEngine.AST_GREP, AST_GREP_COMMAND, AST_GREP_EXTENSIONS, ".yml",
        passes_arguments=False,
    ),
}


def resolve_engine(identifier: str) -> CommandEngine:
    try:
        engine = CodemodEngine(identifier)
    except ValueError as e:
        raise EngineError(f"Unknown codemod engine: {identifier!r}") from e
    return ENGINES[engine]


def format_source(path: str, data: str, command: str = PRETTIER_COMMAND) -> str:
    """Pretty-print ``data``; any formatter problem leaves it untouched."""
    if not command.strip() or PurePosixPath(path).suffix not in PRETTIER_EXTENSIONS:
        return data
    argv = render_command(command, target=path)
    if shutil.which(argv[0]) is None:
        return data
    try:
        completed = subprocess.run(argv, input=data, capture_output=True, text=True, timeout=ENGINE_TIMEOUT_SECONDS)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Formatter failed for {path}: {e}")
        return data
    if completed.returncode != 0:
        logger.warning(f"Formatter rejected {path}: {_tail(completed.stderr)}")
        return data
    return completed.stdout
