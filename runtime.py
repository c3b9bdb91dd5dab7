"""
Isolated codemod worker.

``CodemodWorker`` is the per-job state machine
(Uninitialized -> Initialized -> Running -> Terminated). ``main`` runs it in a
dedicated subprocess speaking the line-delimited run protocol on stdin/stdout;
``WorkerProcess`` is the supervisor's handle on such a subprocess.
"""
import logging
import os
import queue
import subprocess
import sys
import threading
from enum import Enum
from typing import Callable, Optional, TextIO

from engines import PreparedTransform, format_source, resolve_engine
from errors import CodemodRunError, EngineError, PerFileError, ProtocolError, WorkerCrashed, WorkerTimeout
from protocol import (
    CodemodResultReply,
    ExitedReply,
    ExitMessage,
    FatalErrorReply,
    FileErrorReply,
    InitializationMessage,
    InitializedReply,
    ProtocolErrorReply,
    decode_main_thread_message,
    decode_worker_reply,
    encode,
)
from utils import WORKER_FILE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    TERMINATED = "terminated"


class CodemodWorker:
    def __init__(
        self,
        resolve: Callable = resolve_engine,
        formatter: Callable[[str, str], str] = format_source,
    ):
        self.state = WorkerState.UNINITIALIZED
        self._resolve = resolve
        self._formatter = formatter
        self._transform: Optional[PreparedTransform] = None
        self._disable_prettier = False

    def handle(self, payload):
        """Process one raw message and return the reply model."""
        if self.state is WorkerState.TERMINATED:
            return ProtocolErrorReply(message="Worker has terminated")
        try:
            message = decode_main_thread_message(payload)
        except ProtocolError as e:
            return ProtocolErrorReply(message=e.message)

        if isinstance(message, ExitMessage):
            self.terminate()
            return ExitedReply()
        if isinstance(message, InitializationMessage):
            return self._initialize(message)
        return self._run(message)

    def _initialize(self, message: InitializationMessage):
        if self.state is not WorkerState.UNINITIALIZED:
            return ProtocolErrorReply(message="Worker is already initialized")
        try:
            engine = self._resolve(message.codemod_engine)
            self._transform = engine.prepare(
                message.codemod_path,
                message.codemod_source,
                message.safe_argument_record,
            )
        except EngineError as e:
            logger.error(f"Initialization failed: {e.message}")
            self.terminate()
            return FatalErrorReply(message=e.message)
        self._disable_prettier = message.disable_prettier
        self.state = WorkerState.INITIALIZED
        return InitializedReply()

    def _run(self, message):
        if self.state not in (WorkerState.INITIALIZED, WorkerState.RUNNING):
            return ProtocolErrorReply(message="runCodemod received before initialization")
        try:
            rewritten = self._transform.apply(message.path, message.data)
            if rewritten is not None and not self._disable_prettier:
                rewritten = self._formatter(message.path, rewritten)
        except PerFileError as e:
            logger.warning(f"Transform failed for {message.path}: {e.message}")
            return FileErrorReply(path=message.path, message=e.message)
        except Exception as e:
            logger.warning(f"Transform crashed for {message.path}: {e}", exc_info=True)
            return FileErrorReply(path=message.path, message=f"Unexpected error: {e}")

        self.state = WorkerState.RUNNING
        if rewritten is None:
            return CodemodResultReply(path=message.path, data=message.data, changed=False)
        return CodemodResultReply(path=message.path, data=rewritten, changed=rewritten != message.data)

    def terminate(self) -> None:
        if self._transform is not None:
            self._transform.close()
            self._transform = None
        self.state = WorkerState.TERMINATED


def serve(instream: TextIO, outstream: TextIO, worker: Optional[CodemodWorker] = None) -> CodemodWorker:
    worker = worker or CodemodWorker()
    try:
        for line in instream:
            if not line.strip():
                continue
            reply = worker.handle(line)
            outstream.write(encode(reply))
            outstream.flush()
            if worker.state is WorkerState.TERMINATED:
                break
    finally:
        worker.terminate()
    return worker


def main() -> None:
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    protocol_out = sys.stdout
    # stray prints from engine code must not corrupt the protocol stream
    sys.stdout = sys.stderr
    serve(sys.stdin, protocol_out)


class WorkerProcess:
    """Supervisor-side handle on one worker subprocess. Never reused across jobs."""

    def __init__(self, timeout: float = WORKER_FILE_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._replies: "queue.Queue[Optional[str]]" = queue.Queue()

    def __enter__(self) -> "WorkerProcess":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start(self) -> None:
        env = dict(os.environ)
        module_dir = os.path.dirname(os.path.abspath(__file__))
        env["PYTHONPATH"] = os.pathsep.join(p for p in (module_dir, env.get("PYTHONPATH")) if p)
        self._process = subprocess.Popen(
            [sys.executable, "-m", "runtime"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            text=True,
            bufsize=1,
            env=env,
        )
        self._reader = threading.Thread(target=self._read_replies, daemon=True)
        self._reader.start()
        logger.info(f"Started codemod worker pid={self._process.pid}")

    def _read_replies(self) -> None:
        try:
            for line in self._process.stdout:
                self._replies.put(line)
        except (OSError, ValueError):
            # stdout closed under us by close()
            pass
        self._replies.put(None)

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def request(self, message, timeout: Optional[float] = None):
        if not self.alive:
            raise WorkerCrashed("Worker process is not running")
        try:
            self._process.stdin.write(encode(message))
            self._process.stdin.flush()
        except OSError as e:
            raise WorkerCrashed(f"Worker process closed its input: {e}") from e

        wait = self.timeout if timeout is None else timeout
        try:
            line = self._replies.get(timeout=wait)
        except queue.Empty:
            raise WorkerTimeout(f"Worker did not answer within {wait:g}s")
        if line is None:
            raise WorkerCrashed(f"Worker process exited with code {self._process.wait()}")
        try:
            return decode_worker_reply(line)
        except ProtocolError as e:
            raise WorkerCrashed(f"Worker sent an invalid reply: {e.message}") from e

    def close(self) -> None:
        if self._process is None:
            return
        if self.alive:
            try:
                self.request(ExitMessage(), timeout=5)
            except CodemodRunError:
                logger.warning(f"Worker pid={self._process.pid} did not exit cleanly")
        try:
            self._process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()
        # stdout hits EOF once the process is gone
        if self._reader is not None:
            self._reader.join(timeout=5)
            if self._reader.is_alive():
                logger.warning(f"Reply reader of worker pid={self._process.pid} did not stop")
        for stream in (self._process.stdin, self._process.stdout):
            if stream:
                try:
                    stream.close()
                except OSError:
                    pass


if __name__ == "__main__":
    main()
