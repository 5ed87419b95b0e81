"""
Runs the calendarsync CLI against a generated config file.

The config is written to a uniquely named file in a fresh scratch directory,
the binary is started as ``<binary> --config <path>`` and its output is
streamed to the caller's sinks while being accumulated for the run log.
The scratch directory is removed on every exit path unless the caller asks
to keep it.
"""

import asyncio
import codecs
import logging
import os
import shutil
import signal
import tempfile
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from kitchen_sync.config import config
from kitchen_sync.errors import ConfigurationError
from kitchen_sync.calendarsync.cli_config import render_cli_config

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096

OutputSink = Callable[[str], None]


@dataclass
class ExecutionResult:
    exit_code: Optional[int]
    signal: Optional[str]
    stdout: str
    stderr: str
    duration_ms: int
    config_path: str
    binary_path: str
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class CalendarSyncBinaryNotFoundError(ConfigurationError):
    code = "BINARY_NOT_FOUND"

    def __init__(self, binary_path: str):
        super().__init__(
            f"CalendarSync binary is not executable or missing at path: {binary_path}. "
            "Ensure the container image bundles the binary or pass a custom path via CALENDARSYNC_BINARY."
        )
        self.binary_path = binary_path


class CalendarSyncExecutionError(Exception):
    def __init__(self, result: ExecutionResult):
        super().__init__(
            f"CalendarSync execution failed with exit code {result.exit_code} and signal {result.signal}"
        )
        self.result = result


class CalendarSyncCancelledError(CalendarSyncExecutionError):
    def __init__(self, result: ExecutionResult):
        Exception.__init__(self, f"CalendarSync execution was cancelled (signal {result.signal})")
        self.result = result


def resolve_binary(binary_path: str) -> str:
    """Absolute path of an executable file, or CalendarSyncBinaryNotFoundError."""
    candidate = binary_path
    if os.sep not in binary_path:
        candidate = shutil.which(binary_path) or binary_path

    if not os.path.isfile(candidate) or not os.access(candidate, os.X_OK):
        raise CalendarSyncBinaryNotFoundError(binary_path)
    return candidate


async def _pump(stream: asyncio.StreamReader, chunks: List[str], sink: Optional[OutputSink]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        text = decoder.decode(data, final=not data)
        if text:
            chunks.append(text)
            if sink:
                try:
                    sink(text)
                except Exception as e:
                    logger.warning(f"Output sink raised, continuing: {e}")
        if not data:
            return


async def _terminate_on_cancel(process: asyncio.subprocess.Process, cancel_event: asyncio.Event) -> None:
    await cancel_event.wait()
    if process.returncode is None:
        logger.info(f"Cancellation requested, sending SIGTERM to calendarsync (pid {process.pid})")
        try:
            process.terminate()
        except ProcessLookupError:
            pass


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


async def run_calendar_sync(
    cli_config: Dict[str, Any],
    binary_path: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    on_stdout: Optional[OutputSink] = None,
    on_stderr: Optional[OutputSink] = None,
    cancel_event: Optional[asyncio.Event] = None,
    keep_config_file: bool = False,
    working_directory: Optional[str] = None,
) -> ExecutionResult:
    """
    Generates the YAML config and executes the CLI.

    Raises:
        CalendarSyncBinaryNotFoundError: the binary is missing or not executable.
        CalendarSyncCancelledError: cancel_event was set before the CLI finished.
        CalendarSyncExecutionError: the CLI exited non-zero or was killed.
    """
    requested_binary = binary_path or config.CALENDARSYNC_BINARY
    resolved_binary = resolve_binary(requested_binary)

    scratch_dir = tempfile.mkdtemp(prefix="calendarsync-", dir=working_directory)
    config_path = os.path.join(scratch_dir, f"{uuid.uuid4()}.yaml")
    process = None
    watcher = None

    try:
        with open(config_path, "w", encoding="utf-8") as handle:
            handle.write(render_cli_config(cli_config))

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                resolved_binary,
                "--config",
                config_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **(env or {})},
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CalendarSyncBinaryNotFoundError(requested_binary) from e

        logger.info(f"Started calendarsync (pid {process.pid}) with config {config_path}")

        if cancel_event is not None:
            watcher = asyncio.ensure_future(_terminate_on_cancel(process, cancel_event))

        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        await asyncio.gather(
            _pump(process.stdout, stdout_chunks, on_stdout),
            _pump(process.stderr, stderr_chunks, on_stderr),
        )
        returncode = await process.wait()

        result = ExecutionResult(
            exit_code=returncode if returncode >= 0 else None,
            signal=_signal_name(returncode),
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            duration_ms=int((time.monotonic() - start) * 1000),
            config_path=config_path,
            binary_path=resolved_binary,
            cancelled=cancel_event is not None and cancel_event.is_set() and returncode != 0,
        )
    finally:
        if watcher is not None:
            watcher.cancel()
        if process is not None and process.returncode is None:
            # Interrupted while the child is still alive, never leave it behind
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        if keep_config_file:
            logger.info(f"Keeping calendarsync scratch directory {scratch_dir}")
        else:
            shutil.rmtree(scratch_dir, ignore_errors=True)

    if result.cancelled:
        raise CalendarSyncCancelledError(result)
    if not result.success:
        raise CalendarSyncExecutionError(result)
    return result
