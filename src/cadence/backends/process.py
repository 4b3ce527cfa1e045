"""One agent CLI invocation: spawn, stream stdout, classify the exit.

The backend tag selects a :class:`WireProtocol`; nothing else in this
module knows which CLI it is driving.

Exit classification:
  - accumulator saw a terminal error → error RunResult carrying that text
  - nonzero exit and no text at all  → BackendProcessError
  - otherwise                       → directives extracted, RunResult
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import os
import tempfile
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from cadence.backends.claude import CLAUDE
from cadence.backends.codex import CODEX
from cadence.backends.directives import extract_directives
from cadence.backends.types import (
    BackendOptions,
    StreamAccumulator,
    WireProtocol,
    is_image_file,
)
from cadence.errors import BackendProcessError
from cadence.logger import logger
from cadence.types import Backend, RunResult
from cadence.utils import truncate_args

PROTOCOLS: dict[Backend, WireProtocol] = {"claude": CLAUDE, "codex": CODEX}

TextListener = Callable[[str], None]

_READ_CHUNK = 8192
_MAX_STDERR = 64 * 1024


def decode_line(line: str, backend: Backend) -> dict[str, Any] | None:
    """Decode one JSON line. Blank or malformed lines return None."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        logger.warning("Failed to parse stream line", backend=backend, line=stripped[:100])
        return None
    if not isinstance(event, dict):
        logger.warning("Ignoring non-object stream line", backend=backend, line=stripped[:100])
        return None
    return event


class BackendProcess:
    """Runs a single agent turn. Construct a fresh instance per run."""

    def __init__(self, backend: Backend, options: BackendOptions) -> None:
        self.backend = backend
        self.options = options
        self._protocol = PROTOCOLS[backend]
        self._accumulator: StreamAccumulator = self._protocol.new_accumulator()
        self._listeners: list[TextListener] = []
        self._proc: asyncio.subprocess.Process | None = None
        self._instructions_file: Path | None = None
        self._killed = False

    # --- Public capability set ---

    def on_text(self, listener: TextListener) -> None:
        """Register a callback invoked with the full running text on every update."""
        self._listeners.append(listener)

    @property
    def current_text(self) -> str:
        return self._accumulator.text

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    def kill(self) -> None:
        """SIGTERM the subprocess (if started) and drop the instructions file."""
        self._killed = True
        if self._proc is not None and self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
            logger.info("Sent SIGTERM to agent process", backend=self.backend, pid=self._proc.pid)
        self._cleanup()

    async def run(self) -> RunResult:
        start = time.monotonic()
        try:
            if self._protocol.instructions_via_file and self.options.append_system_prompt:
                self._instructions_file = await asyncio.to_thread(
                    _write_instructions_file, self.options.append_system_prompt
                )
            args = self._protocol.build_args(self.options, self._instructions_file)
            proc = await self._spawn(args)
            if proc.stdout is None:
                self.kill()
                raise BackendProcessError(f"{self.backend} CLI started without a stdout pipe")
            stderr_task = asyncio.ensure_future(_read_stderr(proc.stderr, self.backend))
            await self._read_stdout(proc.stdout)
            exit_code = await proc.wait()
            stderr = await stderr_task
        finally:
            self._cleanup()

        duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Agent CLI exited",
            backend=self.backend,
            exit_code=exit_code,
            text_length=len(self._accumulator.text),
            killed=self._killed,
        )
        return self._classify_exit(exit_code, stderr, duration_ms)

    # --- Internals ---

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        executable = self._protocol.executable()
        logger.debug(
            "Spawning agent CLI",
            backend=self.backend,
            args=truncate_args(args),
            cwd=str(self.options.working_directory),
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *args,
                cwd=str(self.options.working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            # OSError covers FileNotFoundError (CLI missing) and permission errors
            logger.error("Failed to spawn agent CLI", backend=self.backend, err=str(exc))
            raise BackendProcessError(f"Failed to start {executable}: {exc}") from exc

        self._proc = proc
        logger.info("Agent CLI spawned", backend=self.backend, pid=proc.pid)
        if self._killed:
            # kill() arrived while we were still writing the instructions file
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
        return proc

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        """Split stdout into whole lines, holding back a partial trailing line."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while chunk := await stream.read(_READ_CHUNK):
            buffer += decoder.decode(chunk)
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._feed(line)
        buffer += decoder.decode(b"", final=True)
        if buffer:
            self._feed(buffer)

    def _feed(self, line: str) -> None:
        event = decode_line(line, self.backend)
        if event is None:
            return
        logger.debug("Parsed event", backend=self.backend, type=event.get("type"))
        if self._accumulator.process_event(event):
            text = self._accumulator.text
            for listener in self._listeners:
                try:
                    listener(text)
                except Exception:
                    logger.exception("Text listener failed", backend=self.backend)

    def _classify_exit(self, exit_code: int, stderr: str, measured_ms: float) -> RunResult:
        acc = self._accumulator
        created = tuple(acc.created_files)
        images = tuple(f for f in created if is_image_file(f))
        session_id = acc.session_id or self.options.session_id
        duration_ms = acc.duration_ms if acc.duration_ms is not None else measured_ms

        if acc.error:
            logger.error("Agent CLI returned error", backend=self.backend, error=acc.error)
            return RunResult(
                text=acc.error,
                duration_ms=duration_ms,
                cost_usd=acc.cost_usd,
                is_error=True,
                session_id=session_id,
                created_files=created,
                image_files=images,
                input_tokens=acc.input_tokens,
                output_tokens=acc.output_tokens,
            )

        if exit_code != 0 and not acc.text:
            raise BackendProcessError(
                f"{self.backend} CLI exited with code {exit_code}",
                exit_code=exit_code,
                stderr=stderr[-500:],
            )

        directives = extract_directives(acc.text)
        return RunResult(
            text=directives.clean_text,
            duration_ms=duration_ms,
            cost_usd=acc.cost_usd,
            is_error=False,
            session_id=session_id,
            created_files=created,
            image_files=images,
            upload_files=tuple(directives.upload_files),
            callbacks=tuple(directives.callbacks),
            input_tokens=acc.input_tokens,
            output_tokens=acc.output_tokens,
        )

    def _cleanup(self) -> None:
        if self._instructions_file is None:
            return
        with contextlib.suppress(FileNotFoundError):
            self._instructions_file.unlink()
        logger.debug("Removed instructions file", path=str(self._instructions_file))
        self._instructions_file = None


def _write_instructions_file(text: str) -> Path:
    """Write system instructions to a private temp file and return its path."""
    fd, name = tempfile.mkstemp(prefix=f"cadence-codex-{uuid.uuid4().hex[:8]}-", suffix=".md")
    with os.fdopen(fd, "w") as f:
        f.write(text)
    return Path(name)


async def _read_stderr(stream: asyncio.StreamReader | None, backend: Backend) -> str:
    """Log stderr lines as they arrive and keep a truncated copy for errors."""
    if stream is None:
        return ""
    buf = ""
    while chunk := await stream.read(_READ_CHUNK):
        text = chunk.decode(errors="replace")
        for line in text.strip().splitlines():
            if line:
                logger.warning("Agent CLI stderr", backend=backend, line=line)
        if len(buf) < _MAX_STDERR:
            buf += text[: _MAX_STDERR - len(buf)]
    return buf
