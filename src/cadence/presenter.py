"""Where finished runs go.

Schedulers only talk to a :class:`Presenter`; a chat integration implements
it to post messages, the CLI uses :class:`ConsolePresenter`.
"""

from __future__ import annotations

import sys
from typing import Literal, Protocol, TextIO, TypeAlias

from cadence.logger import logger
from cadence.types import ContextKey, RunResult

RunSource: TypeAlias = Literal["human", "heartbeat", "callback"]


class Presenter(Protocol):
    """Delivery surface for run results and scheduler notices."""

    async def present(self, key: ContextKey, result: RunResult, source: RunSource) -> None: ...

    async def notify(self, key: ContextKey, text: str) -> None: ...


class ConsolePresenter:
    """Prints results to a stream (stdout by default)."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout

    async def present(self, key: ContextKey, result: RunResult, source: RunSource) -> None:
        label = f"[{key}] ({source})"
        if result.is_error:
            label += " error"
        self._write(f"{label}\n{result.text}")
        for path in result.attachments:
            self._write(f"{label} attachment: {path}")
        logger.debug(
            "Presented result",
            context=str(key),
            source=source,
            cost_usd=result.cost_usd,
            attachments=len(result.attachments),
        )

    async def notify(self, key: ContextKey, text: str) -> None:
        self._write(f"[{key}] {text}")

    def _write(self, line: str) -> None:
        print(line, file=self._stream, flush=True)
