"""Codex CLI — ``codex exec --json`` (JSONL events).

Event shapes consumed::

    {"type": "thread.started", "thread_id": "..."}
    {"type": "item.updated" | "item.completed",
     "item": {"id": "item_1", "type": "agent_message", "text": "..."}}
    {"type": "item.completed",
     "item": {"id": "item_2", "type": "file_change", "changes": [{"path": "...", "kind": "add"}]}}
    {"type": "turn.completed", "usage": {"input_tokens": 10, "output_tokens": 5}}
    {"type": "turn.failed", "error": {"message": "..."}}
    {"type": "error", "message": "..."}

Agent messages accumulate: each new message item is appended, while an
update to an already-seen item replaces only that item's text. Codex
reports tokens, never currency, so ``cost_usd`` stays 0.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from cadence.backends.types import BackendOptions, WireProtocol, track_file
from cadence.config import get_settings
from cadence.logger import logger


class CodexAccumulator:
    def __init__(self) -> None:
        self.text = ""
        self.session_id: str | None = None
        self.error: str | None = None
        self.created_files: list[str] = []
        self.duration_ms: float | None = None
        self.cost_usd = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self._messages: dict[str, str] = {}  # item id → text, insertion ordered

    def process_event(self, event: dict[str, Any]) -> bool:
        match event.get("type"):
            case "thread.started":
                if tid := event.get("thread_id"):
                    self.session_id = tid
            case "item.updated" | "item.completed":
                item = event.get("item")
                if isinstance(item, dict):
                    return self._process_item(item)
            case "turn.completed":
                usage = event.get("usage") or {}
                self.input_tokens += int(usage.get("input_tokens") or 0)
                self.output_tokens += int(usage.get("output_tokens") or 0)
            case "turn.failed":
                self.error = _error_text(event.get("error")) or "Codex turn failed"
            case "error":
                self.error = event.get("message") or "Unknown Codex error"
        return False

    def _process_item(self, item: dict[str, Any]) -> bool:
        self._track_files(item)

        if item.get("type") != "agent_message" or not item.get("text"):
            return False
        item_id = str(item.get("id") or f"_anon{len(self._messages)}")
        if self._messages.get(item_id) == item["text"]:
            return False
        self._messages[item_id] = item["text"]
        self.text = "\n\n".join(self._messages.values())
        return True

    def _track_files(self, item: dict[str, Any]) -> None:
        paths: list[object] = [item.get("file_path")]
        for change in item.get("changes") or []:
            if isinstance(change, dict) and change.get("kind") != "delete":
                paths.append(change.get("path"))
        for path in paths:
            if track_file(self.created_files, path):
                logger.debug("Tracked Codex file output", path=path)


def _error_text(error: object) -> str | None:
    if error is None:
        return None
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return json.dumps(error)


def build_codex_args(options: BackendOptions, instructions_file: Path | None = None) -> list[str]:
    args = ["exec", "--json"]

    if options.plan_mode:
        args.append("--full-auto")
    else:
        args.append("--dangerously-bypass-approvals-and-sandbox")

    args += ["--cd", str(options.working_directory)]

    if options.model:
        args += ["-m", options.model]

    # Codex has no inline system-prompt flag; instructions go by file reference
    if instructions_file is not None:
        args += ["--config", f"model_instructions_file={instructions_file}"]

    for image in options.image_inputs:
        args += ["-i", image]

    if options.continue_session:
        args += ["resume", options.session_id]

    args.append(options.prompt)
    return args


CODEX = WireProtocol(
    backend="codex",
    executable=lambda: get_settings().agent.codex_cli,
    build_args=build_codex_args,
    new_accumulator=CodexAccumulator,
    instructions_via_file=True,
)
