"""Claude Code CLI — ``claude -p --output-format stream-json``.

Event shapes consumed::

    {"type": "system", "subtype": "init", "session_id": "..."}
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."},
                                                  {"type": "tool_use", "name": "Write",
                                                   "input": {"file_path": "..."}}]}}
    {"type": "result", "is_error": false, "duration_ms": 1234,
     "total_cost_usd": 0.01, "session_id": "...", "result": "..."}
    {"type": "error", "error": {"message": "..."}}

Each assistant turn replaces the running text wholesale; the final answer
is the last turn's text.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from cadence.backends.types import BackendOptions, WireProtocol, track_file
from cadence.config import get_settings
from cadence.logger import logger

# Tool names whose input names a file the agent wrote
_FILE_TOOLS = {"Write": "file_path", "Edit": "file_path", "MultiEdit": "file_path"}
_NOTEBOOK_TOOLS = {"NotebookEdit": "notebook_path"}


class ClaudeAccumulator:
    def __init__(self) -> None:
        self.text = ""
        self.session_id: str | None = None
        self.error: str | None = None
        self.created_files: list[str] = []
        self.duration_ms: float | None = None
        self.cost_usd = 0.0
        self.input_tokens = 0
        self.output_tokens = 0
        self._result_text: str | None = None

    def process_event(self, event: dict[str, Any]) -> bool:
        match event.get("type"):
            case "system":
                if sid := event.get("session_id"):
                    self.session_id = sid
            case "assistant":
                return self._process_assistant(event.get("message") or {})
            case "result":
                self._process_result(event)
            case "error":
                err = event.get("error")
                if isinstance(err, dict):
                    self.error = err.get("message") or "Unknown Claude error"
                else:
                    self.error = str(err) if err else "Unknown Claude error"
        return False

    def _process_assistant(self, message: dict[str, Any]) -> bool:
        parts: list[str] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                parts.append(block["text"])
            elif block.get("type") == "tool_use":
                self._track_tool_use(block.get("name"), block.get("input") or {})
        if not parts:
            return False
        self.text = "".join(parts)
        return True

    def _track_tool_use(self, name: object, tool_input: dict[str, Any]) -> None:
        field = _FILE_TOOLS.get(name) or _NOTEBOOK_TOOLS.get(name)  # type: ignore[arg-type]
        if field and track_file(self.created_files, tool_input.get(field)):
            logger.debug("Tracked file output", path=tool_input.get(field), tool=name)

    def _process_result(self, event: dict[str, Any]) -> None:
        if sid := event.get("session_id"):
            self.session_id = sid
        if (duration := event.get("duration_ms")) is not None:
            self.duration_ms = float(duration)
        self.cost_usd = float(event.get("total_cost_usd") or 0.0)
        usage = event.get("usage") or {}
        self.input_tokens = int(usage.get("input_tokens") or 0)
        self.output_tokens = int(usage.get("output_tokens") or 0)
        self._result_text = event.get("result")
        if event.get("is_error"):
            self.error = self._result_text or event.get("subtype") or "Claude run failed"
        elif not self.text and self._result_text:
            self.text = self._result_text


def build_claude_args(options: BackendOptions, instructions_file: Path | None = None) -> list[str]:
    args = ["-p", "--verbose", "--output-format", "stream-json"]

    if options.plan_mode:
        args += ["--permission-mode", "plan"]
    else:
        args.append("--dangerously-skip-permissions")

    if options.append_system_prompt:
        args += ["--append-system-prompt", options.append_system_prompt]

    if options.model:
        args += ["--model", options.model]

    if options.continue_session:
        args += ["--resume", options.session_id]
    else:
        args += ["--session-id", options.session_id]

    # image_inputs are not passed natively; their paths stay in the prompt text
    args.append(options.prompt)
    return args


CLAUDE = WireProtocol(
    backend="claude",
    executable=lambda: get_settings().agent.claude_cli,
    build_args=build_claude_args,
    new_accumulator=ClaudeAccumulator,
)
