"""Agent CLI backends.

  types       — BackendOptions, the StreamAccumulator interface, WireProtocol
  claude      — Claude Code stream-json accumulator and argv builder
  codex       — Codex JSONL accumulator and argv builder
  process     — BackendProcess: one subprocess run, exit classification
  directives  — upload/image/callback directives extracted from agent text
"""

from cadence.backends.directives import Directives, extract_directives, parse_delay
from cadence.backends.process import PROTOCOLS, BackendProcess
from cadence.backends.types import BackendOptions, StreamAccumulator

__all__ = [
    "PROTOCOLS",
    "BackendOptions",
    "BackendProcess",
    "Directives",
    "StreamAccumulator",
    "extract_directives",
    "parse_delay",
]
