"""Exception hierarchy.

Agent-reported failures are not exceptions: they come back as a RunResult
with ``is_error=True``. Only infrastructure failures raise.
"""

from __future__ import annotations


class CadenceError(Exception):
    """Base class for all cadence errors."""


class ConfigError(CadenceError):
    """Invalid or missing configuration."""


class BackendProcessError(CadenceError):
    """The agent subprocess could not be started or died without output.

    Raised when the CLI is missing, fails to spawn, or exits nonzero having
    produced no text at all.
    """

    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
