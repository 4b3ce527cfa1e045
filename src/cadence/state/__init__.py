"""Persisted state.

  sessions     — flat JSON snapshot of per-context records, the global model
                 and the last usage limit
  directories  — per-surface working directories under base_dir
"""

from cadence.state.directories import project_directory
from cadence.state.sessions import SessionStore

__all__ = ["SessionStore", "project_directory"]
