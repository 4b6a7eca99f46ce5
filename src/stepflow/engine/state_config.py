"""State directory configuration.

Execution records are kept per working directory, so that several servers
started from the same project share their execution history:

    ~/.stepflow/
      states/
        <hash-of-cwd>/
          state.db              # SQLite execution metadata
          executions/           # One JSON record per execution
            exec_1a2b3c.json

``STEPFLOW_STATE_DIR`` replaces the ``~/.stepflow/states/<hash>`` root.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


class StateConfig:
    """Resolves (and creates) the state directory layout."""

    def __init__(self, state_dir: str | Path | None = None):
        self._state_dir = Path(state_dir) if state_dir is not None else None

    def get_state_dir(self) -> Path:
        """State directory: explicit, ``STEPFLOW_STATE_DIR``, or derived from the CWD.

        Example:
            >>> StateConfig().get_state_dir()
            Path('/home/user/.stepflow/states/a1b2c3d4e5f6a7b8')
        """
        if self._state_dir is not None:
            state_dir = self._state_dir
        elif env_dir := os.getenv("STEPFLOW_STATE_DIR"):
            state_dir = Path(env_dir).expanduser()
        else:
            cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
            state_dir = Path.home() / ".stepflow" / "states" / cwd_hash

        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    def get_executions_dir(self) -> Path:
        executions_dir = self.get_state_dir() / "executions"
        executions_dir.mkdir(parents=True, exist_ok=True)
        return executions_dir

    def get_db_path(self) -> Path:
        return self.get_state_dir() / "state.db"


__all__ = ["StateConfig"]
