"""Operational halt control for automation loops.

The kill switch is a sentinel file: its mere existence halts a loop before
the next tick, and its content is ignored. An environment variable can
trigger the same halt for hosts where touching a file is inconvenient.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_KILL_SWITCH_ENV_VAR = "MIRROR_BOT_KILL_SWITCH"


def _is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class KillSwitchState:
    halted: bool
    reason: str
    file_kill: bool = False
    env_kill: bool = False


class KillSwitch:
    """File (and optional env var) kill switch.

    Parameters
    ----------
    path:
        Sentinel file. If it exists, the loop halts. None disables the file check.
    env_var:
        Env var name. A truthy value halts the loop. Empty string disables it.
    """

    def __init__(
        self,
        path: str | Path | None,
        env_var: str = DEFAULT_KILL_SWITCH_ENV_VAR,
    ) -> None:
        self._path = Path(path).expanduser() if path else None
        self._env_var = env_var

    @property
    def path(self) -> Path | None:
        return self._path

    def check(self) -> KillSwitchState:
        file_kill = bool(self._path is not None and self._path.exists())
        env_kill = bool(self._env_var) and _is_truthy(os.getenv(self._env_var))
        if file_kill:
            reason = f"Kill switch file detected at {self._path}"
        elif env_kill:
            reason = f"Kill switch env var {self._env_var} is set"
        else:
            reason = ""
        halted = file_kill or env_kill
        if halted:
            LOGGER.warning("kill switch engaged: %s", reason)
        return KillSwitchState(halted=halted, reason=reason, file_kill=file_kill, env_kill=env_kill)
