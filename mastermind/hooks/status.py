"""
Hook status sidecar reader.

The controlling process's hooks write `.mastermind-status` at the root of
the agent's worktree. The core only reads it and checks its freshness;
a missing, malformed or stale file means "fall back to pane capture".
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

STATUS_FILE_NAME = '.mastermind-status'
DEFAULT_FRESHNESS = 30.0

STATUS_RUNNING = "running"
STATUS_WAITING_PERMISSION = "waiting_permission"
STATUS_WAITING_INPUT = "waiting_input"
STATUS_IDLE = "idle"
STATUS_STOPPED = "stopped"

KNOWN_STATUSES = frozenset({
    STATUS_RUNNING,
    STATUS_WAITING_PERMISSION,
    STATUS_WAITING_INPUT,
    STATUS_IDLE,
    STATUS_STOPPED,
})


@dataclass
class HookStatus:
    status: str
    timestamp: float

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp

    def is_stale(self, freshness: float = DEFAULT_FRESHNESS, now: Optional[float] = None) -> bool:
        return self.age(now) > freshness


def read_status(worktree_path: Union[str, Path]) -> Optional[HookStatus]:
    """
    Read the sidecar file in a worktree.

    Returns:
        HookStatus, or None if the file is absent, unreadable or malformed
    """
    path = Path(worktree_path) / STATUS_FILE_NAME
    try:
        data = FileUtils.read_json(path, strict=True)
    except (OSError, json.JSONDecodeError) as e:
        logger.debug(f"Ignoring unreadable status file {path}: {e}")
        return None
    if not isinstance(data, dict):
        return None

    status = data.get('status')
    timestamp = data.get('ts', data.get('timestamp'))
    if status not in KNOWN_STATUSES or isinstance(timestamp, bool):
        return None
    try:
        timestamp = float(timestamp)
    except (TypeError, ValueError):
        return None
    return HookStatus(status=status, timestamp=timestamp)


def read_fresh_status(worktree_path: Union[str, Path],
                      freshness: float = DEFAULT_FRESHNESS,
                      now: Optional[float] = None) -> Optional[HookStatus]:
    """Like read_status, but None when the file is older than freshness seconds."""
    hook_status = read_status(worktree_path)
    if hook_status is None or hook_status.is_stale(freshness, now):
        return None
    return hook_status
