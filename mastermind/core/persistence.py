"""
State Persistence Module

Durable snapshots of the agent Store and of the in-flight preview session.
Both files are plain JSON, rewritten wholesale on every save through an
atomic temp-file-then-rename so a crash mid-write leaves the previous copy
intact. I/O failures never propagate into the running process: the
in-memory Store stays authoritative.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.file_utils import FileUtils
from .agent import Agent, AgentStatus, Store
from .exceptions import PersistenceError

logger = logging.getLogger(__name__)

STATE_FILE_NAME = 'mastermind-state.json'
PREVIEW_FILE_NAME = 'mastermind-preview.json'


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _parse_status(value: Any, default: AgentStatus = AgentStatus.RUNNING) -> AgentStatus:
    try:
        return AgentStatus(value)
    except ValueError:
        # Older files stored "review ready" with a space
        if isinstance(value, str):
            try:
                return AgentStatus(value.replace(' ', '_'))
            except ValueError:
                pass
        return default


@dataclass
class PersistedAgent:
    """Serializable form of an agent record."""
    id: str
    branch: str
    base_branch: str
    worktree_path: str
    tmux_window: str
    tmux_pane_id: str
    status: AgentStatus = AgentStatus.RUNNING
    waiting_for: str = ""
    ever_active: bool = False
    exit_code: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    review_pane_id: str = ""
    pre_review_commit: str = ""
    accumulated_duration: float = 0.0
    running_started_at: Optional[datetime] = None

    @classmethod
    def from_agent(cls, agent: Agent) -> 'PersistedAgent':
        snap = agent.snapshot()
        return cls(
            id=snap.id,
            branch=snap.branch,
            base_branch=snap.base_branch,
            worktree_path=snap.worktree_path,
            tmux_window=snap.tmux_window,
            tmux_pane_id=snap.tmux_pane_id,
            status=snap.status,
            waiting_for=snap.waiting_for,
            ever_active=snap.ever_active,
            exit_code=snap.exit_code,
            started_at=snap.started_at,
            finished_at=snap.finished_at,
            review_pane_id=snap.review_pane_id,
            pre_review_commit=snap.pre_review_commit,
            accumulated_duration=snap.accumulated_duration,
            running_started_at=snap.running_started_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['started_at'] = _format_time(self.started_at)
        data['finished_at'] = _format_time(self.finished_at)
        data['running_started_at'] = _format_time(self.running_started_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PersistedAgent':
        if not isinstance(data, dict) or not data.get('id'):
            raise PersistenceError(f"invalid agent record: {data!r}")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['status'] = _parse_status(values.get('status'))
        for key in ('started_at', 'finished_at', 'running_started_at'):
            values[key] = _parse_time(values.get(key))
        for key in ('branch', 'base_branch', 'worktree_path', 'tmux_window', 'tmux_pane_id',
                    'waiting_for', 'review_pane_id', 'pre_review_commit'):
            values[key] = values.get(key) or ""
        values['ever_active'] = bool(values.get('ever_active', False))
        values['exit_code'] = int(values.get('exit_code') or 0)
        values['accumulated_duration'] = float(values.get('accumulated_duration') or 0.0)
        return cls(**values)

    def to_agent(self) -> Agent:
        """Rebuild a live Agent carrying every lifecycle field."""
        agent = Agent(
            branch=self.branch,
            base_branch=self.base_branch,
            worktree_path=self.worktree_path,
            tmux_window=self.tmux_window,
            tmux_pane_id=self.tmux_pane_id,
            agent_id=self.id,
            started_at=self.started_at,
        )
        agent.set_status(self.status)
        agent.set_waiting_for(self.waiting_for)
        agent.set_ever_active(self.ever_active)
        if self.finished_at is not None:
            agent.set_finished(self.exit_code, self.finished_at)
        agent.set_review_pane_id(self.review_pane_id)
        agent.set_pre_review_commit(self.pre_review_commit)
        # Duration last: set_status above opens/closes running periods.
        agent.set_duration_state(self.accumulated_duration, self.running_started_at)
        return agent


@dataclass
class PreviewRecord:
    """The single in-flight preview session."""
    agent_id: str
    prev_branch: str
    prev_status: AgentStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'prev_branch': self.prev_branch,
            'prev_status': self.prev_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['PreviewRecord']:
        if not isinstance(data, dict) or not data.get('agent_id'):
            return None
        return cls(
            agent_id=str(data['agent_id']),
            prev_branch=str(data.get('prev_branch') or ""),
            prev_status=_parse_status(data.get('prev_status'), AgentStatus.REVIEW_READY),
        )


class StatePersistence:
    """
    Reads and writes the state file and the preview file.

    Features:
    - Atomic wholesale rewrites of both files
    - Debounced saves of a dirty Store (min_save_interval), with forced saves
      for shutdown
    - One writer at a time per instance
    """

    def __init__(self, state_dir: Path, min_save_interval: float = 5.0):
        self.state_dir = Path(state_dir)
        self.state_path = self.state_dir / STATE_FILE_NAME
        self.preview_path = self.state_dir / PREVIEW_FILE_NAME
        self.min_save_interval = min_save_interval

        self._write_lock = threading.Lock()
        self._last_save: Optional[float] = None

    # --- agents ---

    def save_agents(self, store: Store) -> bool:
        """
        Write every agent in the store.

        The dirty flag is cleared before the snapshot is taken so a change
        racing with the write keeps the store dirty; on failure the flag is
        restored.

        Returns:
            bool: True if the write succeeded
        """
        with self._write_lock:
            store.clear_dirty()
            records = [PersistedAgent.from_agent(a).to_dict() for a in store.all()]
            try:
                FileUtils.write_json_atomic(self.state_path, records)
            except (OSError, TypeError, ValueError) as e:
                store.mark_dirty()
                logger.error(f"Failed to save state to {self.state_path}: {e}")
                return False
            self._last_save = time.monotonic()
            return True

    def save_if_dirty(self, store: Store, force: bool = False) -> bool:
        """
        Save when the store is dirty and the minimum interval has passed.

        Args:
            store: Store to persist
            force: Ignore both the dirty flag and the interval

        Returns:
            bool: True if a write happened and succeeded
        """
        if not force:
            if not store.is_dirty():
                return False
            if self._last_save is not None and time.monotonic() - self._last_save < self.min_save_interval:
                return False
        return self.save_agents(store)

    def load_agents(self) -> List[PersistedAgent]:
        """
        Read persisted agents in file order.

        Returns:
            List of PersistedAgent; empty if no state file exists

        Raises:
            PersistenceError: if the file is unreadable or malformed
        """
        try:
            data = FileUtils.read_json(self.state_path, strict=True)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"read state file {self.state_path}: {e}") from e
        if data is None:
            return []
        if not isinstance(data, list):
            raise PersistenceError(f"state file {self.state_path} does not hold a list")
        return [PersistedAgent.from_dict(item) for item in data]

    # --- preview ---

    def save_preview(self, record: PreviewRecord) -> bool:
        with self._write_lock:
            try:
                FileUtils.write_json_atomic(self.preview_path, record.to_dict())
            except OSError as e:
                logger.error(f"Failed to save preview state to {self.preview_path}: {e}")
                return False
            return True

    def load_preview(self) -> Optional[PreviewRecord]:
        """Return the persisted preview, or None if absent or unreadable."""
        data = FileUtils.read_json(self.preview_path)
        if data is None:
            return None
        return PreviewRecord.from_dict(data)

    def clear_preview(self) -> None:
        with self._write_lock:
            try:
                FileUtils.remove_file(self.preview_path)
            except OSError as e:
                logger.error(f"Failed to remove preview state {self.preview_path}: {e}")
