"""
Agent Record Module

The lifecycle record kept for every agent and the registry that holds them.
Identity fields are fixed at creation. Every mutable field lives behind the
agent's own lock, and multi-field reads go through snapshot() so they are
taken in a single critical section.
"""

import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union


class AgentStatus(Enum):
    """Agent lifecycle states."""
    RUNNING = "running"
    WAITING = "waiting"
    REVIEW_READY = "review_ready"
    REVIEWING = "reviewing"
    REVIEWED = "reviewed"
    PREVIEWING = "previewing"
    CONFLICTS = "conflicts"
    DONE = "done"
    DISMISSED = "dismissed"


# WaitingFor reasons
WAITING_PERMISSION = "permission"
WAITING_INPUT = "input"
WAITING_UNKNOWN = "unknown"


def _now() -> datetime:
    return datetime.now()


@dataclass(frozen=True)
class AgentSnapshot:
    """Consistent copy of an agent's fields taken under one lock acquisition."""
    id: str
    branch: str
    base_branch: str
    worktree_path: str
    tmux_window: str
    tmux_pane_id: str
    started_at: datetime
    status: AgentStatus
    waiting_for: str
    ever_active: bool
    exit_code: int
    finished_at: Optional[datetime]
    review_pane_id: str
    pre_review_commit: str
    merge_delete_branch: bool
    merge_remove_worktree: bool
    accumulated_duration: float
    running_started_at: Optional[datetime]
    taken_at: datetime

    @property
    def duration(self) -> float:
        """Seconds spent in running as of the moment the snapshot was taken."""
        total = self.accumulated_duration
        if self.running_started_at is not None:
            total += max(0.0, (self.taken_at - self.running_started_at).total_seconds())
        return total


class Agent:
    """One isolated unit of work: branch, worktree and controlling process."""

    def __init__(self,
                 branch: str,
                 base_branch: str,
                 worktree_path: str,
                 tmux_window: str,
                 tmux_pane_id: str,
                 agent_id: str = "",
                 started_at: Optional[datetime] = None):
        self.id = agent_id
        self.branch = branch
        self.base_branch = base_branch
        self.worktree_path = worktree_path
        self.tmux_window = tmux_window
        self.tmux_pane_id = tmux_pane_id
        self.started_at = started_at or _now()

        self._lock = threading.Lock()
        self._status = AgentStatus.RUNNING
        self._waiting_for = ""
        self._ever_active = False
        self._exit_code = 0
        self._finished_at: Optional[datetime] = None
        self._review_pane_id = ""
        self._pre_review_commit = ""
        self._merge_delete_branch = False
        self._merge_remove_worktree = False
        self._accumulated_duration = 0.0
        self._running_started_at: Optional[datetime] = self.started_at

    def __repr__(self) -> str:
        return f"Agent(id={self.id!r}, branch={self.branch!r}, status={self.get_status().value!r})"

    # --- status and duration accounting ---

    def get_status(self) -> AgentStatus:
        with self._lock:
            return self._status

    def set_status(self, status: AgentStatus, now: Optional[datetime] = None) -> AgentStatus:
        """Set the status and return the previous one.

        Leaving running folds the current running period into the
        accumulator; entering running opens a new period.
        """
        now = now or _now()
        with self._lock:
            previous = self._status
            self._apply_status(status, now)
            return previous

    def compare_and_set_status(self, expected: Union[AgentStatus, Iterable[AgentStatus]],
                               status: AgentStatus, now: Optional[datetime] = None) -> bool:
        """Set the status only if the current one is expected.

        The monitor loop transitions from the status it observed, so a
        concurrent user operation that moved the agent on is never undone.
        """
        allowed = {expected} if isinstance(expected, AgentStatus) else set(expected)
        now = now or _now()
        with self._lock:
            if self._status not in allowed:
                return False
            self._apply_status(status, now)
            return True

    def _apply_status(self, status: AgentStatus, now: datetime) -> None:
        previous = self._status
        if previous == AgentStatus.RUNNING and status != AgentStatus.RUNNING:
            if self._running_started_at is not None:
                elapsed = (now - self._running_started_at).total_seconds()
                self._accumulated_duration += max(0.0, elapsed)
            self._running_started_at = None
        elif status == AgentStatus.RUNNING and self._running_started_at is None:
            self._running_started_at = now
        self._status = status

    def duration(self, now: Optional[datetime] = None) -> float:
        """Total seconds spent in running, including the live period."""
        now = now or _now()
        with self._lock:
            total = self._accumulated_duration
            if self._running_started_at is not None:
                total += max(0.0, (now - self._running_started_at).total_seconds())
            return total

    def set_duration_state(self, accumulated: float, running_started_at: Optional[datetime]) -> None:
        """Restore duration bookkeeping from persisted state."""
        with self._lock:
            self._accumulated_duration = max(0.0, float(accumulated))
            self._running_started_at = running_started_at

    # --- waiting / activity ---

    def get_waiting_for(self) -> str:
        with self._lock:
            return self._waiting_for

    def set_waiting_for(self, reason: str) -> None:
        with self._lock:
            self._waiting_for = reason or ""

    def get_ever_active(self) -> bool:
        with self._lock:
            return self._ever_active

    def set_ever_active(self, value: bool) -> None:
        with self._lock:
            self._ever_active = value

    # --- completion (write-once) ---

    def set_finished(self, exit_code: int, finished_at: Optional[datetime] = None) -> bool:
        """Record exit code and finish time. Only the first call takes effect."""
        with self._lock:
            if self._finished_at is not None:
                return False
            self._exit_code = exit_code
            self._finished_at = finished_at or _now()
            return True

    def get_exit_code(self) -> int:
        with self._lock:
            return self._exit_code

    def get_finished_at(self) -> Optional[datetime]:
        with self._lock:
            return self._finished_at

    # --- review ---

    def get_review_pane_id(self) -> str:
        with self._lock:
            return self._review_pane_id

    def set_review_pane_id(self, pane_id: str) -> None:
        with self._lock:
            self._review_pane_id = pane_id or ""

    def get_pre_review_commit(self) -> str:
        with self._lock:
            return self._pre_review_commit

    def set_pre_review_commit(self, commit: str) -> None:
        with self._lock:
            self._pre_review_commit = commit or ""

    # --- merge cleanup preferences ---

    def set_merge_preferences(self, delete_branch: bool, remove_worktree: bool) -> None:
        with self._lock:
            self._merge_delete_branch = delete_branch
            self._merge_remove_worktree = remove_worktree

    def snapshot(self, now: Optional[datetime] = None) -> AgentSnapshot:
        now = now or _now()
        with self._lock:
            return AgentSnapshot(
                id=self.id,
                branch=self.branch,
                base_branch=self.base_branch,
                worktree_path=self.worktree_path,
                tmux_window=self.tmux_window,
                tmux_pane_id=self.tmux_pane_id,
                started_at=self.started_at,
                status=self._status,
                waiting_for=self._waiting_for,
                ever_active=self._ever_active,
                exit_code=self._exit_code,
                finished_at=self._finished_at,
                review_pane_id=self._review_pane_id,
                pre_review_commit=self._pre_review_commit,
                merge_delete_branch=self._merge_delete_branch,
                merge_remove_worktree=self._merge_remove_worktree,
                accumulated_duration=self._accumulated_duration,
                running_started_at=self._running_started_at,
                taken_at=now,
            )


_SEQUENTIAL_ID = re.compile(r'^a(\d+)$')


class Store:
    """
    Registry of agents keyed by ID.

    Membership is guarded by the store lock; record contents are guarded by
    each agent's own lock. IDs are assigned sequentially ("a1", "a2", ...)
    unless the caller already set one, as recovery does.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._agents: Dict[str, Agent] = {}
        self._next_id = 0
        self._dirty = threading.Event()

    def add(self, agent: Agent) -> str:
        with self._lock:
            if not agent.id:
                self._next_id += 1
                agent.id = f"a{self._next_id}"
                while agent.id in self._agents:
                    self._next_id += 1
                    agent.id = f"a{self._next_id}"
            else:
                match = _SEQUENTIAL_ID.match(agent.id)
                if match:
                    self._next_id = max(self._next_id, int(match.group(1)))
            self._agents[agent.id] = agent
        self._dirty.set()
        return agent.id

    def get(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.get(agent_id)

    def all(self) -> List[Agent]:
        """All agents ordered by ID number, then ID."""
        with self._lock:
            agents = list(self._agents.values())
        return sorted(agents, key=_agent_sort_key)

    def find_by_branch(self, branch: str) -> Optional[Agent]:
        with self._lock:
            for agent in self._agents.values():
                if agent.branch == branch:
                    return agent
        return None

    def update_status(self, agent_id: str, status: AgentStatus) -> bool:
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.set_status(status)
        self._dirty.set()
        return True

    def remove(self, agent_id: str) -> bool:
        with self._lock:
            removed = self._agents.pop(agent_id, None) is not None
        self._dirty.set()
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)

    def mark_dirty(self) -> None:
        self._dirty.set()

    def is_dirty(self) -> bool:
        return self._dirty.is_set()

    def clear_dirty(self) -> None:
        self._dirty.clear()


def _agent_sort_key(agent: Agent):
    match = _SEQUENTIAL_ID.match(agent.id or "")
    return (0, int(match.group(1)), "") if match else (1, 0, agent.id or "")
