"""
Notifications emitted to the presentation layer.

Each notification is a small dataclass; subscribers receive them through
the callbacks registered on the Orchestrator.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List


@dataclass
class Notification:
    agent_id: str

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data['kind'] = self.kind
        return data


@dataclass
class AgentFinished(Notification):
    exit_code: int = 0
    has_changes: bool = False


@dataclass
class AgentWaiting(Notification):
    waiting_for: str = ""


@dataclass
class AgentGone(Notification):
    pass


@dataclass
class ReviewClosed(Notification):
    new_commits: bool = False


@dataclass
class MergeResult(Notification):
    success: bool = False
    conflict: bool = False
    error: str = ""
    conflict_files: List[str] = field(default_factory=list)


@dataclass
class PreviewStarted(Notification):
    pass


@dataclass
class PreviewStopped(Notification):
    pass


@dataclass
class PreviewFailed(Notification):
    error: str = ""


@dataclass
class CleanupResult:
    agent_name: str
    reason: str


@dataclass
class CleanupReport(Notification):
    agent_id: str = ""
    results: List[CleanupResult] = field(default_factory=list)
