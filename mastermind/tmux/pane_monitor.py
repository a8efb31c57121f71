"""
Pane Monitor Module

Classifies what an agent's controlling process is doing from its captured
terminal content. Content that changes between polls means the process is
working; content that stays the same for enough consecutive polls is
inspected for prompts to decide what the process is waiting for.
"""

import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..core.agent import WAITING_INPUT, WAITING_PERMISSION, WAITING_UNKNOWN
from .patterns import DEFAULT_PATTERNS, MonitorPatterns

logger = logging.getLogger(__name__)

BOTTOM_LINES = 20
DEFAULT_STABLE_POLLS = 2

NUMBERED_LIST_RE = re.compile(r'^\d+\.\s')

# Numbered items opening with a past-tense verb read as a summary of
# finished work ("1. Fixed ...") rather than options to choose from.
COMPLETION_VERB_RE = re.compile(
    r'^\d+\.\s+(fixed|added|updated|created|removed|refactored|implemented|changed|moved|'
    r'renamed|deleted|resolved|configured|installed|upgraded|cleaned|improved|converted|'
    r'enabled|disabled|replaced|merged|extracted|simplified|optimized|reorganized|wrapped|'
    r'adjusted|corrected|patched|migrated|set up|handled|ensured|introduced|rewrote|modified|'
    r'integrated|applied|addressed|extended|standardized|consolidated|split|separated|'
    r'normalized|aligned|documented)\b',
    re.IGNORECASE,
)


@dataclass
class ClassifyInfo:
    """Classification of one capture. Empty waiting_for means active."""
    waiting_for: str = ""
    has_numbered_list: bool = False


@dataclass
class PaneStatus:
    """Liveness plus classification of a pane."""
    dead: bool = False
    exit_code: int = 0
    waiting_for: str = ""
    has_numbered_list: bool = False


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8', errors='replace')).hexdigest()[:16]


def bottom_lines(content: str, limit: int = BOTTOM_LINES) -> List[str]:
    """Non-blank stripped lines, read from the bottom up."""
    result = []
    for line in reversed(content.split('\n')):
        stripped = line.strip()
        if stripped:
            result.append(stripped)
            if len(result) >= limit:
                break
    return result


def detect_numbered_list(lines: List[str]) -> bool:
    """
    True if the lines hold an interactive numbered option list.

    At least two "N. " items are required, and the list is rejected when
    at least half its items open with a completion verb.
    """
    numbered = 0
    summary_verbs = 0
    for line in lines:
        if NUMBERED_LIST_RE.match(line):
            numbered += 1
            if COMPLETION_VERB_RE.match(line):
                summary_verbs += 1
    if numbered < 2:
        return False
    return summary_verbs < numbered // 2


def classify_unstable_content(content: str, patterns: MonitorPatterns = DEFAULT_PATTERNS) -> str:
    """Return "permission" for high-confidence prompts, else ""."""
    for pattern in patterns.early_permission_patterns:
        if pattern in content:
            return WAITING_PERMISSION
    return ""


def classify_stable_content(content: str, patterns: MonitorPatterns = DEFAULT_PATTERNS) -> ClassifyInfo:
    """Decide what a stable pane is waiting for."""
    lines = bottom_lines(content)
    if not lines:
        return ClassifyInfo()

    bottom = '\n'.join(lines)
    has_numbered_list = detect_numbered_list(lines)

    for indicator in patterns.working_indicators:
        if any(indicator.matches_line(line) for line in lines):
            return ClassifyInfo()

    for rule in patterns.permission_patterns:
        if rule.matches_block(bottom):
            return ClassifyInfo(WAITING_PERMISSION, has_numbered_list)

    for rule in patterns.input_patterns:
        if rule.matches_block(bottom):
            return ClassifyInfo(WAITING_INPUT, has_numbered_list)

    # Stable but unrecognised is still a signal.
    return ClassifyInfo(WAITING_UNKNOWN, has_numbered_list)


class PaneMonitor:
    """
    Tracks pane content over successive polls.

    Features:
    - Per-pane content hashing with a consecutive-stable counter
    - Early permission detection that bypasses the stability requirement
    - Stable-content classification against a replaceable pattern table
    """

    def __init__(self, tmux_controller=None,
                 patterns: Optional[MonitorPatterns] = None,
                 stable_polls: int = DEFAULT_STABLE_POLLS):
        self.tmux_controller = tmux_controller
        self.patterns = patterns or DEFAULT_PATTERNS
        self.stable_polls = stable_polls

        self._lock = threading.Lock()
        self._last_hash: Dict[str, str] = {}
        self._stable_count: Dict[str, int] = {}

    def remove(self, pane_id: str) -> None:
        with self._lock:
            self._last_hash.pop(pane_id, None)
            self._stable_count.pop(pane_id, None)

    def stable_count(self, pane_id: str) -> int:
        with self._lock:
            return self._stable_count.get(pane_id, 0)

    def observe(self, pane_id: str, content: str) -> ClassifyInfo:
        """Feed one capture for a pane and classify it."""
        if not content:
            return ClassifyInfo()

        digest = hash_content(content)
        with self._lock:
            previous = self._last_hash.get(pane_id)
            self._last_hash[pane_id] = digest
            if previous == digest:
                self._stable_count[pane_id] = self._stable_count.get(pane_id, 0) + 1
            else:
                self._stable_count[pane_id] = 0
            stable = self._stable_count[pane_id]

        # Some prompts animate a cursor or spinner and never hash-stabilize.
        early = classify_unstable_content(content, self.patterns)
        if early:
            return ClassifyInfo(early)

        if stable < self.stable_polls:
            return ClassifyInfo()

        return classify_stable_content(content, self.patterns)

    def get_pane_status(self, pane_id: str, dead: Optional[bool] = None, exit_code: int = 0) -> PaneStatus:
        """
        Resolve liveness and classify a pane.

        Args:
            pane_id: tmux pane ID
            dead: Liveness already known from a batched listing; queried
                from tmux when None
            exit_code: Exit code paired with a known-dead pane

        Raises:
            CommandError: if tmux could not be queried; callers retry next tick
        """
        if dead is None:
            dead, exit_code = self.tmux_controller.pane_dead_status(pane_id)
        if dead:
            return PaneStatus(dead=True, exit_code=exit_code)

        content = self.tmux_controller.capture_pane(pane_id)
        info = self.observe(pane_id, content)
        return PaneStatus(waiting_for=info.waiting_for, has_numbered_list=info.has_numbered_list)
