"""
Core Orchestrator Module

This module contains the Orchestrator class that coordinates the agent
Store, git worktrees, tmux windows and the pane classifier. It exposes the
user-triggered lifecycle operations and runs the periodic monitor loop that
reconciles agent records against what tmux and git report.
"""

import logging
import os
import threading
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..git.worktree_manager import WORKTREE_DIR_NAME, GitError, MergeOutcome, WorktreeManager
from ..hooks import status as hook_status
from ..hooks.installer import ensure_git_exclude, install_hooks
from ..tmux.pane_monitor import PaneMonitor
from ..tmux.session_controller import PaneInfo, TmuxSessionController
from ..utils.config_loader import MastermindConfig
from ..utils.system_utils import CommandError, CommandTimeout
from .agent import WAITING_INPUT, WAITING_PERMISSION, Agent, AgentSnapshot, AgentStatus, Store
from .exceptions import (
    AgentNotFoundError,
    BranchInUseError,
    MergeConflictError,
    NoActivePreviewError,
    NotReviewableError,
    OperationError,
    PreconditionError,
    PreviewActiveError,
    UncommittedChangesError,
)
from .notifications import (
    AgentFinished,
    AgentGone,
    AgentWaiting,
    CleanupReport,
    CleanupResult,
    MergeResult,
    Notification,
    PreviewFailed,
    PreviewStarted,
    PreviewStopped,
    ReviewClosed,
)
from .persistence import PreviewRecord, StatePersistence

logger = logging.getLogger(__name__)

PREVIEW_BRANCH_PREFIX = 'preview/'

# Statuses whose panes the monitor loop classifies
MONITORED_STATUSES = frozenset({
    AgentStatus.RUNNING,
    AgentStatus.WAITING,
    AgentStatus.REVIEW_READY,
    AgentStatus.DONE,
})

REVIEWABLE_STATUSES = frozenset({
    AgentStatus.REVIEW_READY,
    AgentStatus.REVIEWED,
    AgentStatus.REVIEWING,
})

REVIEW_OPENABLE_STATUSES = frozenset({
    AgentStatus.REVIEW_READY,
    AgentStatus.REVIEWED,
    AgentStatus.CONFLICTS,
})

# Merging these would race the agent or the preview checkout
UNMERGEABLE_STATUSES = frozenset({
    AgentStatus.RUNNING,
    AgentStatus.WAITING,
    AgentStatus.REVIEWING,
    AgentStatus.PREVIEWING,
    AgentStatus.DISMISSED,
})


class PreviewSlot(Enum):
    """Claim state of the single system-wide preview."""
    IDLE = "idle"
    CLAIMING = "claiming"
    ACTIVE = "active"


class Orchestrator:
    """
    Main orchestrator for agents running in one tmux session of one repository.

    This class coordinates between all subsystems:
    - Agent Store and its persistence
    - Git worktree and branch management
    - Tmux window and pane control
    - Pane activity classification (hook status first, capture fallback)
    - The single preview checkout of the main worktree
    """

    def __init__(self,
                 repo_path: Path,
                 session: str,
                 worktree_dir: Optional[Path] = None,
                 store: Optional[Store] = None,
                 git_manager=None,
                 tmux_controller=None,
                 pane_monitor=None,
                 persistence: Optional[StatePersistence] = None,
                 config: Optional[MastermindConfig] = None):
        """
        Initialize orchestrator with dependency injection.

        Args:
            repo_path: Main repository checkout
            session: tmux session holding the agent windows
            worktree_dir: Root for agent worktrees and state files
            store: Agent registry
            git_manager: Git branch/worktree operations
            tmux_controller: Tmux window/pane operations
            pane_monitor: Pane content classifier
            persistence: State and preview file storage
            config: Loaded configuration
        """
        self.config = config or MastermindConfig()
        timeout = self.config.monitor.command_timeout

        self.repo_path = Path(repo_path).resolve()
        self.session = session
        self.worktree_dir = Path(worktree_dir) if worktree_dir else self.repo_path / WORKTREE_DIR_NAME

        self.store = store or Store()
        self.git_manager = git_manager or WorktreeManager(self.repo_path, self.worktree_dir, timeout)
        self.tmux_controller = tmux_controller or TmuxSessionController(timeout)
        self.pane_monitor = pane_monitor or PaneMonitor(
            self.tmux_controller, self.config.patterns, self.config.monitor.stable_polls)
        self.persistence = persistence or StatePersistence(
            self.worktree_dir, self.config.monitor.min_save_interval)

        self.notification_callbacks: List[Callable[[Notification], None]] = []

        self._preview_lock = threading.Lock()
        self._preview_slot = PreviewSlot.IDLE
        self._preview_claimant = ""
        self._preview: Optional[PreviewRecord] = None

        self._preview_cleanup_lock = threading.Lock()
        self._preview_cleanup_done = False

        self._sleep = time.sleep

    # --- notifications ---

    def add_notification_callback(self, callback: Callable[[Notification], None]) -> None:
        """Register a callback receiving every Notification."""
        self.notification_callbacks.append(callback)

    def _notify(self, notification: Notification) -> None:
        for callback in self.notification_callbacks:
            try:
                callback(notification)
            except Exception as e:
                logger.warning(f"Notification callback error for {notification.kind}: {e}")

    # --- helpers ---

    def _get_agent(self, agent_id: str) -> Agent:
        agent = self.store.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def _transition(self, agent: Agent, observed: AgentStatus, status: AgentStatus, source: str) -> bool:
        changed = agent.compare_and_set_status(observed, status)
        if changed:
            self.store.mark_dirty()
            logger.debug(f"Agent {agent.id} {observed.value} -> {status.value} ({source})")
        return changed

    def _best_effort(self, description: str, func, *args) -> bool:
        """Run one teardown step, logging instead of raising on tool failure."""
        try:
            func(*args)
            return True
        except (CommandError, OSError) as e:
            logger.warning(f"{description} failed: {e}")
            return False

    def ensure_repo_excludes(self) -> None:
        """Keep the worktree directory out of the main checkout's status."""
        try:
            ensure_git_exclude(self.repo_path, [WORKTREE_DIR_NAME + '/'],
                               timeout=self.config.monitor.command_timeout)
        except (CommandError, OSError) as e:
            logger.warning(f"Could not update git exclude for {self.repo_path}: {e}")

    # --- spawn / dismiss / focus / review ---

    def spawn_agent(self, branch: str, base_branch: str, create_branch: bool = True) -> Agent:
        """
        Start a new agent on branch in its own worktree and tmux window.

        Args:
            branch: Branch the agent works on
            base_branch: Branch it forks from and later merges into
            create_branch: Create branch from base_branch first

        Returns:
            Agent: The registered agent

        Raises:
            BranchInUseError: if the branch is claimed or checked out elsewhere
            OperationError: if git or tmux failed; nothing is left behind
        """
        existing = self.store.find_by_branch(branch)
        if existing is not None:
            raise BranchInUseError(f"branch {branch!r} already in use by agent {existing.id}")

        if not create_branch:
            try:
                checked_out = self.git_manager.is_branch_checked_out(branch)
            except CommandError as e:
                raise OperationError("check branch checkout", e) from e
            if checked_out:
                raise BranchInUseError(f"branch {branch!r} is already checked out in another worktree")

        self.ensure_repo_excludes()

        if create_branch:
            try:
                self.git_manager.create_branch(branch, base_branch)
            except CommandError as e:
                raise OperationError("create branch", e) from e

        worktree_path = self.git_manager.worktree_path_for(branch)
        try:
            self.git_manager.create_worktree(worktree_path, branch)
        except CommandError as e:
            if create_branch:
                self._best_effort(f"delete branch {branch}", self.git_manager.delete_branch, branch)
            raise OperationError("create worktree", e) from e

        try:
            install_hooks(worktree_path,
                          agent_teams=self.config.claude.agent_teams,
                          teammate_mode=self.config.claude.teammate_mode,
                          timeout=self.config.monitor.command_timeout)
        except (CommandError, OSError) as e:
            logger.warning(f"Failed to write hook files, falling back to pane capture: {e}")

        env = {'CLAUDECODE': '', 'CLAUDE_CODE_ENTRYPOINT': ''}
        if self.config.claude.agent_teams:
            env['CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS'] = '1'

        try:
            pane_id = self.tmux_controller.new_window(
                self.session, branch, str(worktree_path), list(self.config.agent.command), env)
        except CommandError as e:
            self._undo_spawn(branch, worktree_path, create_branch)
            raise OperationError("create tmux window", e) from e

        try:
            window_id = self.tmux_controller.window_id_for_pane(pane_id)
        except CommandError as e:
            self._best_effort(f"kill pane {pane_id}", self.tmux_controller.kill_pane, pane_id)
            self._undo_spawn(branch, worktree_path, create_branch)
            raise OperationError("resolve tmux window", e) from e

        agent = Agent(
            branch=branch,
            base_branch=base_branch,
            worktree_path=str(worktree_path),
            tmux_window=window_id,
            tmux_pane_id=pane_id,
        )
        self.store.add(agent)
        logger.info(f"Agent spawned: {agent.id} on {branch} (base {base_branch})")
        self.persistence.save_agents(self.store)
        return agent

    def _undo_spawn(self, branch: str, worktree_path: Path, created_branch: bool) -> None:
        self._best_effort(f"remove worktree {worktree_path}", self.git_manager.remove_worktree, worktree_path)
        if created_branch:
            self._best_effort(f"delete branch {branch}", self.git_manager.delete_branch, branch)

    def dismiss_agent(self, agent_id: str, delete_branch: bool = False) -> None:
        """
        Stop an agent and tear down its window, worktree and optionally branch.

        Every teardown step is attempted even if an earlier one failed.

        Raises:
            AgentNotFoundError: if no such agent exists
        """
        agent = self._get_agent(agent_id)
        snap = agent.snapshot()

        if snap.tmux_pane_id:
            self.pane_monitor.remove(snap.tmux_pane_id)

        if snap.tmux_pane_id and snap.status in (AgentStatus.RUNNING, AgentStatus.WAITING):
            try:
                if self.tmux_controller.pane_exists_in_window(snap.tmux_window, snap.tmux_pane_id):
                    self.tmux_controller.send_keys(snap.tmux_pane_id, 'C-c')
                    self.tmux_controller.send_keys(snap.tmux_pane_id, '/exit', 'Enter')
                    self._sleep(self.config.agent.shutdown_grace)
            except CommandError as e:
                logger.warning(f"Graceful shutdown of agent {agent_id} failed: {e}")

        if snap.review_pane_id:
            self._best_effort(f"kill review pane {snap.review_pane_id}",
                              self.tmux_controller.kill_pane, snap.review_pane_id)
        if snap.tmux_window:
            self._best_effort(f"kill window {snap.tmux_window}",
                              self.tmux_controller.kill_window, snap.tmux_window)
        if snap.worktree_path:
            self._best_effort(f"remove worktree {snap.worktree_path}",
                              self.git_manager.remove_worktree, snap.worktree_path)
        if delete_branch and snap.branch:
            self._best_effort(f"delete branch {snap.branch}",
                              self.git_manager.delete_branch, snap.branch)

        self.store.remove(agent_id)
        logger.info(f"Agent dismissed: {agent_id} (delete_branch={delete_branch})")
        self.persistence.save_agents(self.store)

    def focus_agent(self, agent_id: str) -> None:
        """Select the agent's window and pane."""
        agent = self._get_agent(agent_id)
        try:
            self.tmux_controller.select_window(agent.tmux_window)
            self.tmux_controller.select_pane(agent.tmux_pane_id)
        except CommandError as e:
            raise OperationError("focus agent", e) from e

    def open_review(self, agent_id: str) -> str:
        """
        Open the review tool in a split beside the agent's pane.

        Records the worktree HEAD so closing the review can tell whether
        commits were made. An agent in conflicts keeps its status.

        Returns:
            str: The review pane ID

        Raises:
            NotReviewableError: if the agent has nothing to review or a review is open
        """
        agent = self._get_agent(agent_id)
        snap = agent.snapshot()
        if snap.status not in REVIEW_OPENABLE_STATUSES:
            raise NotReviewableError(f"agent {agent_id} is not reviewable (status: {snap.status.value})")
        if snap.review_pane_id:
            raise NotReviewableError(f"agent {agent_id} already has a review open")

        try:
            self.tmux_controller.select_window(snap.tmux_window)
        except CommandError as e:
            raise OperationError("select window", e) from e

        try:
            head = self.git_manager.head_commit(snap.worktree_path)
        except CommandError as e:
            raise OperationError("get head commit", e) from e

        shell = os.environ.get('SHELL') or '/bin/bash'
        command = [shell, '-lc', f'export GPG_TTY=$(tty); exec {self.config.agent.review_command}']
        try:
            pane_id = self.tmux_controller.split_window(
                snap.tmux_pane_id, snap.worktree_path, command,
                horizontal=True, percent=self.config.layout.review_split)
        except CommandError as e:
            raise OperationError("split window for review", e) from e

        agent.set_pre_review_commit(head)
        agent.set_review_pane_id(pane_id)
        if snap.status != AgentStatus.CONFLICTS:
            agent.set_status(AgentStatus.REVIEWING)
        self.store.mark_dirty()
        logger.info(f"Review opened for {agent_id} in {pane_id}")
        return pane_id

    # --- merge ---

    def merge_agent(self, agent_id: str, delete_branch: bool = True, remove_worktree: bool = True) -> MergeResult:
        """
        Merge an agent's branch into its base branch.

        Base is merged into the agent's branch first, inside the agent's
        worktree, so a clean result can always be fast-forwarded onto base.

        Returns:
            MergeResult: success, conflict with files, or error
        """
        result = self._merge_agent(agent_id, delete_branch, remove_worktree)
        self._notify(result)
        return result

    def _merge_agent(self, agent_id: str, delete_branch: bool, remove_worktree: bool) -> MergeResult:
        agent = self.store.get(agent_id)
        if agent is None:
            return MergeResult(agent_id, error=f"agent {agent_id} not found")

        status = agent.get_status()
        if status in UNMERGEABLE_STATUSES:
            return MergeResult(agent_id, error=f"agent {agent_id} cannot be merged while {status.value}")

        agent.set_merge_preferences(delete_branch, remove_worktree)

        try:
            dirty = self.git_manager.has_changes(agent.worktree_path)
        except CommandError as e:
            return MergeResult(agent_id, error=f"check worktree: {e}")
        if dirty:
            return MergeResult(agent_id, error="uncommitted changes in worktree, commit or discard them first")

        try:
            outcome = self.git_manager.merge(agent.worktree_path, agent.base_branch)
        except CommandError as e:
            return MergeResult(agent_id, error=f"merge: {e}")

        if outcome == MergeOutcome.CONFLICT:
            agent.set_status(AgentStatus.CONFLICTS)
            self.store.mark_dirty()
            try:
                files = self.git_manager.conflict_files(agent.worktree_path)
            except CommandError as e:
                logger.warning(f"Could not list conflicted files for {agent_id}: {e}")
                files = []
            logger.info(f"Merge of {agent_id} conflicts in {len(files)} file(s)")
            return MergeResult(agent_id, conflict=True, conflict_files=files)

        try:
            self._fast_forward_base(agent)
        except OperationError as e:
            return MergeResult(agent_id, error=str(e))

        logger.info(f"Merge completed: {agent_id} {agent.branch} -> {agent.base_branch}")
        self._cleanup_after_merge(agent)
        return MergeResult(agent_id, success=True)

    def _fast_forward_base(self, agent: Agent) -> str:
        """
        Move the base branch to the agent's HEAD.

        Returns:
            str: The commit base now points at

        Raises:
            OperationError: if base cannot be fast-forwarded
        """
        try:
            head = self.git_manager.head_commit(agent.worktree_path)
            if not self.git_manager.is_ancestor(agent.base_branch, head):
                raise GitError(['git', 'merge-base', '--is-ancestor', agent.base_branch, head],
                               message=f"{agent.base_branch} is not an ancestor of {agent.branch}")
            base_worktree = self.git_manager.worktree_for_branch(agent.base_branch)
            if base_worktree:
                self.git_manager.merge_ff_only(base_worktree, agent.branch)
            else:
                self.git_manager.update_branch_ref(agent.base_branch, head)
        except CommandError as e:
            raise OperationError("fast-forward base", e) from e
        return head

    def _cleanup_after_merge(self, agent: Agent) -> None:
        snap = agent.snapshot()
        if snap.tmux_pane_id:
            self.pane_monitor.remove(snap.tmux_pane_id)
        if snap.merge_remove_worktree:
            if snap.tmux_window:
                self._best_effort(f"kill window {snap.tmux_window}",
                                  self.tmux_controller.kill_window, snap.tmux_window)
            if snap.worktree_path:
                self._best_effort(f"remove worktree {snap.worktree_path}",
                                  self.git_manager.remove_worktree, snap.worktree_path)
        if snap.merge_delete_branch and snap.branch:
            self._best_effort(f"delete branch {snap.branch}",
                              self.git_manager.delete_branch, snap.branch)
        self.store.remove(agent.id)
        logger.info(f"Agent cleaned up after merge: {agent.id} "
                    f"(remove_worktree={snap.merge_remove_worktree}, delete_branch={snap.merge_delete_branch})")
        self.persistence.save_agents(self.store)

    # --- preview ---

    def get_preview_agent_id(self) -> str:
        with self._preview_lock:
            if self._preview_slot == PreviewSlot.ACTIVE and self._preview is not None:
                return self._preview.agent_id
            return ""

    def preview_agent(self, agent_id: str) -> None:
        """
        Check out a disposable preview/<id> branch in the main worktree.

        The branch starts from the agent's base and merges the agent's
        branch in, plus the agent's uncommitted changes if any. Any failure
        restores the main worktree before the error is raised.

        Raises:
            PreviewActiveError: if another preview is starting or active
            PreconditionError: if the agent or main worktree does not allow it
            OperationError, MergeConflictError: if git failed; nothing is left behind
        """
        with self._preview_lock:
            if self._preview_slot != PreviewSlot.IDLE:
                raise PreviewActiveError(self._preview_claimant or None)
            self._preview_slot = PreviewSlot.CLAIMING
            self._preview_claimant = agent_id

        try:
            record = self._start_preview(agent_id)
        except Exception as e:
            with self._preview_lock:
                self._preview_slot = PreviewSlot.IDLE
                self._preview_claimant = ""
            if not isinstance(e, PreconditionError):
                self._notify(PreviewFailed(agent_id, error=str(e)))
            raise

        agent = self.store.get(agent_id)
        if agent is not None:
            agent.set_status(AgentStatus.PREVIEWING)
            self.store.mark_dirty()

        with self._preview_lock:
            self._preview = record
            self._preview_slot = PreviewSlot.ACTIVE
        self.persistence.save_preview(record)
        self.persistence.save_agents(self.store)

        logger.info(f"Preview started: {agent_id} on {PREVIEW_BRANCH_PREFIX}{agent_id} "
                    f"(previous branch {record.prev_branch})")
        self._notify(PreviewStarted(agent_id))

    def _start_preview(self, agent_id: str) -> PreviewRecord:
        agent = self._get_agent(agent_id)
        snap = agent.snapshot()
        if snap.status not in REVIEWABLE_STATUSES:
            raise NotReviewableError(f"agent {agent_id} is not reviewable (status: {snap.status.value})")

        try:
            main_dirty = self.git_manager.has_changes(self.repo_path)
        except CommandError as e:
            raise OperationError("check main worktree", e) from e
        if main_dirty:
            raise UncommittedChangesError("main worktree has uncommitted changes, commit or stash them first")

        try:
            prev_branch = self.git_manager.current_branch(self.repo_path)
            if prev_branch == 'HEAD':
                prev_branch = self.git_manager.head_commit(self.repo_path)
        except CommandError as e:
            raise OperationError("get current branch", e) from e

        preview_branch = PREVIEW_BRANCH_PREFIX + agent_id
        try:
            self.git_manager.create_branch(preview_branch, snap.base_branch)
        except CommandError as e:
            raise OperationError("create preview branch", e) from e

        try:
            self.git_manager.checkout_branch(preview_branch, self.repo_path)
        except CommandError as e:
            self._best_effort(f"delete branch {preview_branch}", self.git_manager.delete_branch, preview_branch)
            raise OperationError("checkout preview branch", e) from e

        try:
            self._fill_preview(snap)
        except Exception:
            self._rollback_preview(prev_branch, preview_branch, discard=True)
            raise

        return PreviewRecord(agent_id=agent_id, prev_branch=prev_branch, prev_status=snap.status)

    def _fill_preview(self, snap: AgentSnapshot) -> None:
        """Merge the agent's branch and uncommitted work into the checked-out preview branch."""
        try:
            outcome = self.git_manager.merge(self.repo_path, snap.branch)
        except CommandError as e:
            raise OperationError("merge agent branch", e) from e
        if outcome == MergeOutcome.CONFLICT:
            self._best_effort("abort preview merge", self.git_manager.merge_abort, self.repo_path)
            raise MergeConflictError(
                f"merge conflicts between {snap.base_branch} and {snap.branch}, cannot preview")

        try:
            if self.git_manager.has_changes(snap.worktree_path):
                self.git_manager.copy_uncommitted_changes(snap.worktree_path, self.repo_path)
        except (CommandError, OSError) as e:
            raise OperationError("copy uncommitted changes", e) from e

    def _rollback_preview(self, prev_branch: str, preview_branch: str, discard: bool = False) -> None:
        if discard:
            self._best_effort("discard preview changes", self.git_manager.discard_changes, self.repo_path)
        self._best_effort(f"checkout {prev_branch}", self.git_manager.checkout_branch, prev_branch, self.repo_path)
        self._best_effort(f"delete branch {preview_branch}", self.git_manager.delete_branch, preview_branch)

    def stop_preview(self) -> None:
        """
        End the active preview and restore the main worktree.

        Raises:
            NoActivePreviewError: if no preview is active
            OperationError: if the previous branch could not be checked out;
                the preview stays active
        """
        with self._preview_lock:
            if self._preview_slot != PreviewSlot.ACTIVE or self._preview is None:
                raise NoActivePreviewError()
            record = self._preview
            self._preview_slot = PreviewSlot.CLAIMING

        try:
            self._restore_main_worktree(record, strict=True)
        except OperationError as e:
            with self._preview_lock:
                self._preview_slot = PreviewSlot.ACTIVE
            self._notify(PreviewFailed(record.agent_id, error=str(e)))
            raise

        self._finish_preview(record)
        logger.info(f"Preview stopped: {record.agent_id}")
        self._notify(PreviewStopped(record.agent_id))

    def cleanup_preview(self) -> bool:
        """
        Undo any active or persisted preview. Runs at most once until reset.

        Safe from shutdown, signal handling and startup recovery alike;
        failures are logged, not raised.

        Returns:
            bool: True if a preview was cleaned up
        """
        with self._preview_cleanup_lock:
            if self._preview_cleanup_done:
                return False
            self._preview_cleanup_done = True

        with self._preview_lock:
            if self._preview_slot == PreviewSlot.IDLE:
                persisted = self.persistence.load_preview()
                if persisted is None:
                    return False
                self._preview = persisted
                self._preview_claimant = persisted.agent_id
                self._preview_slot = PreviewSlot.ACTIVE
            if self._preview_slot != PreviewSlot.ACTIVE or self._preview is None:
                return False
            record = self._preview
            self._preview_slot = PreviewSlot.CLAIMING

        self._restore_main_worktree(record, strict=False)
        self._finish_preview(record)
        logger.info(f"Preview cleaned up: {record.agent_id}")
        self._notify(PreviewStopped(record.agent_id))
        return True

    def reset_preview_cleanup(self) -> None:
        """Re-arm cleanup_preview after its startup run so shutdown can run it again."""
        with self._preview_cleanup_lock:
            self._preview_cleanup_done = False

    def _restore_main_worktree(self, record: PreviewRecord, strict: bool) -> None:
        preview_branch = PREVIEW_BRANCH_PREFIX + record.agent_id
        try:
            if self.git_manager.has_changes(self.repo_path):
                self.git_manager.discard_changes(self.repo_path)
        except CommandError as e:
            logger.warning(f"Discarding preview changes failed: {e}")

        try:
            self.git_manager.checkout_branch(record.prev_branch, self.repo_path)
        except CommandError as e:
            if strict:
                raise OperationError("checkout previous branch", e) from e
            logger.error(f"Cleanup: failed to checkout previous branch {record.prev_branch}: {e}")

        try:
            if self.git_manager.branch_exists(preview_branch):
                self.git_manager.delete_branch(preview_branch)
        except CommandError as e:
            logger.warning(f"Failed to delete preview branch {preview_branch}: {e}")

    def _finish_preview(self, record: PreviewRecord) -> None:
        agent = self.store.get(record.agent_id)
        if agent is not None and agent.compare_and_set_status(AgentStatus.PREVIEWING, record.prev_status):
            self.store.mark_dirty()
        with self._preview_lock:
            self._preview = None
            self._preview_claimant = ""
            self._preview_slot = PreviewSlot.IDLE
        self.persistence.clear_preview()
        self.persistence.save_agents(self.store)

    # --- cleanup / recovery ---

    def cleanup_dead_agents(self) -> List[CleanupResult]:
        """
        Dismiss agents whose pane or worktree vanished or whose branch is merged.

        Branches are kept. Only agents whose process is no longer active and
        whose worktree is clean are checked for the merged condition.

        Returns:
            List of CleanupResult naming each dismissed agent and why
        """
        try:
            panes = self.tmux_controller.list_all_panes(self.session)
        except CommandError as e:
            raise OperationError("list tmux panes", e) from e

        results = []
        for agent in self.store.all():
            snap = agent.snapshot()
            reason = ""
            if not self._pane_in_window(panes, snap.tmux_pane_id, snap.tmux_window):
                reason = "pane gone"
            elif not Path(snap.worktree_path).exists():
                reason = "worktree missing"
            elif snap.base_branch and snap.status not in (AgentStatus.RUNNING, AgentStatus.WAITING):
                try:
                    # uncommitted work would be lost by the forced worktree removal
                    if (self.git_manager.is_branch_merged(snap.branch, snap.base_branch)
                            and not self.git_manager.has_changes(snap.worktree_path)):
                        reason = "branch merged"
                except CommandError as e:
                    logger.warning(f"Merged check for {snap.id} failed: {e}")

            if not reason:
                continue
            try:
                self.dismiss_agent(snap.id, delete_branch=False)
            except AgentNotFoundError:
                continue
            results.append(CleanupResult(agent_name=snap.id, reason=reason))
            logger.info(f"Cleaned up agent {snap.id}: {reason}")

        self._notify(CleanupReport(results=results))
        return results

    def recover_agents(self) -> int:
        """
        Re-admit persisted agents whose pane and worktree still exist.

        Also restores persisted preview metadata.

        Returns:
            int: Number of agents recovered
        """
        try:
            persisted = self.persistence.load_agents()
        except Exception as e:
            logger.error(f"Failed to load state: {e}")
            persisted = []

        panes: Optional[Dict[str, PaneInfo]]
        try:
            panes = self.tmux_controller.list_all_panes(self.session)
        except CommandError as e:
            logger.warning(f"Could not list panes of {self.session}: {e}")
            panes = None

        recovered = 0
        for record in persisted:
            if self.store.get(record.id) is not None:
                continue
            if panes is not None:
                pane_alive = self._pane_in_window(panes, record.tmux_pane_id, record.tmux_window)
            else:
                try:
                    pane_alive = self.tmux_controller.pane_exists_in_window(record.tmux_window, record.tmux_pane_id)
                except CommandError:
                    pane_alive = False
            if not pane_alive:
                logger.info(f"Not recovering {record.id}: pane {record.tmux_pane_id} gone")
                continue
            if not record.worktree_path or not Path(record.worktree_path).is_dir():
                logger.info(f"Not recovering {record.id}: worktree {record.worktree_path} missing")
                continue

            self.store.add(record.to_agent())
            recovered += 1
            logger.info(f"Recovered agent {record.id} on {record.branch} ({record.status.value})")

        if recovered:
            logger.info(f"Agent recovery complete: {recovered} of {len(persisted)}")

        preview = self.persistence.load_preview()
        if preview is not None:
            with self._preview_lock:
                if self._preview_slot == PreviewSlot.IDLE:
                    self._preview = preview
                    self._preview_claimant = preview.agent_id
                    self._preview_slot = PreviewSlot.ACTIVE
                    logger.info(f"Recovered preview of {preview.agent_id} (previous branch {preview.prev_branch})")
        return recovered

    # --- monitor loop ---

    @staticmethod
    def _pane_in_window(panes: Dict[str, PaneInfo], pane_id: str, window_id: str) -> bool:
        info = panes.get(pane_id) if pane_id else None
        return info is not None and info.window_id == window_id

    def monitor_tick(self) -> None:
        """
        One pass of the monitor loop over every agent.

        A failure for one agent is logged and never stops the others; a
        timed-out pane listing skips the whole tick.
        """
        try:
            panes = self.tmux_controller.list_all_panes(self.session)
        except CommandTimeout as e:
            logger.warning(f"Skipping monitor tick: {e}")
            return
        except CommandError as e:
            logger.warning(f"Skipping monitor tick, cannot list panes: {e}")
            return

        for agent in self.store.all():
            try:
                self._monitor_agent(agent, panes)
            except Exception as e:
                logger.exception(f"Monitoring agent {agent.id} failed: {e}")

        self.persistence.save_if_dirty(self.store)

    def _monitor_agent(self, agent: Agent, panes: Dict[str, PaneInfo]) -> None:
        snap = agent.snapshot()
        status = snap.status

        if status in (AgentStatus.REVIEWING, AgentStatus.CONFLICTS) and snap.review_pane_id:
            info = panes.get(snap.review_pane_id)
            closed = info is None or info.window_id != snap.tmux_window or info.dead
            if closed:
                if info is not None:
                    self._best_effort(f"kill review pane {snap.review_pane_id}",
                                      self.tmux_controller.kill_pane, snap.review_pane_id)
                self._handle_review_closed(agent, status)
            return

        if status not in MONITORED_STATUSES:
            return

        info = panes.get(snap.tmux_pane_id)
        if info is None or info.window_id != snap.tmux_window:
            self.pane_monitor.remove(snap.tmux_pane_id)
            if self._transition(agent, status, AgentStatus.DISMISSED, "pane gone"):
                logger.info(f"Agent {agent.id} pane {snap.tmux_pane_id} gone, marked dismissed")
                self._notify(AgentGone(agent.id))
            return

        if info.dead:
            self._handle_agent_finished(agent, status, info.exit_code)
            return

        if self._apply_hook_status(agent, status):
            return

        pane_status = self.pane_monitor.get_pane_status(snap.tmux_pane_id, dead=False)
        self._apply_activity(agent, status, pane_status.waiting_for, "capture")

    def _apply_hook_status(self, agent: Agent, status: AgentStatus) -> bool:
        """Apply a fresh hook status. False means fall back to pane capture."""
        fresh = hook_status.read_fresh_status(agent.worktree_path, self.config.monitor.status_freshness)
        if fresh is None:
            return False

        if fresh.status == hook_status.STATUS_RUNNING:
            self._apply_activity(agent, status, "", "hook")
        elif fresh.status == hook_status.STATUS_WAITING_PERMISSION:
            self._apply_activity(agent, status, WAITING_PERMISSION, "hook")
        elif fresh.status == hook_status.STATUS_WAITING_INPUT:
            agent.set_ever_active(True)
            self._handle_agent_idle(agent, status, WAITING_INPUT)
        elif fresh.status in (hook_status.STATUS_IDLE, hook_status.STATUS_STOPPED):
            if agent.get_ever_active():
                reason = WAITING_INPUT if fresh.status == hook_status.STATUS_IDLE else ""
                self._handle_agent_idle(agent, status, reason)
        else:
            return False
        return True

    def _apply_activity(self, agent: Agent, status: AgentStatus, waiting_for: str, source: str) -> None:
        if not waiting_for:
            if not agent.get_ever_active():
                agent.set_ever_active(True)
                self.store.mark_dirty()
            if status != AgentStatus.RUNNING and self._transition(agent, status, AgentStatus.RUNNING, source):
                agent.set_waiting_for("")
        elif waiting_for == WAITING_PERMISSION:
            if not agent.get_ever_active():
                agent.set_ever_active(True)
                self.store.mark_dirty()
            if status == AgentStatus.WAITING and agent.get_waiting_for() == WAITING_PERMISSION:
                return
            if status == AgentStatus.WAITING or self._transition(agent, status, AgentStatus.WAITING, source):
                agent.set_waiting_for(WAITING_PERMISSION)
                self.store.mark_dirty()
                self._notify(AgentWaiting(agent.id, waiting_for=WAITING_PERMISSION))
        elif agent.get_ever_active():
            self._handle_agent_idle(agent, status, waiting_for)

    def _handle_agent_idle(self, agent: Agent, status: AgentStatus, reason: str) -> None:
        # reviewed only ends through merge or an explicit user action
        if status == AgentStatus.REVIEWED:
            return
        has_changes = self.git_manager.has_changes(agent.worktree_path)
        target = AgentStatus.REVIEW_READY if has_changes else AgentStatus.DONE
        if status == target:
            return
        if not self._transition(agent, status, target, "idle"):
            return
        agent.set_waiting_for(reason)
        agent.set_finished(agent.get_exit_code(), datetime.now())
        logger.info(f"Agent {agent.id} idle {'with' if has_changes else 'without'} changes")
        self._notify(AgentFinished(agent.id, exit_code=agent.get_exit_code(), has_changes=has_changes))

    def _handle_agent_finished(self, agent: Agent, status: AgentStatus, exit_code: int) -> None:
        first = agent.set_finished(exit_code, datetime.now())
        has_changes = self.git_manager.has_changes(agent.worktree_path)
        target = AgentStatus.REVIEW_READY if has_changes else AgentStatus.DONE
        changed = status != target and self._transition(agent, status, target, "exited")
        if changed:
            agent.set_waiting_for("")
        if first:
            self.store.mark_dirty()
        if first or changed:
            logger.info(f"Agent {agent.id} finished (exit {agent.get_exit_code()}, changes={has_changes})")
            self._notify(AgentFinished(agent.id, exit_code=agent.get_exit_code(), has_changes=has_changes))

    def _handle_review_closed(self, agent: Agent, status: AgentStatus) -> None:
        agent.set_review_pane_id("")
        self.store.mark_dirty()

        if status == AgentStatus.REVIEWING:
            try:
                head = self.git_manager.head_commit(agent.worktree_path)
            except CommandError as e:
                logger.error(f"Failed to get head after review of {agent.id}: {e}")
                self._transition(agent, status, AgentStatus.REVIEW_READY, "review closed")
                return
            new_commits = head != agent.get_pre_review_commit()
            target = AgentStatus.REVIEWED if new_commits else AgentStatus.REVIEW_READY
            if self._transition(agent, status, target, "review closed"):
                self._notify(ReviewClosed(agent.id, new_commits=new_commits))
            return

        if status == AgentStatus.CONFLICTS:
            if self.git_manager.has_changes(agent.worktree_path):
                # Still unresolved; stays in conflicts until the next review.
                return
            try:
                self._fast_forward_base(agent)
            except OperationError as e:
                logger.error(f"Fast-forward after conflict resolution of {agent.id} failed: {e}")
                self._notify(MergeResult(agent.id, error=str(e)))
                return
            logger.info(f"Conflicts resolved: {agent.id} {agent.branch} -> {agent.base_branch}")
            self._cleanup_after_merge(agent)
            self._notify(MergeResult(agent.id, success=True))

    def start_monitor(self, stop_event: threading.Event) -> None:
        """
        Run monitor ticks every monitor.interval seconds until stop_event is set.

        On stop a final forced save and the preview cleanup run once.
        """
        interval = self.config.monitor.interval
        logger.info(f"Monitor started for session {self.session} (interval {interval}s)")
        try:
            while not stop_event.wait(interval):
                self.monitor_tick()
        finally:
            logger.info("Monitor stopped")
            self.shutdown()

    def shutdown(self) -> None:
        """Final forced state write plus preview cleanup."""
        self.cleanup_preview()
        self.persistence.save_if_dirty(self.store, force=True)
