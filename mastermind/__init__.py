"""
mastermind - parallel coding agents in git worktrees and tmux

Runs several coding-assistant agents side by side, each on its own branch in
its own git worktree and tmux window, and drives them through a lifecycle:

- Agent state machine with hook-first, capture-fallback activity detection
- Review in a split pane, merge back into the base branch
- Preview of one agent's work checked out in the main worktree
- Crash-safe persistence and recovery of agent records
"""

__version__ = "0.1.0"

from .core.agent import Agent, AgentStatus, Store
from .core.orchestrator import Orchestrator
from .core.persistence import StatePersistence
from .git.worktree_manager import WorktreeManager
from .tmux.pane_monitor import PaneMonitor
from .tmux.session_controller import TmuxSessionController
from .utils.config_loader import ConfigLoader, MastermindConfig

__all__ = [
    'Agent', 'AgentStatus', 'Store',
    'Orchestrator',
    'StatePersistence',
    'WorktreeManager',
    'PaneMonitor',
    'TmuxSessionController',
    'ConfigLoader', 'MastermindConfig',
    'create_orchestrator',
    '__version__',
]


def get_version():
    """Get the current version of mastermind."""
    return __version__


def create_orchestrator(repo_path, session, config=None, **kwargs):
    """
    Create a new Orchestrator for one repository and tmux session.

    Args:
        repo_path: Main repository checkout
        session: tmux session holding the agent windows
        config: Loaded MastermindConfig, defaults when omitted
        **kwargs: Optional collaborators to inject (for testing or customization)

    Returns:
        Orchestrator: Configured orchestrator instance
    """
    return Orchestrator(repo_path=repo_path, session=session, config=config, **kwargs)
