"""
Console Output Module

Rich rendering for the mastermind CLI: status messages, the agent table and
one line per orchestrator notification.
"""

from datetime import datetime
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from ..core.notifications import (
    AgentFinished,
    AgentGone,
    AgentWaiting,
    CleanupReport,
    MergeResult,
    Notification,
    PreviewFailed,
    PreviewStarted,
    PreviewStopped,
    ReviewClosed,
)
from ..core.persistence import PersistedAgent

console = Console()

STATUS_COLORS = {
    "running": "green",
    "waiting": "yellow",
    "review_ready": "cyan",
    "reviewing": "blue",
    "reviewed": "magenta",
    "previewing": "bright_blue",
    "conflicts": "red",
    "done": "dim",
    "dismissed": "dim",
}


def format_duration(seconds: float) -> str:
    """Format seconds as 1h02m, 3m05s or 12s."""
    seconds = int(max(0, seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


class ConsoleOutput:
    """
    Rich console output for the mastermind CLI.

    Features:
    - Colored status messages
    - Agent status table
    - Notification rendering for the monitor loop
    """

    def __init__(self, output: Optional[Console] = None):
        self.console = output or console

    def error(self, message: str) -> None:
        """Display error message."""
        self.console.print(f"[red]❌ {message}[/red]")

    def success(self, message: str) -> None:
        """Display success message."""
        self.console.print(f"[green]✅ {message}[/green]")

    def warning(self, message: str) -> None:
        """Display warning message."""
        self.console.print(f"[yellow]⚠️  {message}[/yellow]")

    def info(self, message: str) -> None:
        """Display info message."""
        self.console.print(f"[blue]ℹ️  {message}[/blue]")

    def agents_table(self, agents: List[PersistedAgent], preview_agent_id: str = "",
                     now: Optional[datetime] = None) -> Table:
        """Build the agent status table."""
        now = now or datetime.now()
        table = Table(title="Agents")
        table.add_column("ID", style="bold")
        table.add_column("Branch")
        table.add_column("Base")
        table.add_column("Status", justify="center")
        table.add_column("Waiting")
        table.add_column("Running", justify="right")
        table.add_column("Pane")

        for agent in agents:
            status = agent.status.value
            color = STATUS_COLORS.get(status, "dim")
            label = f"[{color}]{status}[/{color}]"
            if agent.id == preview_agent_id:
                label += " [bright_blue](preview)[/bright_blue]"

            duration = agent.accumulated_duration
            if agent.running_started_at is not None:
                duration += max(0.0, (now - agent.running_started_at).total_seconds())

            table.add_row(
                agent.id,
                agent.branch,
                agent.base_branch,
                label,
                agent.waiting_for or "-",
                format_duration(duration),
                agent.tmux_pane_id,
            )
        return table

    def show_agents(self, agents: List[PersistedAgent], preview_agent_id: str = "") -> None:
        if not agents:
            self.info("No agents")
            return
        self.console.print(self.agents_table(agents, preview_agent_id))

    def show_cleanup(self, report: CleanupReport) -> None:
        if not report.results:
            self.info("Nothing to clean up")
            return
        table = Table(title="Cleaned up agents")
        table.add_column("Agent", style="bold")
        table.add_column("Reason")
        for result in report.results:
            table.add_row(result.agent_name, result.reason)
        self.console.print(table)

    def notify(self, notification: Notification) -> None:
        """Render one notification as a single console line."""
        agent = notification.agent_id
        if isinstance(notification, AgentFinished):
            changes = "with changes" if notification.has_changes else "no changes"
            self.info(f"{agent} finished (exit {notification.exit_code}, {changes})")
        elif isinstance(notification, AgentWaiting):
            self.warning(f"{agent} is waiting for {notification.waiting_for}")
        elif isinstance(notification, AgentGone):
            self.warning(f"{agent} window is gone, marked dismissed")
        elif isinstance(notification, ReviewClosed):
            if notification.new_commits:
                self.success(f"{agent} review closed with new commits")
            else:
                self.info(f"{agent} review closed, no new commits")
        elif isinstance(notification, MergeResult):
            if notification.success:
                self.success(f"{agent} merged")
            elif notification.conflict:
                files = ", ".join(notification.conflict_files) or "unknown files"
                self.error(f"{agent} has merge conflicts: {files}")
            else:
                self.error(f"{agent} merge failed: {notification.error}")
        elif isinstance(notification, PreviewStarted):
            self.success(f"Previewing {agent}")
        elif isinstance(notification, PreviewStopped):
            self.info(f"Preview of {agent} stopped")
        elif isinstance(notification, PreviewFailed):
            self.error(f"Preview of {agent} failed: {notification.error}")
        elif isinstance(notification, CleanupReport):
            self.show_cleanup(notification)
        else:
            self.info(f"{notification.kind}: {agent}")
