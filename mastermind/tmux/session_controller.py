"""
Tmux Session Controller Module

Window and pane operations against a running tmux server. Each call is a
single blocking tmux invocation bounded by a timeout; the controller keeps
no state of its own beyond that timeout.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..utils.system_utils import DEFAULT_TIMEOUT, CommandError, CommandTimeout, SystemUtils

logger = logging.getLogger(__name__)

MIN_TMUX_VERSION = (3, 0)


class TmuxError(CommandError):
    """A tmux command failed."""


@dataclass
class PaneInfo:
    """Liveness of one pane from a batched listing."""
    pane_id: str
    window_id: str
    dead: bool = False
    exit_code: int = 0


class TmuxSessionController:
    """
    Controls agent windows and panes inside one tmux server.

    Provides functionality for:
    - Window creation bound to a directory with environment overrides
    - Pane splitting, killing and key injection
    - Window and pane selection
    - Batched pane liveness listing for the monitor loop
    - Pane content capture
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize tmux session controller.

        Args:
            timeout: Seconds each tmux invocation may take
        """
        self.timeout = timeout

    def _run(self, args: List[str], check: bool = True):
        return SystemUtils.run_command(['tmux'] + args, timeout=self.timeout,
                                       check=check, error_class=TmuxError)

    # --- windows and panes ---

    def new_window(self,
                   session: str,
                   name: str,
                   directory: str,
                   command: List[str],
                   env: Optional[Dict[str, str]] = None) -> str:
        """
        Create a window running a command and return its pane ID.

        The pane keeps its content after the command exits (remain-on-exit)
        so the exit code stays observable.

        Args:
            session: Target session name
            name: Window name
            directory: Working directory of the new pane
            command: Command and arguments to run
            env: Environment overrides; empty values blank the variable

        Returns:
            str: The new pane ID (e.g. "%12")
        """
        args = ['new-window', '-d', '-t', f'{session}:', '-n', name, '-c', directory,
                '-P', '-F', '#{pane_id}']
        for key, value in (env or {}).items():
            args += ['-e', f'{key}={value}']
        args += command
        result = self._run(args)
        pane_id = result.stdout.strip()
        if not pane_id:
            raise TmuxError(['tmux'] + args, message="tmux new-window returned no pane id")

        try:
            self._run(['set-option', '-p', '-t', pane_id, 'remain-on-exit', 'on'])
        except CommandError as e:
            logger.warning(f"Could not set remain-on-exit on {pane_id}: {e}")

        logger.debug(f"Created window {name} in {session} with pane {pane_id}")
        return pane_id

    def split_window(self, target_pane: str, directory: str, command: List[str],
                     horizontal: bool = True, percent: int = 80) -> str:
        """
        Split a pane and return the new pane's ID.

        Args:
            target_pane: Pane to split
            directory: Working directory of the new pane
            command: Command and arguments to run in the new pane
            horizontal: Side-by-side split when True, stacked otherwise
            percent: Size of the new pane in percent
        """
        args = ['split-window', '-h' if horizontal else '-v', '-l', f'{percent}%',
                '-t', target_pane, '-c', directory, '-P', '-F', '#{pane_id}'] + list(command)
        result = self._run(args)
        return result.stdout.strip()

    def kill_window(self, target: str) -> None:
        self._run(['kill-window', '-t', target])

    def kill_pane(self, pane_id: str) -> None:
        self._run(['kill-pane', '-t', pane_id])

    def send_keys(self, pane_id: str, *keys: str) -> None:
        """Send tmux key names or literal strings to a pane."""
        self._run(['send-keys', '-t', pane_id] + list(keys))

    def select_window(self, target: str) -> None:
        self._run(['select-window', '-t', target])

    def select_pane(self, pane_id: str) -> None:
        self._run(['select-pane', '-t', pane_id])

    # --- queries ---

    def pane_exists_in_window(self, window_id: str, pane_id: str) -> bool:
        """True if the pane is listed in the window; a failed listing means gone."""
        try:
            result = self._run(['list-panes', '-t', window_id, '-F', '#{pane_id}'])
        except CommandTimeout:
            raise
        except CommandError:
            return False
        return pane_id in result.stdout.split()

    def list_all_panes(self, session: str) -> Dict[str, PaneInfo]:
        """
        List every pane of a session with its liveness in one call.

        Returns:
            Dict mapping pane ID to PaneInfo
        """
        result = self._run(['list-panes', '-s', '-t', session, '-F',
                            '#{pane_id}|#{window_id}|#{pane_dead}|#{pane_dead_status}'])
        panes: Dict[str, PaneInfo] = {}
        for line in result.stdout.splitlines():
            parts = line.strip().split('|')
            if len(parts) < 3 or not parts[0]:
                continue
            exit_code = 0
            if len(parts) > 3 and parts[3].strip():
                try:
                    exit_code = int(parts[3])
                except ValueError:
                    exit_code = 0
            panes[parts[0]] = PaneInfo(
                pane_id=parts[0],
                window_id=parts[1],
                dead=parts[2] == '1',
                exit_code=exit_code,
            )
        return panes

    def window_id_for_pane(self, pane_id: str) -> str:
        result = self._run(['display-message', '-p', '-t', pane_id, '#{window_id}'])
        return result.stdout.strip()

    def pane_dead_status(self, pane_id: str) -> Tuple[bool, int]:
        """Return (dead, exit_code) for a single pane."""
        result = self._run(['display-message', '-p', '-t', pane_id,
                            '#{pane_dead}|#{pane_dead_status}'])
        dead_flag, _, status = result.stdout.strip().partition('|')
        dead = dead_flag == '1'
        exit_code = 0
        if dead and status:
            try:
                exit_code = int(status)
            except ValueError:
                exit_code = 0
        return dead, exit_code

    def capture_pane(self, pane_id: str) -> str:
        """Capture the visible content of a pane."""
        result = self._run(['capture-pane', '-p', '-t', pane_id])
        return result.stdout

    def current_session(self) -> str:
        result = self._run(['display-message', '-p', '#{session_name}'])
        return result.stdout.strip()

    def session_exists(self, session: str) -> bool:
        result = self._run(['has-session', '-t', session], check=False)
        return result.returncode == 0

    def version(self) -> Optional[Tuple[int, int]]:
        """Return the tmux (major, minor) version, or None if unparseable."""
        result = self._run(['-V'])
        match = re.search(r'(\d+)\.(\d+)', result.stdout)
        if not match:
            return None
        return int(match.group(1)), int(match.group(2))

    def check_version(self) -> bool:
        """True if tmux is at least MIN_TMUX_VERSION."""
        try:
            version = self.version()
        except CommandError as e:
            logger.warning(f"Could not determine tmux version: {e}")
            return False
        if version is None:
            return False
        return version >= MIN_TMUX_VERSION
