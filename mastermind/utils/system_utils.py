"""
System Utilities Module

Process execution helpers shared by the tmux and git collaborators.
Every external command runs blocking with a bounded timeout; callers decide
whether a failure is fatal or simply retried on the next monitor tick.
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class CommandError(Exception):
    """An external command failed or could not be started."""

    def __init__(self, command: List[str], returncode: Optional[int] = None,
                 stderr: str = "", message: Optional[str] = None):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        if message is None:
            message = f"{' '.join(self.command)} failed"
            if returncode is not None:
                message += f" (exit {returncode})"
            if self.stderr:
                message += f": {self.stderr}"
        super().__init__(message)


class CommandTimeout(CommandError):
    """An external command did not finish within its timeout."""

    def __init__(self, command: List[str], timeout: float):
        self.timeout = timeout
        super().__init__(command, message=f"{' '.join(command)} timed out after {timeout}s")


class SystemUtils:
    """
    System-level utilities and process management.
    """

    @staticmethod
    def run_command(command: List[str],
                    cwd: Optional[Union[str, Path]] = None,
                    timeout: Optional[float] = DEFAULT_TIMEOUT,
                    env: Optional[Dict[str, str]] = None,
                    check: bool = True,
                    input: Optional[Union[str, bytes]] = None,
                    text: bool = True,
                    error_class=CommandError) -> subprocess.CompletedProcess:
        """
        Run a command and return the completed process.

        Args:
            command: Command and arguments as list
            cwd: Working directory for command
            timeout: Command timeout in seconds (None waits forever)
            env: Full environment for the child, defaults to ours
            check: Raise on non-zero exit
            input: Data fed to the child on stdin, bytes when text is False
            text: Decode output as UTF-8 (undecodable bytes replaced);
                False returns raw bytes
            error_class: CommandError subclass raised on failure

        Returns:
            subprocess.CompletedProcess with str (or bytes) stdout/stderr

        Raises:
            CommandTimeout: if the command exceeded its timeout
            CommandError: if the command is missing or (with check) exited non-zero
        """
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                timeout=timeout,
                capture_output=True,
                text=text,
                encoding='utf-8' if text else None,
                errors='replace' if text else None,
                env=env,
                input=input,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {timeout}s: {' '.join(command)}")
            raise CommandTimeout(command, timeout)
        except FileNotFoundError:
            raise error_class(command, 127, f"command not found: {command[0]}")
        except OSError as e:
            raise error_class(command, None, str(e))

        if check and result.returncode != 0:
            output = result.stderr or result.stdout
            if isinstance(output, bytes):
                output = output.decode('utf-8', errors='replace')
            logger.debug(f"Command failed ({result.returncode}): {' '.join(command)}: {output.strip()}")
            raise error_class(command, result.returncode, output)

        return result

    @staticmethod
    def check_command_availability(command: str) -> bool:
        """Return True if the command is on PATH."""
        return shutil.which(command) is not None

    @staticmethod
    def missing_commands(commands: List[str]) -> List[str]:
        """Return the subset of commands that are not on PATH."""
        return [cmd for cmd in commands if not SystemUtils.check_command_availability(cmd)]
