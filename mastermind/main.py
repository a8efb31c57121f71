"""
Main entry point for mastermind.

Headless command line front end over the Orchestrator: runs the monitor
loop for one repository and tmux session, shows persisted agent status and
cleans up agents whose resources have vanished.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from . import __version__, create_orchestrator
from .cli.console_output import ConsoleOutput
from .core.exceptions import MastermindError
from .core.orchestrator import Orchestrator
from .git.worktree_manager import WORKTREE_DIR_NAME
from .tmux.session_controller import MIN_TMUX_VERSION, TmuxSessionController
from .utils.config_loader import ConfigLoader
from .utils.system_utils import CommandError, SystemUtils

logger = logging.getLogger(__name__)

LOG_FILE_NAME = 'mastermind.log'
REQUIRED_COMMANDS = ['tmux', 'git']


def resolve_repo(path: Optional[str]) -> Path:
    """Return the top level of the git repository containing path (default: cwd)."""
    start = Path(path or os.getcwd()).resolve()
    result = SystemUtils.run_command(['git', 'rev-parse', '--show-toplevel'], cwd=start)
    return Path(result.stdout.strip())


def setup_logging(repo_path: Path, debug: bool = False) -> Path:
    """
    Send library logging to a file under the worktree directory.

    The terminal is reserved for rich output.
    """
    log_dir = repo_path / WORKTREE_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / LOG_FILE_NAME

    handler = logging.FileHandler(log_path, encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    root.addHandler(handler)
    return log_path


def _create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mastermind',
        description="Run coding agents in parallel git worktrees inside tmux",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--repo', '-r', type=str, help='Repository path (default: current directory)')
    parser.add_argument('--session', '-s', type=str, help='tmux session (default: the current one)')
    parser.add_argument('--config', '-c', type=str, help='Configuration file')
    parser.add_argument('--init-config', action='store_true',
                        help='Write a commented default configuration file and exit')
    parser.add_argument('--once', action='store_true', help='Run a single monitor tick and exit')
    parser.add_argument('--debug', action='store_true', help='Log at DEBUG level')
    parser.add_argument('--version', action='version', version=f'mastermind {__version__}')

    subparsers = parser.add_subparsers(dest='command')
    subparsers.add_parser('run', help='Recover agents and monitor them until interrupted')
    subparsers.add_parser('status', help='Show persisted agents')
    subparsers.add_parser('cleanup', help='Dismiss agents whose pane or worktree is gone or whose branch is merged')
    return parser


def _resolve_session(args, tmux: TmuxSessionController) -> str:
    if args.session:
        return args.session
    if not os.environ.get('TMUX'):
        raise MastermindError("not inside tmux, pass --session")
    return tmux.current_session()


def cmd_run(orchestrator: Orchestrator, output: ConsoleOutput, once: bool = False) -> int:
    orchestrator.add_notification_callback(output.notify)

    recovered = orchestrator.recover_agents()
    if recovered:
        output.info(f"Recovered {recovered} agent(s)")
    # A preview left behind by a crash is undone before monitoring starts
    orchestrator.cleanup_preview()
    orchestrator.reset_preview_cleanup()

    if once:
        try:
            orchestrator.monitor_tick()
        finally:
            orchestrator.shutdown()
        return 0

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    for name in ('SIGINT', 'SIGTERM', 'SIGHUP'):
        if hasattr(signal, name):
            signal.signal(getattr(signal, name), handle_signal)

    output.info(f"Monitoring session {orchestrator.session} (Ctrl-C to stop)")
    orchestrator.start_monitor(stop_event)
    output.info("Stopped")
    return 0


def cmd_status(orchestrator: Orchestrator, output: ConsoleOutput) -> int:
    agents = orchestrator.persistence.load_agents()
    preview = orchestrator.persistence.load_preview()
    output.show_agents(agents, preview.agent_id if preview else "")
    return 0


def cmd_cleanup(orchestrator: Orchestrator, output: ConsoleOutput) -> int:
    orchestrator.recover_agents()
    orchestrator.add_notification_callback(output.notify)
    orchestrator.cleanup_dead_agents()
    orchestrator.persistence.save_if_dirty(orchestrator.store, force=True)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the mastermind console script.

    Returns:
        Exit code (0 for success)
    """
    parser = _create_parser()
    args = parser.parse_args(argv)
    output = ConsoleOutput()

    loader = ConfigLoader(Path(args.config) if args.config else None)
    if args.init_config:
        if loader.write_default():
            output.success(f"Wrote {loader.config_path}")
        else:
            output.info(f"{loader.config_path} already exists")
        return 0

    command = args.command or 'run'

    missing = SystemUtils.missing_commands(REQUIRED_COMMANDS)
    if missing:
        output.error(f"Missing required commands: {', '.join(missing)}")
        return 1

    try:
        config = loader.load()
        repo_path = resolve_repo(args.repo)
        log_path = setup_logging(repo_path, args.debug)

        tmux = TmuxSessionController(config.monitor.command_timeout)
        if not tmux.check_version():
            required = '.'.join(str(part) for part in MIN_TMUX_VERSION)
            output.warning(f"tmux {required} or newer is recommended")

        session = _resolve_session(args, tmux)
        if not tmux.session_exists(session):
            output.error(f"tmux session {session!r} does not exist")
            return 1

        orchestrator = create_orchestrator(repo_path, session, config, tmux_controller=tmux)
        logger.info(f"mastermind {__version__} {command} in {repo_path} (session {session})")

        if command == 'status':
            return cmd_status(orchestrator, output)
        if command == 'cleanup':
            return cmd_cleanup(orchestrator, output)
        output.info(f"Logging to {log_path}")
        return cmd_run(orchestrator, output, once=args.once)

    except KeyboardInterrupt:
        output.warning("Interrupted")
        return 130
    except (MastermindError, CommandError) as e:
        output.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
