"""
Hook installer.

Sets up an agent worktree so the controlling process reports its state
through the `.mastermind-status` sidecar file: a small shell hook script, a
settings.local.json that registers it, and git exclude entries that keep
both out of the agent's uncommitted changes.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

from ..utils.file_utils import FileUtils
from ..utils.system_utils import DEFAULT_TIMEOUT, SystemUtils
from .status import STATUS_FILE_NAME

logger = logging.getLogger(__name__)

HOOK_SCRIPT_NAME = 'mastermind-status.sh'
HOOK_COMMAND = f'"$CLAUDE_PROJECT_DIR"/.claude/hooks/{HOOK_SCRIPT_NAME}'

EXCLUDE_ENTRIES = [
    '.claude/settings.local.json',
    '.claude/hooks/',
    STATUS_FILE_NAME,
]

HOOK_SCRIPT = """#!/bin/sh
set -e

# Hook event JSON arrives on stdin
INPUT=$(cat)
EVENT="$CLAUDE_HOOK_EVENT_NAME"

STATUS=""
case "$EVENT" in
  PreToolUse|PostToolUse|SessionStart)
    STATUS="running"
    ;;
  Notification)
    TYPE=$(echo "$INPUT" | grep -o '"type"[[:space:]]*:[[:space:]]*"[^"]*"' | head -1 | sed 's/.*"type"[[:space:]]*:[[:space:]]*"\\([^"]*\\)".*/\\1/')
    case "$TYPE" in
      permission_prompt)
        STATUS="waiting_permission"
        ;;
      idle_prompt)
        STATUS="waiting_input"
        ;;
      *)
        exit 0
        ;;
    esac
    ;;
  Stop)
    STATUS="idle"
    ;;
  SessionEnd)
    STATUS="stopped"
    ;;
  *)
    exit 0
    ;;
esac

TS=$(date +%s)
STATUS_FILE="${CLAUDE_WORKING_DIRECTORY:-.}/.mastermind-status"
printf '{"status":"%s","ts":%s}\\n' "$STATUS" "$TS" > "$STATUS_FILE"
"""


def _hook_entry(matcher: Optional[str] = None) -> dict:
    entry = {'hooks': [{'type': 'command', 'command': HOOK_COMMAND}]}
    if matcher:
        entry = {'matcher': matcher, **entry}
    return entry


def build_settings(agent_teams: bool = False, teammate_mode: str = "") -> dict:
    """The settings.local.json document registering the status hook."""
    settings = {
        'hooks': {
            'PreToolUse': [_hook_entry()],
            'PostToolUse': [_hook_entry()],
            'Notification': [_hook_entry('permission_prompt'), _hook_entry('idle_prompt')],
            'Stop': [_hook_entry()],
            'SessionStart': [_hook_entry()],
            'SessionEnd': [_hook_entry()],
        },
    }
    if agent_teams:
        settings['env'] = {'CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS': '1'}
        if teammate_mode:
            settings['teammateMode'] = teammate_mode
    return settings


def git_common_dir(worktree_path: Union[str, Path], timeout: float = DEFAULT_TIMEOUT) -> Path:
    """The git directory shared by every worktree of the repository."""
    worktree_path = Path(worktree_path)
    result = SystemUtils.run_command(['git', 'rev-parse', '--git-common-dir'],
                                     cwd=worktree_path, timeout=timeout)
    common = Path(result.stdout.strip())
    if not common.is_absolute():
        common = worktree_path / common
    return common


def ensure_git_exclude(worktree_path: Union[str, Path],
                       entries: Iterable[str] = EXCLUDE_ENTRIES,
                       timeout: float = DEFAULT_TIMEOUT) -> List[str]:
    """
    Append missing entries to the repository's info/exclude.

    Returns:
        The entries that were added
    """
    exclude_path = git_common_dir(worktree_path, timeout) / 'info' / 'exclude'
    exclude_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        content = exclude_path.read_text(encoding='utf-8')
    except FileNotFoundError:
        content = ""
    present = {line.strip() for line in content.splitlines()}
    to_add = [entry for entry in entries if entry not in present]
    if not to_add:
        return []

    with open(exclude_path, 'a', encoding='utf-8') as f:
        if content and not content.endswith('\n'):
            f.write('\n')
        for entry in to_add:
            f.write(entry + '\n')
    logger.debug(f"Added {to_add} to {exclude_path}")
    return to_add


def install_hooks(worktree_path: Union[str, Path],
                  agent_teams: bool = False,
                  teammate_mode: str = "",
                  timeout: float = DEFAULT_TIMEOUT) -> None:
    """
    Write the hook script, its settings and the git exclude entries.

    Raises:
        OSError: if a file could not be written
        CommandError: if the git directory could not be located
    """
    worktree_path = Path(worktree_path)
    hooks_dir = worktree_path / '.claude' / 'hooks'
    hooks_dir.mkdir(parents=True, exist_ok=True)

    FileUtils.write_text_atomic(hooks_dir / HOOK_SCRIPT_NAME, HOOK_SCRIPT, mode=0o755)
    FileUtils.write_text_atomic(
        worktree_path / '.claude' / 'settings.local.json',
        json.dumps(build_settings(agent_teams, teammate_mode), indent=2) + '\n',
    )
    ensure_git_exclude(worktree_path, timeout=timeout)
    logger.info(f"Installed status hooks in {worktree_path}")
