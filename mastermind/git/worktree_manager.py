"""
Git Worktree Manager Module

Branch, worktree and merge operations for agent isolation. Every agent gets
its own worktree under the repository's worktree directory; the main
checkout is only touched by the preview workflow.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ..utils.system_utils import DEFAULT_TIMEOUT, CommandError, SystemUtils

logger = logging.getLogger(__name__)

WORKTREE_DIR_NAME = '.worktrees'


class GitError(CommandError):
    """A git command failed."""


class MergeOutcome(Enum):
    CLEAN = "clean"
    CONFLICT = "conflict"
    UP_TO_DATE = "up_to_date"


@dataclass
class Branch:
    name: str
    is_current: bool = False


@dataclass
class Worktree:
    path: str
    head: str = ""
    branch: str = ""   # short name, empty when detached


class WorktreeManager:
    """
    Manages git branches and worktrees for one repository.

    Features:
    - Worktrees nested under <repo>/.worktrees by branch name
    - Merge with conflict/clean/no-op reporting and abort
    - Fast-forward of a base branch with or without a checkout
    - Copying uncommitted work between checkouts
    - Worktree removal with prune and empty-directory cleanup
    """

    def __init__(self, repo_path: Union[str, Path],
                 worktree_dir: Optional[Union[str, Path]] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize worktree manager for a repository.

        Args:
            repo_path: Path to the main repository checkout
            worktree_dir: Root for agent worktrees, defaults to <repo>/.worktrees
            timeout: Seconds each git invocation may take
        """
        self.repo_path = Path(repo_path).resolve()
        self.worktree_dir = Path(worktree_dir) if worktree_dir else self.repo_path / WORKTREE_DIR_NAME
        self.timeout = timeout

    def _git(self, args: List[str], cwd: Optional[Union[str, Path]] = None,
             check: bool = True, input: Optional[Union[str, bytes]] = None, text: bool = True):
        return SystemUtils.run_command(['git'] + args, cwd=cwd or self.repo_path,
                                       timeout=self.timeout, check=check, input=input,
                                       text=text, error_class=GitError)

    # --- branches ---

    def list_branches(self) -> List[Branch]:
        result = self._git(['branch', '--format=%(HEAD)|%(refname:short)'])
        branches = []
        for line in result.stdout.splitlines():
            marker, _, name = line.partition('|')
            if name:
                branches.append(Branch(name=name.strip(), is_current=marker.strip() == '*'))
        return branches

    def branch_exists(self, branch: str) -> bool:
        result = self._git(['rev-parse', '--verify', '--quiet', f'refs/heads/{branch}'], check=False)
        return result.returncode == 0

    def create_branch(self, branch: str, base: str) -> None:
        self._git(['branch', branch, base])
        logger.debug(f"Created branch {branch} from {base}")

    def delete_branch(self, branch: str) -> None:
        self._git(['branch', '-D', branch])
        logger.debug(f"Deleted branch {branch}")

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._git(['merge-base', '--is-ancestor', ancestor, descendant], check=False)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise GitError(['git', 'merge-base', '--is-ancestor', ancestor, descendant],
                       result.returncode, result.stderr)

    def is_branch_merged(self, branch: str, base: str) -> bool:
        """True if every commit on branch is already reachable from base."""
        return self.is_ancestor(branch, base)

    def current_branch(self, directory: Optional[Union[str, Path]] = None) -> str:
        result = self._git(['rev-parse', '--abbrev-ref', 'HEAD'], cwd=directory)
        return result.stdout.strip()

    def checkout_branch(self, branch: str, directory: Optional[Union[str, Path]] = None) -> None:
        self._git(['checkout', branch], cwd=directory)

    # --- worktrees ---

    def list_worktrees(self) -> List[Worktree]:
        """Parse `git worktree list --porcelain`."""
        result = self._git(['worktree', 'list', '--porcelain'])
        worktrees: List[Worktree] = []
        current: Optional[Worktree] = None
        for line in result.stdout.splitlines():
            if line.startswith('worktree '):
                current = Worktree(path=line[len('worktree '):])
                worktrees.append(current)
            elif current is None:
                continue
            elif line.startswith('HEAD '):
                current.head = line[len('HEAD '):]
            elif line.startswith('branch '):
                ref = line[len('branch '):]
                current.branch = ref[len('refs/heads/'):] if ref.startswith('refs/heads/') else ref
        return worktrees

    def worktree_for_branch(self, branch: str) -> Optional[str]:
        """Path of the worktree that has branch checked out, if any."""
        for worktree in self.list_worktrees():
            if worktree.branch == branch:
                return worktree.path
        return None

    def is_branch_checked_out(self, branch: str) -> bool:
        return self.worktree_for_branch(branch) is not None

    def worktree_path_for(self, branch: str) -> Path:
        return self.worktree_dir / branch

    def create_worktree(self, path: Union[str, Path], branch: str) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(['worktree', 'add', str(path), branch])
        logger.debug(f"Created worktree {path} for {branch}")

    def remove_worktree(self, path: Union[str, Path]) -> None:
        """
        Remove a worktree, prune stale metadata and drop empty parents.

        A directory that is already gone is not an error; only its metadata
        is pruned.
        """
        path = Path(path)
        try:
            self._git(['worktree', 'remove', '--force', str(path)])
        except GitError:
            if path.exists():
                raise
        finally:
            try:
                self._git(['worktree', 'prune'])
            except CommandError as e:
                logger.warning(f"git worktree prune failed: {e}")
        self._remove_empty_parents(path)

    def _remove_empty_parents(self, path: Path) -> None:
        root = self.worktree_dir.resolve()
        parent = path.parent.resolve()
        while parent != root and root in parent.parents:
            if parent.exists():
                try:
                    parent.rmdir()
                except OSError:
                    break
            parent = parent.parent

    # --- content state ---

    def has_changes(self, directory: Union[str, Path]) -> bool:
        """True if the checkout has staged, unstaged or untracked changes."""
        result = self._git(['status', '--porcelain'], cwd=directory)
        return bool(result.stdout.strip())

    def head_commit(self, directory: Optional[Union[str, Path]] = None, ref: str = 'HEAD') -> str:
        result = self._git(['rev-parse', ref], cwd=directory)
        return result.stdout.strip()

    def update_branch_ref(self, branch: str, commit: str) -> None:
        """Force a branch to point at commit without checking it out."""
        self._git(['update-ref', f'refs/heads/{branch}', commit])

    def discard_changes(self, directory: Optional[Union[str, Path]] = None) -> None:
        """Drop all uncommitted and untracked (non-ignored) changes."""
        self._git(['reset', '--hard', 'HEAD'], cwd=directory)
        self._git(['clean', '-fd', '-e', WORKTREE_DIR_NAME], cwd=directory)

    # --- merging ---

    def merge(self, directory: Union[str, Path], ref: str) -> MergeOutcome:
        """
        Merge ref into the checkout at directory.

        Returns:
            MergeOutcome: CLEAN, CONFLICT or UP_TO_DATE

        Raises:
            GitError: if the merge failed for a reason other than conflicts
        """
        result = self._git(['merge', '--no-edit', ref], cwd=directory, check=False)
        if result.returncode == 0:
            if 'Already up to date' in result.stdout or 'Already up-to-date' in result.stdout:
                return MergeOutcome.UP_TO_DATE
            return MergeOutcome.CLEAN
        if 'CONFLICT' in result.stdout or self.conflict_files(directory):
            return MergeOutcome.CONFLICT
        raise GitError(['git', 'merge', '--no-edit', ref], result.returncode,
                       result.stderr or result.stdout)

    def merge_abort(self, directory: Union[str, Path]) -> None:
        self._git(['merge', '--abort'], cwd=directory)

    def conflict_files(self, directory: Union[str, Path]) -> List[str]:
        result = self._git(['diff', '--name-only', '--diff-filter=U'], cwd=directory)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def merge_ff_only(self, directory: Union[str, Path], ref: str) -> None:
        self._git(['merge', '--ff-only', ref], cwd=directory)

    def copy_uncommitted_changes(self, source: Union[str, Path], destination: Union[str, Path]) -> None:
        """
        Apply source's uncommitted work onto destination's checkout.

        Tracked modifications travel as a binary diff against HEAD; untracked
        files are copied as-is. Both are handled as raw bytes so content and
        file names need not be UTF-8.
        """
        source = Path(source)
        destination = Path(destination)

        diff = self._git(['diff', 'HEAD', '--binary'], cwd=source, text=False).stdout
        if diff.strip():
            self._git(['apply', '--binary', '--whitespace=nowarn'], cwd=destination,
                      input=diff, text=False)

        untracked = self._git(['ls-files', '--others', '--exclude-standard', '-z'], cwd=source, text=False).stdout
        for raw in untracked.split(b'\0'):
            if not raw:
                continue
            rel = os.fsdecode(raw)
            src = source / rel
            dst = destination / rel
            if not src.is_file() and not src.is_symlink():
                continue
            dst.parent.mkdir(parents=True, exist_ok=True)
            if src.is_symlink():
                if dst.is_symlink() or dst.exists():
                    dst.unlink()
                os.symlink(os.readlink(src), dst)
            else:
                shutil.copy2(src, dst)
