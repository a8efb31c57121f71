#!/usr/bin/env python3
"""
Git integration tests for mastermind.

Runs WorktreeManager against real repositories in temporary directories,
then drives a spawn/merge and a preview through the Orchestrator with a
real git backend and the in-memory tmux double.
"""

import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from mastermind.core.agent import AgentStatus
from mastermind.core.orchestrator import Orchestrator
from mastermind.git.worktree_manager import GitError, MergeOutcome, WorktreeManager
from mastermind.utils.system_utils import SystemUtils
from test_orchestrator import FakeTmux


def git(cwd, *args):
    result = subprocess.run(['git'] + list(args), cwd=str(cwd), check=True,
                            capture_output=True, text=True)
    return result.stdout.strip()


def commit_file(cwd, name, content, message=None):
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, 'add', name)
    git(cwd, 'commit', '-q', '-m', message or f"update {name}")
    return git(cwd, 'rev-parse', 'HEAD')


@unittest.skipIf(shutil.which('git') is None, "git not available")
class GitRepoTestCase(unittest.TestCase):
    """Fresh repository on branch main with one commit."""

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp()).resolve()
        self.repo = self.test_dir / 'repo'
        self.repo.mkdir()
        git(self.repo, 'init', '-q')
        git(self.repo, 'symbolic-ref', 'HEAD', 'refs/heads/main')
        git(self.repo, 'config', 'user.name', 'Test')
        git(self.repo, 'config', 'user.email', 'test@example.com')
        git(self.repo, 'config', 'commit.gpgsign', 'false')
        (self.repo / '.git' / 'info').mkdir(exist_ok=True)
        (self.repo / '.git' / 'info' / 'exclude').write_text('.worktrees/\n')
        self.initial = commit_file(self.repo, 'app.py', 'print("v1")\n', 'initial')

        self.git = WorktreeManager(self.repo, timeout=30.0)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def add_worktree(self, branch):
        self.git.create_branch(branch, 'main')
        path = self.git.worktree_path_for(branch)
        self.git.create_worktree(path, branch)
        return path


class TestWorktreeManager(GitRepoTestCase):

    def test_branch_and_worktree(self):
        path = self.add_worktree('feat/x')

        self.assertTrue(self.git.branch_exists('feat/x'))
        self.assertFalse(self.git.branch_exists('feat/y'))
        self.assertEqual(path, self.repo / '.worktrees' / 'feat' / 'x')
        self.assertTrue((path / 'app.py').exists())
        self.assertEqual(self.git.current_branch(path), 'feat/x')
        self.assertEqual(Path(self.git.worktree_for_branch('feat/x')).resolve(), path)
        self.assertTrue(self.git.is_branch_checked_out('main'))
        self.assertFalse(self.git.has_changes(self.repo))

        (path / 'notes.txt').write_text("todo\n")
        self.assertTrue(self.git.has_changes(path))

        with self.assertRaises(GitError):
            self.git.create_worktree(self.test_dir / 'other', 'feat/x')

    def test_remove_worktree_prunes_empty_parents(self):
        path = self.add_worktree('feat/deep/x')
        self.git.remove_worktree(path)

        self.assertFalse(path.exists())
        self.assertFalse((self.repo / '.worktrees' / 'feat').exists())
        self.assertTrue((self.repo / '.worktrees').exists())
        self.assertIsNone(self.git.worktree_for_branch('feat/deep/x'))
        self.git.delete_branch('feat/deep/x')
        self.assertFalse(self.git.branch_exists('feat/deep/x'))

    def test_remove_missing_worktree_only_prunes(self):
        path = self.add_worktree('feat/x')
        shutil.rmtree(path)
        self.git.remove_worktree(path)
        self.assertFalse(self.git.is_branch_checked_out('feat/x'))

    def test_merge_outcomes(self):
        path = self.add_worktree('feat/x')
        self.assertEqual(self.git.merge(path, 'main'), MergeOutcome.UP_TO_DATE)

        agent_commit = commit_file(path, 'feature.py', 'x = 1\n')
        commit_file(self.repo, 'other.py', 'y = 2\n')
        self.assertFalse(self.git.is_ancestor('main', 'feat/x'))

        self.assertEqual(self.git.merge(path, 'main'), MergeOutcome.CLEAN)
        self.assertTrue(self.git.is_ancestor('main', 'feat/x'))
        self.assertTrue(self.git.is_ancestor(agent_commit, 'feat/x'))

        self.git.merge_ff_only(self.repo, 'feat/x')
        self.assertEqual(self.git.head_commit(self.repo), self.git.head_commit(path))
        self.assertTrue(self.git.is_branch_merged('feat/x', 'main'))

    def test_merge_conflict_and_abort(self):
        path = self.add_worktree('feat/x')
        commit_file(path, 'app.py', 'print("agent")\n')
        commit_file(self.repo, 'app.py', 'print("main")\n')

        self.assertEqual(self.git.merge(path, 'main'), MergeOutcome.CONFLICT)
        self.assertEqual(self.git.conflict_files(path), ['app.py'])
        self.assertTrue(self.git.has_changes(path))

        self.git.merge_abort(path)
        self.assertFalse(self.git.has_changes(path))
        self.assertEqual((path / 'app.py').read_text(), 'print("agent")\n')

    def test_ff_only_refuses_divergence(self):
        path = self.add_worktree('feat/x')
        commit_file(path, 'feature.py', 'x = 1\n')
        commit_file(self.repo, 'other.py', 'y = 2\n')
        with self.assertRaises(GitError):
            self.git.merge_ff_only(self.repo, 'feat/x')

    def test_update_branch_ref(self):
        path = self.add_worktree('feat/x')
        head = commit_file(path, 'feature.py', 'x = 1\n')
        self.git.create_branch('release', 'main')
        self.git.update_branch_ref('release', head)
        self.assertEqual(self.git.head_commit(ref='release'), head)

    def test_copy_and_discard_uncommitted_changes(self):
        path = self.add_worktree('feat/x')
        (path / 'app.py').write_text('print("wip")\n')
        (path / 'pkg').mkdir()
        (path / 'pkg' / 'new.py').write_text('z = 3\n')

        self.git.copy_uncommitted_changes(path, self.repo)

        self.assertEqual((self.repo / 'app.py').read_text(), 'print("wip")\n')
        self.assertEqual((self.repo / 'pkg' / 'new.py').read_text(), 'z = 3\n')

        self.git.discard_changes(self.repo)
        self.assertFalse(self.git.has_changes(self.repo))
        self.assertEqual((self.repo / 'app.py').read_text(), 'print("v1")\n')
        self.assertFalse((self.repo / 'pkg').exists())
        self.assertTrue(path.exists())

    def test_copy_non_utf8_changes(self):
        path = self.add_worktree('feat/x')
        commit_file(path, 'legacy.txt', 'cafe\n')
        (path / 'legacy.txt').write_bytes(b'caf\xe9\n')
        (path / 'latin1.dat').write_bytes(b'\xff\xfe\n')
        self.git.merge_ff_only(self.repo, 'feat/x')

        self.git.copy_uncommitted_changes(path, self.repo)

        self.assertEqual((self.repo / 'legacy.txt').read_bytes(), b'caf\xe9\n')
        self.assertEqual((self.repo / 'latin1.dat').read_bytes(), b'\xff\xfe\n')

    def test_output_with_invalid_utf8_is_replaced(self):
        path = self.add_worktree('feat/x')
        (path / 'legacy.txt').write_bytes(b'caf\xe9\n')
        git(path, 'add', 'legacy.txt')
        git(path, 'commit', '-q', '-m', 'legacy')

        result = SystemUtils.run_command(['git', 'show', 'HEAD:legacy.txt'], cwd=path)
        self.assertEqual(result.stdout, 'caf\ufffd\n')

    def test_current_branch_and_checkout(self):
        self.git.create_branch('preview/a1', 'main')
        self.git.checkout_branch('preview/a1', self.repo)
        self.assertEqual(self.git.current_branch(self.repo), 'preview/a1')
        self.git.checkout_branch('main', self.repo)
        self.assertEqual([b.name for b in self.git.list_branches() if b.is_current], ['main'])


class TestOrchestratorWithGit(GitRepoTestCase):
    """Lifecycle operations against a real repository"""

    def setUp(self):
        super().setUp()
        hooks_patch = patch('mastermind.core.orchestrator.install_hooks')
        hooks_patch.start()
        self.addCleanup(hooks_patch.stop)

        self.tmux = FakeTmux()
        self.orch = Orchestrator(self.repo, 'work', git_manager=self.git, tmux_controller=self.tmux)
        self.orch._sleep = lambda seconds: None

    def test_spawn_commit_merge(self):
        agent = self.orch.spawn_agent('feat/x', 'main')
        worktree = Path(agent.worktree_path)
        self.assertEqual(self.git.current_branch(worktree), 'feat/x')

        (worktree / 'feature.py').write_text('x = 1\n')
        self.tmux.exit_pane(agent.tmux_pane_id)
        self.orch.monitor_tick()
        self.assertEqual(agent.get_status(), AgentStatus.REVIEW_READY)

        result = self.orch.merge_agent(agent.id)
        self.assertIn("uncommitted changes", result.error)

        agent_head = commit_file(worktree, 'feature.py', 'x = 1\n')
        commit_file(self.repo, 'other.py', 'y = 2\n')
        result = self.orch.merge_agent(agent.id)

        self.assertTrue(result.success, result.error)
        self.assertTrue(self.git.is_ancestor(agent_head, 'main'))
        self.assertTrue((self.repo / 'feature.py').exists())
        self.assertFalse(worktree.exists())
        self.assertFalse(self.git.branch_exists('feat/x'))
        self.assertIsNone(self.orch.store.get(agent.id))

    def test_conflicting_merge_reports_files(self):
        agent = self.orch.spawn_agent('feat/x', 'main')
        commit_file(agent.worktree_path, 'app.py', 'print("agent")\n')
        commit_file(self.repo, 'app.py', 'print("main")\n')
        self.tmux.exit_pane(agent.tmux_pane_id)
        self.orch.monitor_tick()

        result = self.orch.merge_agent(agent.id)

        self.assertTrue(result.conflict)
        self.assertEqual(result.conflict_files, ['app.py'])
        self.assertEqual(agent.get_status(), AgentStatus.CONFLICTS)
        self.assertEqual((self.repo / 'app.py').read_text(), 'print("main")\n')

    def test_preview_round_trip(self):
        agent = self.orch.spawn_agent('feat/x', 'main')
        commit_file(agent.worktree_path, 'feature.py', 'x = 1\n')
        (Path(agent.worktree_path) / 'scratch.txt').write_text("wip\n")
        self.tmux.exit_pane(agent.tmux_pane_id)
        self.orch.monitor_tick()
        self.assertEqual(agent.get_status(), AgentStatus.REVIEW_READY)

        self.orch.preview_agent(agent.id)
        self.assertEqual(self.git.current_branch(self.repo), 'preview/a1')
        self.assertTrue((self.repo / 'feature.py').exists())
        self.assertTrue((self.repo / 'scratch.txt').exists())

        self.orch.stop_preview()
        self.assertEqual(self.git.current_branch(self.repo), 'main')
        self.assertFalse(self.git.branch_exists('preview/a1'))
        self.assertFalse((self.repo / 'feature.py').exists())
        self.assertFalse((self.repo / 'scratch.txt').exists())
        self.assertFalse(self.git.has_changes(self.repo))
        self.assertEqual(agent.get_status(), AgentStatus.REVIEW_READY)

    def test_preview_with_non_utf8_uncommitted_change(self):
        agent = self.orch.spawn_agent('feat/x', 'main')
        worktree = Path(agent.worktree_path)
        commit_file(worktree, 'legacy.txt', 'cafe\n')
        (worktree / 'legacy.txt').write_bytes(b'caf\xe9\n')
        self.tmux.exit_pane(agent.tmux_pane_id)
        self.orch.monitor_tick()

        self.orch.preview_agent(agent.id)
        self.assertEqual(self.git.current_branch(self.repo), 'preview/a1')
        self.assertEqual((self.repo / 'legacy.txt').read_bytes(), b'caf\xe9\n')
        self.assertEqual(self.orch.get_preview_agent_id(), agent.id)

        self.orch.stop_preview()
        self.assertEqual(self.git.current_branch(self.repo), 'main')
        self.assertFalse(self.git.branch_exists('preview/a1'))
        self.assertFalse((self.repo / 'legacy.txt').exists())

    def test_failed_preview_leaves_main_checkout_untouched(self):
        agent = self.orch.spawn_agent('feat/x', 'main')
        commit_file(agent.worktree_path, 'feature.py', 'x = 1\n')
        (Path(agent.worktree_path) / 'scratch.txt').write_text("wip\n")
        self.tmux.exit_pane(agent.tmux_pane_id)
        self.orch.monitor_tick()

        with patch.object(self.git, 'copy_uncommitted_changes', side_effect=ValueError("bad patch")):
            with self.assertRaises(ValueError):
                self.orch.preview_agent(agent.id)

        self.assertEqual(self.git.current_branch(self.repo), 'main')
        self.assertFalse(self.git.branch_exists('preview/a1'))
        self.assertFalse((self.repo / 'feature.py').exists())
        self.assertFalse(self.git.has_changes(self.repo))
        self.assertEqual(self.orch.get_preview_agent_id(), "")

        self.orch.preview_agent(agent.id)
        self.assertEqual(self.git.current_branch(self.repo), 'preview/a1')


if __name__ == '__main__':
    unittest.main()
