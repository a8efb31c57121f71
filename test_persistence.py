#!/usr/bin/env python3
"""
State persistence tests for mastermind.

Covers the agent state file, the preview file, dirty/debounce handling and
the lossless restore of lifecycle fields.
"""

import json
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from mastermind.core.agent import Agent, AgentStatus, Store
from mastermind.core.exceptions import PersistenceError
from mastermind.core.persistence import PersistedAgent, PreviewRecord, StatePersistence

T0 = datetime(2026, 1, 1, 12, 0, 0)


def make_agent(branch="feat/x", agent_id=""):
    return Agent(
        branch=branch,
        base_branch="main",
        worktree_path=f"/repo/.worktrees/{branch}",
        tmux_window="@3",
        tmux_pane_id="%7",
        agent_id=agent_id,
        started_at=T0,
    )


class TestPersistedAgent(unittest.TestCase):

    def test_restores_every_lifecycle_field(self):
        agent = make_agent(agent_id="a4")
        agent.set_status(AgentStatus.WAITING, T0 + timedelta(seconds=90))
        agent.set_waiting_for("permission")
        agent.set_ever_active(True)
        agent.set_status(AgentStatus.REVIEW_READY, T0 + timedelta(seconds=100))
        agent.set_finished(2, T0 + timedelta(seconds=100))
        agent.set_review_pane_id("%9")
        agent.set_pre_review_commit("abc123")

        data = json.loads(json.dumps(PersistedAgent.from_agent(agent).to_dict()))
        restored = PersistedAgent.from_dict(data).to_agent()

        snap = restored.snapshot(T0 + timedelta(hours=2))
        self.assertEqual(restored.id, "a4")
        self.assertEqual(snap.status, AgentStatus.REVIEW_READY)
        self.assertEqual(snap.waiting_for, "permission")
        self.assertTrue(snap.ever_active)
        self.assertEqual(snap.exit_code, 2)
        self.assertEqual(snap.finished_at, T0 + timedelta(seconds=100))
        self.assertEqual(snap.review_pane_id, "%9")
        self.assertEqual(snap.pre_review_commit, "abc123")
        self.assertEqual(snap.started_at, T0)
        self.assertEqual(snap.duration, 90.0)

    def test_running_agent_keeps_live_period(self):
        agent = make_agent(agent_id="a1")
        restored = PersistedAgent.from_agent(agent).to_agent()
        self.assertEqual(restored.duration(T0 + timedelta(seconds=45)), 45.0)

    def test_missing_fields_default(self):
        record = PersistedAgent.from_dict({'id': 'a1', 'branch': 'feat/x', 'unknown': 1})
        self.assertEqual(record.status, AgentStatus.RUNNING)
        self.assertEqual(record.base_branch, "")
        self.assertIsNone(record.finished_at)

    def test_legacy_status_spelling(self):
        record = PersistedAgent.from_dict({'id': 'a1', 'status': 'review ready'})
        self.assertEqual(record.status, AgentStatus.REVIEW_READY)

    def test_record_without_id_rejected(self):
        with self.assertRaises(PersistenceError):
            PersistedAgent.from_dict({'branch': 'feat/x'})


class TestStatePersistence(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.persistence = StatePersistence(self.test_dir / '.worktrees', min_save_interval=5.0)
        self.store = Store()

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def test_save_and_load_in_order(self):
        for branch in ("one", "two", "three"):
            self.store.add(make_agent(branch))
        self.assertTrue(self.persistence.save_agents(self.store))
        self.assertFalse(self.store.is_dirty())

        loaded = self.persistence.load_agents()
        self.assertEqual([r.branch for r in loaded], ["one", "two", "three"])
        self.assertEqual([r.id for r in loaded], ["a1", "a2", "a3"])
        self.assertFalse(self.persistence.state_path.with_name(
            self.persistence.state_path.name + '.tmp').exists())

    def test_missing_file_loads_empty(self):
        self.assertEqual(self.persistence.load_agents(), [])

    def test_malformed_file_raises(self):
        self.persistence.state_path.parent.mkdir(parents=True)
        self.persistence.state_path.write_text("{not json")
        with self.assertRaises(PersistenceError):
            self.persistence.load_agents()

    def test_non_list_file_raises(self):
        self.persistence.state_path.parent.mkdir(parents=True)
        self.persistence.state_path.write_text('{"id": "a1"}')
        with self.assertRaises(PersistenceError):
            self.persistence.load_agents()

    def test_save_if_dirty_debounces(self):
        self.store.add(make_agent())
        self.assertTrue(self.persistence.save_if_dirty(self.store))

        self.store.mark_dirty()
        self.assertFalse(self.persistence.save_if_dirty(self.store))
        self.assertTrue(self.store.is_dirty())

        self.assertTrue(self.persistence.save_if_dirty(self.store, force=True))
        self.assertFalse(self.store.is_dirty())

    def test_clean_store_not_saved(self):
        self.assertFalse(self.persistence.save_if_dirty(self.store))
        self.assertFalse(self.persistence.state_path.exists())

    def test_failed_write_keeps_store_dirty(self):
        self.store.add(make_agent())
        with patch('mastermind.core.persistence.FileUtils.write_json_atomic', side_effect=OSError("disk full")):
            self.assertFalse(self.persistence.save_agents(self.store))
        self.assertTrue(self.store.is_dirty())

    def test_preview_round_trip_and_clear(self):
        record = PreviewRecord(agent_id="a2", prev_branch="main", prev_status=AgentStatus.REVIEWED)
        self.assertTrue(self.persistence.save_preview(record))
        self.assertEqual(self.persistence.load_preview(), record)

        self.persistence.clear_preview()
        self.assertIsNone(self.persistence.load_preview())
        self.persistence.clear_preview()

    def test_unreadable_preview_is_none(self):
        self.persistence.preview_path.parent.mkdir(parents=True)
        self.persistence.preview_path.write_text("garbage")
        self.assertIsNone(self.persistence.load_preview())


if __name__ == '__main__':
    unittest.main()
