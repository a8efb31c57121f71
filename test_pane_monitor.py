#!/usr/bin/env python3
"""
Pane classification tests for mastermind.

Covers stable/unstable content classification, the numbered option list
detector and the per-pane stability counter.
"""

import unittest
from unittest.mock import Mock

from mastermind.core.agent import WAITING_INPUT, WAITING_PERMISSION, WAITING_UNKNOWN
from mastermind.tmux.pane_monitor import (
    PaneMonitor,
    bottom_lines,
    classify_stable_content,
    classify_unstable_content,
    detect_numbered_list,
    hash_content,
)
from mastermind.tmux.patterns import MonitorPatterns, PatternRule


class TestStableClassification(unittest.TestCase):
    """Classification of content that stopped changing"""

    def test_yes_and_no_is_permission(self):
        content = "Edit file src/app.py?\n❯ 1. Yes\n  2. No\n"
        info = classify_stable_content(content)
        self.assertEqual(info.waiting_for, WAITING_PERMISSION)

    def test_yes_and_no_on_one_line_is_permission(self):
        info = classify_stable_content("Apply this change?  Yes  No")
        self.assertEqual(info.waiting_for, WAITING_PERMISSION)

    def test_yes_alone_is_not_permission(self):
        info = classify_stable_content("Yes, this is correct")
        self.assertEqual(info.waiting_for, WAITING_UNKNOWN)

    def test_allow_requires_deny(self):
        self.assertEqual(classify_stable_content("Allow once").waiting_for, WAITING_UNKNOWN)
        self.assertEqual(classify_stable_content("Allow\nDeny").waiting_for, WAITING_PERMISSION)

    def test_accept_edits_footer_is_not_permission(self):
        content = "> \n  ⏵⏵ accept edits on (shift+tab to cycle)"
        self.assertEqual(classify_stable_content(content).waiting_for, WAITING_UNKNOWN)

    def test_input_prompt(self):
        content = "Done.\n> \n  ? for shortcuts"
        self.assertEqual(classify_stable_content(content).waiting_for, WAITING_INPUT)

    def test_working_indicator_overrides_prompts(self):
        content = "Yes\nNo\nRunning tests…"
        self.assertEqual(classify_stable_content(content).waiting_for, "")

    def test_working_indicator_needs_suffix(self):
        content = "Running tests done\n? for shortcuts"
        self.assertEqual(classify_stable_content(content).waiting_for, WAITING_INPUT)

    def test_blank_content_is_active(self):
        self.assertEqual(classify_stable_content("\n  \n").waiting_for, "")

    def test_only_bottom_lines_are_scanned(self):
        content = "Yes\nNo\n" + "\n".join(f"output line {i}" for i in range(30))
        self.assertEqual(classify_stable_content(content).waiting_for, WAITING_UNKNOWN)

    def test_custom_pattern_table(self):
        patterns = MonitorPatterns(
            working_indicators=[],
            early_permission_patterns=[],
            permission_patterns=[PatternRule(contains="[y/n]")],
            input_patterns=[PatternRule(contains="$ ")],
        )
        self.assertEqual(classify_stable_content("Continue? [y/n]", patterns).waiting_for, WAITING_PERMISSION)
        self.assertEqual(classify_stable_content("user@host $ ls", patterns).waiting_for, WAITING_INPUT)


class TestUnstableClassification(unittest.TestCase):

    def test_early_permission_patterns(self):
        self.assertEqual(classify_unstable_content("Do you want to proceed?"), WAITING_PERMISSION)
        self.assertEqual(classify_unstable_content("Esc to cancel · Tab to amend"), WAITING_PERMISSION)

    def test_other_content_is_active(self):
        self.assertEqual(classify_unstable_content("Yes\nNo"), "")


class TestNumberedList(unittest.TestCase):

    def test_option_list(self):
        lines = bottom_lines("Which approach?\n1. Use a cache\n2. Query every time\n")
        self.assertTrue(detect_numbered_list(lines))

    def test_single_item_is_not_a_list(self):
        self.assertFalse(detect_numbered_list(["1. Only option"]))

    def test_completion_summary_is_not_a_list(self):
        lines = ["1. Fixed the login bug", "2. Added tests", "3. Updated the docs"]
        self.assertFalse(detect_numbered_list(lines))

    def test_mostly_completion_verbs_is_not_a_list(self):
        lines = ["1. Fixed the parser", "2. Implemented retries", "3. Maybe revisit caching"]
        self.assertFalse(detect_numbered_list(lines))

    def test_flag_reported_with_classification(self):
        content = "Pick one\n1. Keep it\n2. Drop it\nYes\nNo"
        info = classify_stable_content(content)
        self.assertEqual(info.waiting_for, WAITING_PERMISSION)
        self.assertTrue(info.has_numbered_list)


class TestPaneMonitor(unittest.TestCase):
    """Stability tracking across polls"""

    def setUp(self):
        self.monitor = PaneMonitor(stable_polls=2)

    def test_changing_content_stays_active(self):
        for i in range(5):
            info = self.monitor.observe('%1', f"? for shortcuts {i}")
            self.assertEqual(info.waiting_for, "")
        self.assertEqual(self.monitor.stable_count('%1'), 0)

    def test_stable_content_classified_after_threshold(self):
        content = "Done.\n? for shortcuts"
        self.assertEqual(self.monitor.observe('%1', content).waiting_for, "")
        self.assertEqual(self.monitor.observe('%1', content).waiting_for, "")
        self.assertEqual(self.monitor.observe('%1', content).waiting_for, WAITING_INPUT)
        self.assertEqual(self.monitor.stable_count('%1'), 2)

    def test_change_resets_counter(self):
        self.monitor.observe('%1', "a")
        self.monitor.observe('%1', "a")
        self.monitor.observe('%1', "b")
        self.assertEqual(self.monitor.stable_count('%1'), 0)

    def test_early_permission_bypasses_stability(self):
        info = self.monitor.observe('%1', "Do you want to proceed?")
        self.assertEqual(info.waiting_for, WAITING_PERMISSION)

    def test_empty_capture_is_active(self):
        self.assertEqual(self.monitor.observe('%1', "").waiting_for, "")

    def test_panes_tracked_independently(self):
        for _ in range(3):
            self.monitor.observe('%1', "same")
        self.monitor.observe('%2', "same")
        self.assertEqual(self.monitor.stable_count('%1'), 2)
        self.assertEqual(self.monitor.stable_count('%2'), 0)

    def test_remove_forgets_pane(self):
        self.monitor.observe('%1', "x")
        self.monitor.observe('%1', "x")
        self.monitor.remove('%1')
        self.assertEqual(self.monitor.stable_count('%1'), 0)

    def test_get_pane_status_dead_pane(self):
        tmux = Mock()
        tmux.pane_dead_status.return_value = (True, 3)
        monitor = PaneMonitor(tmux_controller=tmux)
        status = monitor.get_pane_status('%1')
        self.assertTrue(status.dead)
        self.assertEqual(status.exit_code, 3)
        tmux.capture_pane.assert_not_called()

    def test_get_pane_status_captures_live_pane(self):
        tmux = Mock()
        tmux.capture_pane.return_value = "Do you want to proceed?"
        monitor = PaneMonitor(tmux_controller=tmux)
        status = monitor.get_pane_status('%1', dead=False)
        self.assertFalse(status.dead)
        self.assertEqual(status.waiting_for, WAITING_PERMISSION)
        tmux.pane_dead_status.assert_not_called()

    def test_hash_is_stable(self):
        self.assertEqual(hash_content("abc"), hash_content("abc"))
        self.assertNotEqual(hash_content("abc"), hash_content("abd"))


if __name__ == '__main__':
    unittest.main()
