#!/usr/bin/env python3
"""
Configuration loader tests for mastermind.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from mastermind.core.exceptions import ConfigError
from mastermind.utils.config_loader import DEFAULT_CONFIG_YAML, ConfigLoader, MastermindConfig


class TestConfigLoader(unittest.TestCase):

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.config_path = self.test_dir / 'mastermind' / 'mastermind.yaml'
        self.loader = ConfigLoader(self.config_path)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def write(self, content):
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(content)

    def test_missing_file_gives_defaults(self):
        config = self.loader.load()
        self.assertEqual(config.monitor.interval, 2.0)
        self.assertEqual(config.monitor.stable_polls, 2)
        self.assertEqual(config.monitor.status_freshness, 30.0)
        self.assertEqual(config.layout.review_split, 80)
        self.assertEqual(config.agent.command, ['claude'])
        self.assertTrue(config.claude.agent_teams)

    def test_empty_file_gives_defaults(self):
        self.write("")
        self.assertEqual(self.loader.load(), MastermindConfig())

    def test_partial_override(self):
        self.write("monitor:\n  interval: 1\nlayout:\n  review_split: 60\n")
        config = self.loader.load()
        self.assertEqual(config.monitor.interval, 1.0)
        self.assertIsInstance(config.monitor.interval, float)
        self.assertEqual(config.monitor.command_timeout, 5.0)
        self.assertEqual(config.layout.review_split, 60)

    def test_string_command_is_split(self):
        self.write('agent:\n  command: "claude --model opus"\n')
        self.assertEqual(self.loader.load().agent.command, ['claude', '--model', 'opus'])

    def test_environment_substitution(self):
        self.write("agent:\n  review_command: ${MM_REVIEW}\n")
        with patch.dict(os.environ, {'MM_REVIEW': 'tig'}):
            self.assertEqual(self.loader.load().agent.review_command, 'tig')

    def test_invalid_values_all_reported(self):
        self.write("monitor:\n  interval: 0\n  stable_polls: 0\nlayout:\n  review_split: 100\n")
        with self.assertRaises(ConfigError) as ctx:
            self.loader.load()
        message = str(ctx.exception)
        self.assertIn("monitor.interval", message)
        self.assertIn("monitor.stable_polls", message)
        self.assertIn("layout.review_split", message)

    def test_wrong_types_rejected(self):
        for content in ("monitor: 5\n", "monitor:\n  interval: fast\n",
                        "monitor:\n  stable_polls: true\n", "claude:\n  agent_teams: yes-please\n",
                        "agent:\n  command: []\n"):
            self.write(content)
            with self.assertRaises(ConfigError, msg=content):
                self.loader.load()

    def test_malformed_yaml(self):
        self.write("monitor: [unclosed\n")
        with self.assertRaises(ConfigError):
            self.loader.load()

    def test_top_level_must_be_mapping(self):
        self.write("- a\n- b\n")
        with self.assertRaises(ConfigError):
            self.loader.load()

    def test_pattern_section_replaces_only_named_lists(self):
        self.write("patterns:\n  input_patterns: ['$ ']\n")
        patterns = self.loader.load().patterns
        self.assertEqual([rule.contains for rule in patterns.input_patterns], ['$ '])
        self.assertTrue(patterns.permission_patterns)

    def test_write_default_once(self):
        self.assertTrue(self.loader.write_default())
        self.assertFalse(self.loader.write_default())
        self.assertEqual(self.config_path.read_text(), DEFAULT_CONFIG_YAML)
        self.assertEqual(self.loader.load(), MastermindConfig())

    def test_default_file_parses(self):
        data = yaml.safe_load(DEFAULT_CONFIG_YAML)
        self.loader.validate_config(data)

    def test_default_path_uses_xdg(self):
        with patch.dict(os.environ, {'XDG_CONFIG_HOME': str(self.test_dir)}):
            self.assertEqual(ConfigLoader.default_config_path(),
                             self.test_dir / 'mastermind' / 'mastermind.yaml')


if __name__ == '__main__':
    unittest.main()
