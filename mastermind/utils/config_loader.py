"""
Configuration Loader Module

Handles loading and validation of the mastermind YAML configuration file.
"""

import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..core.exceptions import ConfigError
from ..tmux.patterns import MonitorPatterns, default_patterns
from .file_utils import FileUtils

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = 'mastermind.yaml'

DEFAULT_CONFIG_YAML = """\
# mastermind configuration
# Every key is optional; omitted keys keep the values shown here.

monitor:
  interval: 2.0            # seconds between monitor ticks
  stable_polls: 2          # unchanged captures before a pane counts as idle
  status_freshness: 30     # seconds a hook status file stays authoritative
  command_timeout: 5       # seconds any tmux/git call may take
  min_save_interval: 5     # minimum seconds between state file writes

layout:
  review_split: 80         # review pane width in percent

agent:
  command: ["claude"]
  review_command: lazygit
  shutdown_grace: 0.5      # seconds to wait after asking an agent to exit

claude:
  agent_teams: true        # sets CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS=1
  teammate_mode: in-process

# Replace the pane classifier's pattern table section by section:
# patterns:
#   working_indicators:
#     - {contains: "Running", suffix: "…"}
#   early_permission_patterns: ["Do you want to proceed?", "Esc to cancel"]
#   permission_patterns:
#     - {contains: "Yes", requires_also: "No"}
#     - "Always allow"
#   input_patterns: ["for shortcuts"]
"""

_NUMBER = (int, float)


@dataclass
class ConfigValidationRule:
    """Configuration validation rule."""
    field_path: str
    field_type: Union[type, Tuple[type, ...]] = str
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    exclusive_min: bool = False


@dataclass
class ConfigSchema:
    """Configuration schema definition."""
    name: str
    version: str
    rules: List[ConfigValidationRule] = field(default_factory=list)

    def add_rule(self, **kwargs) -> 'ConfigSchema':
        """Add validation rule."""
        self.rules.append(ConfigValidationRule(**kwargs))
        return self


def _mastermind_schema() -> ConfigSchema:
    schema = ConfigSchema("mastermind", "1.0")
    for section in ("monitor", "layout", "agent", "claude"):
        schema.add_rule(field_path=section, field_type=dict)
    schema.add_rule(
        field_path="monitor.interval", field_type=_NUMBER, min_value=0, exclusive_min=True
    ).add_rule(
        field_path="monitor.stable_polls", field_type=int, min_value=1
    ).add_rule(
        field_path="monitor.status_freshness", field_type=_NUMBER, min_value=0, exclusive_min=True
    ).add_rule(
        field_path="monitor.command_timeout", field_type=_NUMBER, min_value=0, exclusive_min=True
    ).add_rule(
        field_path="monitor.min_save_interval", field_type=_NUMBER, min_value=0
    ).add_rule(
        field_path="layout.review_split", field_type=int, min_value=1, max_value=99
    ).add_rule(
        field_path="agent.command", field_type=(list, str)
    ).add_rule(
        field_path="agent.review_command", field_type=str
    ).add_rule(
        field_path="agent.shutdown_grace", field_type=_NUMBER, min_value=0
    ).add_rule(
        field_path="claude.agent_teams", field_type=bool
    ).add_rule(
        field_path="claude.teammate_mode", field_type=str
    ).add_rule(
        field_path="patterns", field_type=dict
    )
    return schema


@dataclass
class MonitorSettings:
    interval: float = 2.0
    stable_polls: int = 2
    status_freshness: float = 30.0
    command_timeout: float = 5.0
    min_save_interval: float = 5.0


@dataclass
class LayoutSettings:
    review_split: int = 80


@dataclass
class AgentSettings:
    command: List[str] = field(default_factory=lambda: ['claude'])
    review_command: str = 'lazygit'
    shutdown_grace: float = 0.5


@dataclass
class ClaudeSettings:
    agent_teams: bool = True
    teammate_mode: str = 'in-process'


@dataclass
class MastermindConfig:
    """Validated configuration with defaults for every omitted key."""
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    layout: LayoutSettings = field(default_factory=LayoutSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    claude: ClaudeSettings = field(default_factory=ClaudeSettings)
    patterns: MonitorPatterns = field(default_factory=default_patterns)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MastermindConfig':
        """Build from already-validated data."""
        config = cls()
        for section_name in ('monitor', 'layout', 'agent', 'claude'):
            section = getattr(config, section_name)
            for key, value in (data.get(section_name) or {}).items():
                if not hasattr(section, key):
                    logger.warning(f"Ignoring unknown config key {section_name}.{key}")
                    continue
                if isinstance(getattr(section, key), float) and not isinstance(value, bool):
                    value = float(value)
                setattr(section, key, value)

        if isinstance(config.agent.command, str):
            config.agent.command = shlex.split(config.agent.command)
        else:
            config.agent.command = [str(part) for part in config.agent.command]

        if data.get('patterns'):
            config.patterns = MonitorPatterns.from_config(data['patterns'])
        return config


class ConfigLoader:
    """
    Configuration loader with validation and schema support.

    Features:
    - YAML configuration at an XDG location
    - Schema validation with detailed error reporting
    - Environment variable substitution
    - Default value handling for every omitted key
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize config loader.

        Args:
            config_path: Configuration file, defaults to default_config_path()
        """
        self.config_path = Path(config_path) if config_path else self.default_config_path()
        self.schema = _mastermind_schema()

    @staticmethod
    def default_config_path() -> Path:
        base = os.environ.get('XDG_CONFIG_HOME') or str(Path.home() / '.config')
        return Path(base) / 'mastermind' / CONFIG_FILE_NAME

    def load(self) -> MastermindConfig:
        """
        Load and validate the configuration file.

        Returns:
            MastermindConfig; defaults when the file does not exist

        Raises:
            ConfigError: if the file is unreadable, malformed or invalid
        """
        try:
            data = FileUtils.read_yaml(self.config_path)
        except yaml.YAMLError as e:
            raise ConfigError(f"parse {self.config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"read {self.config_path}: {e}") from e

        if data is None:
            logger.debug(f"No config at {self.config_path}, using defaults")
            return MastermindConfig()
        if not isinstance(data, dict):
            raise ConfigError(f"{self.config_path}: top level must be a mapping")

        data = self._substitute_environment_variables(data)
        self.validate_config(data)
        try:
            config = MastermindConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{self.config_path}: {e}") from e
        logger.info(f"Loaded config: {self.config_path}")
        return config

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """
        Validate configuration against the schema.

        Raises:
            ConfigError: listing every violation found
        """
        validation_errors = []

        for rule in self.schema.rules:
            value = self._get_nested_value(config_data, rule.field_path)
            if value is None:
                continue

            # bool is an int subclass; only accept it where bool is asked for
            if isinstance(value, bool) and rule.field_type is not bool:
                validation_errors.append(f"Field {rule.field_path} must not be a boolean")
                continue
            if not isinstance(value, rule.field_type):
                expected = rule.field_type.__name__ if isinstance(rule.field_type, type) \
                    else ' or '.join(t.__name__ for t in rule.field_type)
                validation_errors.append(
                    f"Field {rule.field_path} must be {expected}, got {type(value).__name__}"
                )
                continue

            if rule.min_value is not None:
                if rule.exclusive_min and value <= rule.min_value:
                    validation_errors.append(f"Field {rule.field_path} must be > {rule.min_value}, got {value}")
                elif value < rule.min_value:
                    validation_errors.append(f"Field {rule.field_path} must be >= {rule.min_value}, got {value}")

            if rule.max_value is not None and value > rule.max_value:
                validation_errors.append(f"Field {rule.field_path} must be <= {rule.max_value}, got {value}")

        command = self._get_nested_value(config_data, 'agent.command')
        if isinstance(command, list) and not command:
            validation_errors.append("Field agent.command must not be empty")

        if validation_errors:
            raise ConfigError(
                f"invalid configuration in {self.config_path}:\n  " + "\n  ".join(validation_errors)
            )

    def write_default(self) -> bool:
        """
        Write the commented default configuration if no file exists.

        Returns:
            bool: True if a file was written
        """
        if self.config_path.exists():
            return False
        FileUtils.write_text_atomic(self.config_path, DEFAULT_CONFIG_YAML)
        logger.info(f"Wrote default config: {self.config_path}")
        return True

    def _get_nested_value(self, data: Dict[str, Any], path: str) -> Any:
        """Get nested value using dot notation."""
        current = data
        for key in path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return None
        return current

    def _substitute_environment_variables(self, data: Any) -> Any:
        """Recursively substitute ${VAR} and $VAR in string values."""
        if isinstance(data, dict):
            return {k: self._substitute_environment_variables(v) for k, v in data.items()}
        elif isinstance(data, list):
            return [self._substitute_environment_variables(item) for item in data]
        elif isinstance(data, str):
            def replace_env_var(match):
                var_name = match.group(1) or match.group(2)
                return os.environ.get(var_name, match.group(0))

            pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)'
            return re.sub(pattern, replace_env_var, data)
        return data
