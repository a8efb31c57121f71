"""
Pattern table used to classify captured pane content.

The table is replaceable configuration (see the `patterns` section of
mastermind.yaml); the stability and freshness thresholds live in the
monitor settings instead.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class PatternRule:
    """A single substring rule."""
    contains: str
    suffix: str = ""          # line must also end with this
    requires_also: str = ""   # bottom content must also contain this

    def matches_line(self, line: str) -> bool:
        if self.contains and self.contains not in line:
            return False
        if self.suffix and not line.endswith(self.suffix):
            return False
        return True

    def matches_block(self, block: str) -> bool:
        if self.contains not in block:
            return False
        if self.requires_also and self.requires_also not in block:
            return False
        return True

    @classmethod
    def from_config(cls, value: Any) -> 'PatternRule':
        if isinstance(value, str):
            return cls(contains=value)
        if isinstance(value, dict) and value.get('contains'):
            return cls(
                contains=str(value['contains']),
                suffix=str(value.get('suffix') or ""),
                requires_also=str(value.get('requires_also') or ""),
            )
        raise ValueError(f"invalid pattern rule: {value!r}")


@dataclass
class MonitorPatterns:
    # Any bottom line matching one of these means still working, even if stable.
    working_indicators: List[PatternRule] = field(default_factory=list)
    # Checked before content stabilizes; keep these unambiguous.
    early_permission_patterns: List[str] = field(default_factory=list)
    permission_patterns: List[PatternRule] = field(default_factory=list)
    input_patterns: List[PatternRule] = field(default_factory=list)

    @classmethod
    def from_config(cls, data: Dict[str, Any], base: 'MonitorPatterns' = None) -> 'MonitorPatterns':
        """Build a table from config, keeping base entries for omitted sections."""
        base = base or default_patterns()
        return cls(
            working_indicators=[PatternRule.from_config(v) for v in data['working_indicators']]
            if 'working_indicators' in data else list(base.working_indicators),
            early_permission_patterns=[str(v) for v in data['early_permission_patterns']]
            if 'early_permission_patterns' in data else list(base.early_permission_patterns),
            permission_patterns=[PatternRule.from_config(v) for v in data['permission_patterns']]
            if 'permission_patterns' in data else list(base.permission_patterns),
            input_patterns=[PatternRule.from_config(v) for v in data['input_patterns']]
            if 'input_patterns' in data else list(base.input_patterns),
        )


def default_patterns() -> MonitorPatterns:
    """Detection patterns for Claude Code's terminal UI."""
    return MonitorPatterns(
        working_indicators=[
            PatternRule(contains="Running", suffix="…"),
        ],
        early_permission_patterns=[
            "Do you want to proceed?",
            "Esc to cancel",
        ],
        permission_patterns=[
            # Tool permission prompts
            PatternRule(contains="Yes", requires_also="No"),
            PatternRule(contains="Allow", requires_also="Deny"),
            PatternRule(contains="allow for"),
            PatternRule(contains="Always allow"),
            # Question prompts with numbered options
            PatternRule(contains="Chat about this"),
        ],
        input_patterns=[
            PatternRule(contains="for shortcuts"),
        ],
    )


DEFAULT_PATTERNS = default_patterns()
