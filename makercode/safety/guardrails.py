"""Safety guardrails for applying generated results to the working tree."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class RiskLevel(StrEnum):
    """Risk levels for operations."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


@dataclass
class SafetyConfig:
    """Configurable safety settings.

    Can be loaded from the `safety` section of `.makercode.yml`.
    """

    max_file_size_mb: float = 1.0
    block_above: RiskLevel = RiskLevel.HIGH
    critical_files: set[str] = field(
        default_factory=lambda: {
            ".makercode.yml",
            ".git",
            ".gitignore",
            ".env",
            "pyproject.toml",
            "setup.py",
            "setup.cfg",
            "requirements.txt",
            "Makefile",
            "LICENSE",
        }
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafetyConfig:
        """Create config from a dictionary (e.g. from .makercode.yml)."""
        config = cls()
        if "max_file_size_mb" in data:
            config.max_file_size_mb = float(data["max_file_size_mb"])
        if "block_above" in data:
            config.block_above = RiskLevel(data["block_above"])
        if "critical_files" in data:
            config.critical_files.update(data["critical_files"])
        return config


@dataclass
class SafetyViolation:
    """A detected safety violation."""

    rule: str
    description: str
    risk_level: RiskLevel

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "description": self.description,
            "risk_level": self.risk_level.value,
        }


# Dangerous patterns in generated Python code
_DANGEROUS_PYTHON_PATTERNS: list[tuple[str, str, RiskLevel]] = [
    # (regex_pattern, description, risk_level)
    (r"\bos\.system\b", "OS command execution in Python", RiskLevel.MEDIUM),
    (r"\bsubprocess\.\w+\b.*shell\s*=\s*True", "Shell subprocess in Python", RiskLevel.MEDIUM),
    (r"\bshutil\.rmtree\s*\(\s*['\"]?/", "Deleting root directory tree", RiskLevel.CRITICAL),
    (r"\bshutil\.rmtree\s*\(\s*['\"]?~", "Deleting home directory tree", RiskLevel.CRITICAL),
    (r"\bopen\s*\(\s*['\"]?/etc/", "Reading system configuration files", RiskLevel.LOW),
    (r"\bsocket\.socket\b", "Raw socket creation", RiskLevel.MEDIUM),
    (r"\b__import__\s*\(\s*['\"]?ctypes", "Loading native C library", RiskLevel.HIGH),
    (r"\beval\s*\(\s*input\s*\(", "Evaluating raw user input", RiskLevel.HIGH),
]


class SafetyGuard:
    """Checks file mutations against safety rules before they touch disk.

    Usage:
        guard = SafetyGuard()
        violations = guard.check_write("app.py", code)
        if guard.should_block(violations):
            raise PermissionError(guard.format_violations(violations))
    """

    def __init__(self, config: SafetyConfig | None = None) -> None:
        self.config = config or SafetyConfig()

    def check_python(self, code: str) -> list[SafetyViolation]:
        """Check Python code for safety violations."""
        return [
            SafetyViolation(rule="dangerous_python", description=desc, risk_level=risk)
            for pattern, desc, risk in _DANGEROUS_PYTHON_PATTERNS
            if re.search(pattern, code, re.IGNORECASE)
        ]

    def check_file_size(self, size_bytes: int) -> list[SafetyViolation]:
        """Check if a file size exceeds limits."""
        max_bytes = int(self.config.max_file_size_mb * 1024 * 1024)
        if size_bytes > max_bytes:
            return [
                SafetyViolation(
                    rule="file_too_large",
                    description=(
                        f"File size ({size_bytes / 1024 / 1024:.1f} MB) exceeds "
                        f"limit ({self.config.max_file_size_mb} MB)"
                    ),
                    risk_level=RiskLevel.HIGH,
                )
            ]
        return []

    def check_file_delete(self, path: str) -> list[SafetyViolation]:
        """Check if a file deletion targets critical project files."""
        # Normalise: strip leading ./ and trailing /
        normalised = path.removeprefix("./").rstrip("/")
        basename = normalised.rsplit("/", 1)[-1]

        if normalised == ".git" or normalised.startswith(".git/"):
            return [
                SafetyViolation(
                    rule="git_delete",
                    description="Attempted to delete .git directory or its contents",
                    risk_level=RiskLevel.CRITICAL,
                )
            ]
        if normalised in self.config.critical_files or basename in self.config.critical_files:
            return [
                SafetyViolation(
                    rule="critical_file_delete",
                    description=f"Attempted to delete critical project file: '{path}'",
                    risk_level=RiskLevel.HIGH,
                )
            ]
        return []

    def check_write(self, path: str, content: str) -> list[SafetyViolation]:
        """Check a pending file write: size always, code patterns for .py targets."""
        violations = self.check_file_size(len(content.encode("utf-8", errors="replace")))
        if path.endswith(".py"):
            violations.extend(self.check_python(content))
        return violations

    def should_block(self, violations: list[SafetyViolation]) -> bool:
        """Determine if violations should block the mutation."""
        threshold_idx = _LEVEL_ORDER.index(self.config.block_above)
        return any(_LEVEL_ORDER.index(v.risk_level) >= threshold_idx for v in violations)

    def format_violations(self, violations: list[SafetyViolation]) -> str:
        """Format violations into a human-readable string."""
        return "; ".join(f"{v.description} (risk: {v.risk_level.value})" for v in violations)


def load_safety_config(cwd: str) -> SafetyConfig:
    """Load safety config from .makercode.yml if available."""
    from makercode.config import load_config

    config_data = load_config(cwd)
    if config_data and isinstance(config_data.get("safety"), dict):
        return SafetyConfig.from_dict(config_data["safety"])
    return SafetyConfig()
