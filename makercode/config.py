"""Configuration dataclass and `.makercode.yml` loading."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

CONFIG_FILENAME = ".makercode.yml"


@dataclass
class MakerConfig:
    """Settings shared by every command.

    Resolution order in the CLI: command-line flags > the `maker` section
    of `.makercode.yml` > these defaults.
    """

    model_name: str = "claude-sonnet-4-6"
    api_base: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1024
    default_k: int = 3
    max_candidates: int = 10
    similarity_threshold: float = 0.7
    base_reliability: float = 0.7
    context_token_budget: int = 500
    use_ai: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MakerConfig:
        """Create config from a dictionary, ignoring unknown keys.

        ``model`` is accepted as an alias of ``model_name``.
        """
        config = cls()
        if "model" in data and "model_name" not in data:
            config.model_name = str(data["model"])
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            default = getattr(config, f.name)
            value = data[f.name]
            if isinstance(default, bool):
                value = bool(value)
            elif isinstance(default, int):
                value = int(value)
            elif isinstance(default, float):
                value = float(value)
            else:
                value = str(value)
            setattr(config, f.name, value)
        return config

    def merge(self, **overrides: Any) -> MakerConfig:
        """Return a copy with every non-None override applied."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in overrides.items() if v is not None})
        return MakerConfig(**data)


def load_config(cwd: str) -> dict[str, Any] | None:
    """Load config from .makercode.yml if it exists, else return None."""
    import yaml

    config_path = Path(cwd) / CONFIG_FILENAME
    if not config_path.exists():
        return None
    with config_path.open() as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else None


def load_maker_config(cwd: str) -> MakerConfig:
    """The `maker` section of .makercode.yml as a MakerConfig (defaults when absent)."""
    data = load_config(cwd)
    if data and isinstance(data.get("maker"), dict):
        return MakerConfig.from_dict(data["maker"])
    return MakerConfig()
