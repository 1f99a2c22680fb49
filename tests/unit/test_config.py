"""Tests for configuration loading and merging."""

from __future__ import annotations

from makercode.config import CONFIG_FILENAME, MakerConfig, load_config, load_maker_config


class TestMakerConfig:
    def test_defaults(self):
        config = MakerConfig()
        assert config.default_k == 3
        assert config.similarity_threshold == 0.7
        assert config.use_ai is True

    def test_from_dict_coerces_and_ignores_unknown(self):
        config = MakerConfig.from_dict(
            {"model": "gpt-4o-mini", "max_candidates": "7", "temperature": 1, "colour": "red"}
        )
        assert config.model_name == "gpt-4o-mini"
        assert config.max_candidates == 7
        assert config.temperature == 1.0
        assert isinstance(config.temperature, float)

    def test_model_name_wins_over_alias(self):
        config = MakerConfig.from_dict({"model": "a", "model_name": "b"})
        assert config.model_name == "b"

    def test_merge_ignores_none(self):
        base = MakerConfig(max_candidates=4)
        merged = base.merge(max_candidates=None, temperature=0.2)
        assert merged.max_candidates == 4
        assert merged.temperature == 0.2
        assert base.temperature == 0.7


class TestLoading:
    def test_missing_file(self, tmp_path):
        assert load_config(str(tmp_path)) is None
        assert load_maker_config(str(tmp_path)) == MakerConfig()

    def test_reads_maker_section(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            "maker:\n  model: gpt-4o-mini\n  default_k: 5\nsafety:\n  max_file_size_mb: 2\n"
        )
        data = load_config(str(tmp_path))
        assert data["safety"] == {"max_file_size_mb": 2}
        config = load_maker_config(str(tmp_path))
        assert config.model_name == "gpt-4o-mini"
        assert config.default_k == 5

    def test_non_mapping_yaml(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("- just\n- a list\n")
        assert load_config(str(tmp_path)) is None
        assert load_maker_config(str(tmp_path)) == MakerConfig()
