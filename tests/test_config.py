"""
Unit tests for configuration objects and small utilities.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aura_llm.config import AcquisitionConfig, InferenceConfig, ModelConfig, default_models_dir
from aura_llm.device import get_device
from aura_llm.utils import ProgressLogger, format_bytes


class TestModelConfig:

    def test_gpt2_aliases(self):
        config = ModelConfig.from_pretrained_dict({
            "vocab_size": 100, "n_embd": 32, "n_layer": 3, "n_head": 4,
            "n_positions": 64, "layer_norm_epsilon": 1e-6,
        })
        assert (config.hidden_size, config.n_layers, config.n_heads) == (32, 3, 4)
        assert config.max_position_embeddings == 64
        assert config.intermediate_size == 128
        assert config.layer_norm_eps == 1e-6
        assert config.head_dim == 8

    def test_defaults_for_missing_keys(self):
        config = ModelConfig.from_pretrained_dict({})
        assert config.vocab_size == 50257
        assert config.hidden_size == 4096
        assert config.n_layers == 24
        assert config.n_heads == 16
        assert config.max_position_embeddings == 2048

    def test_boolean_is_not_a_size(self):
        config = ModelConfig.from_pretrained_dict({"hidden_size": True, "n_embd": 64, "n_head": 4})
        assert config.hidden_size == 64

    def test_save_and_load(self, tmp_path):
        config = ModelConfig(vocab_size=10, hidden_size=8, n_layers=1, n_heads=2)
        path = str(tmp_path / "config.json")
        config.save(path)
        assert ModelConfig.load(path) == config

    def test_validate_heads(self):
        with pytest.raises(ValueError, match="divisible"):
            ModelConfig(hidden_size=10, n_heads=3).validate()

    @pytest.mark.parametrize("overrides", [
        {"hidden_size": "8"},
        {"n_layers": 0},
        {"vocab_size": 16.0},
        {"layer_norm_eps": -1.0},
    ])
    def test_validate_values(self, overrides):
        with pytest.raises(ValueError):
            ModelConfig(**{"hidden_size": 8, "n_heads": 2, "intermediate_size": 16, **overrides}).validate()


class TestInferenceConfig:

    def test_defaults(self):
        config = InferenceConfig()
        assert config.max_new_tokens == 50
        assert config.temperature == 0.7
        assert config.causal_mask
        config.validate()

    def test_unknown_policy(self):
        with pytest.raises(AssertionError):
            InferenceConfig(missing_weights="guess").validate()


class TestAcquisitionConfig:

    def test_model_dir(self, tmp_path):
        config = AcquisitionConfig(models_dir=str(tmp_path))
        assert config.local_name == "gpt-oss-20b-MLX-8bit"
        assert config.model_dir == os.path.join(str(tmp_path), "gpt-oss-20b-MLX-8bit")

    def test_model_name_override(self, tmp_path):
        config = AcquisitionConfig(models_dir=str(tmp_path), model_name="local")
        assert config.model_dir == os.path.join(str(tmp_path), "local")

    def test_dict_round_trip(self, tmp_path):
        config = AcquisitionConfig(models_dir=str(tmp_path), shard_count=3)
        assert AcquisitionConfig.from_dict(config.to_dict()) == config

    def test_models_dir_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AURA_MODELS_DIR", str(tmp_path))
        assert default_models_dir() == str(tmp_path)
        assert AcquisitionConfig().models_dir == str(tmp_path)

    def test_models_dir_default(self, monkeypatch):
        monkeypatch.delenv("AURA_MODELS_DIR", raising=False)
        assert default_models_dir().endswith(os.path.join(".aura", "models"))


class TestUtils:

    @pytest.mark.parametrize("n, expected", [
        (512, "512 B"),
        (1536, "1.5 KB"),
        (5 * 1024 ** 2, "5.0 MB"),
        (22 * 1024 ** 3, "22.0 GB"),
        (3000 * 1024 ** 3, "3000.0 GB"),
    ])
    def test_format_bytes(self, n, expected):
        assert format_bytes(n) == expected

    def test_progress_logger_throttles(self, tmp_path):
        logger = ProgressLogger(log_dir=str(tmp_path), quiet=True)
        for downloaded in range(0, 1001, 5):
            logger.progress(downloaded, 1000)
        logger.close()

        (log_name,) = os.listdir(tmp_path)
        with open(tmp_path / log_name) as f:
            lines = f.read().splitlines()
        assert len(lines) == 101
        assert lines[-1].startswith("download 100%")

    def test_cpu_device(self):
        assert get_device("cpu").type == "cpu"
        assert get_device("auto").type in ("cpu", "cuda", "mps")
