"""
Unit tests for the GPT architecture and weight loading.

Tests verify:
  1. Forward pass produces the right logits shape for 1-D and 2-D input
  2. The causal mask hides future positions (and can be turned off)
  3. load_weights copies every parameter and applies the missing-weight policy
  4. GPT-2 checkpoint spellings load into the same module tree
  5. Shape mismatches are reported as CorruptedError naming the shard
"""

import os
import sys

import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aura_llm import container
from aura_llm.errors import CorruptedError, MissingWeightError
from aura_llm.model import GPT, expected_weight_names, load_weights

from helpers import tiny_model_config, tiny_weights


@pytest.fixture
def config():
    return tiny_model_config()


@pytest.fixture
def model(config):
    torch.manual_seed(0)
    model = GPT(config)
    model.eval()
    return model


def as_torch(weights: dict) -> dict:
    return {name: torch.from_numpy(array) for name, array in weights.items()}


class TestForward:

    def test_output_shape_1d(self, model, config):
        tokens = torch.tensor([3, 4, 5])
        assert model(tokens).shape == (3, config.vocab_size)

    def test_output_shape_2d(self, model, config):
        tokens = torch.randint(0, config.vocab_size, (2, 5))
        assert model(tokens).shape == (2, 5, config.vocab_size)

    def test_empty_sequence(self, model):
        with pytest.raises(ValueError, match="empty"):
            model(torch.tensor([], dtype=torch.long))

    def test_sequence_too_long(self, model, config):
        with pytest.raises(ValueError, match="max_position_embeddings"):
            model(torch.zeros(config.max_position_embeddings + 1, dtype=torch.long))

    def test_state_dict_names(self, model, config):
        assert list(model.state_dict()) == expected_weight_names(config)


class TestCausalMask:

    def test_future_tokens_do_not_change_the_past(self, model):
        with torch.no_grad():
            short = model(torch.tensor([3, 4]))
            long = model(torch.tensor([3, 4, 9, 10]))
        assert torch.allclose(short, long[:2], atol=1e-5)

    def test_unmasked_attention_sees_the_future(self, config):
        torch.manual_seed(0)
        model = GPT(config, causal_mask=False)
        model.eval()
        with torch.no_grad():
            short = model(torch.tensor([3, 4]))
            long = model(torch.tensor([3, 4, 9, 10]))
        assert not torch.allclose(short, long[:2], atol=1e-5)

    def test_single_token_same_either_way(self, config):
        weights = as_torch(tiny_weights(config))
        masked, unmasked = GPT(config), GPT(config, causal_mask=False)
        load_weights(masked, weights)
        load_weights(unmasked, weights)
        with torch.no_grad():
            assert torch.allclose(masked(torch.tensor([7])), unmasked(torch.tensor([7])))


class TestLoadWeights:

    def test_full_round_trip(self, model, config):
        weights = {k: v.clone() for k, v in model.state_dict().items()}
        fresh = GPT(config)
        report = load_weights(fresh, weights, policy="error")

        assert report.missing == []
        assert report.unused == []
        assert len(report.loaded) == len(weights)
        tokens = torch.tensor([3, 4, 5])
        with torch.no_grad():
            assert torch.allclose(fresh(tokens), model(tokens))

    def test_from_container_records(self, config):
        weights = tiny_weights(config)
        records = container.parse(container.serialize(weights), source="shard.safetensors")
        model = GPT(config)
        load_weights(model, records, policy="error")

        expected = torch.from_numpy(weights["transformer.h.1.mlp.fc2.weight"])
        assert torch.equal(model.transformer.h[1].mlp.fc2.weight.data, expected)

    def test_from_f16_records(self, config):
        weights = {k: v.astype(np.float16) for k, v in tiny_weights(config).items()}
        records = container.parse(container.serialize(weights))
        model = GPT(config)
        load_weights(model, records)

        expected = torch.from_numpy(weights["transformer.wte.weight"].astype(np.float32))
        assert torch.equal(model.transformer.wte.weight.data, expected)

    def test_missing_zeros(self, config):
        weights = as_torch(tiny_weights(config))
        del weights["transformer.ln_f.weight"]
        model = GPT(config)
        report = load_weights(model, weights, policy="zeros")

        assert report.missing == ["transformer.ln_f.weight"]
        assert torch.count_nonzero(model.transformer.ln_f.weight) == 0

    def test_missing_init_keeps_default(self, config):
        weights = as_torch(tiny_weights(config))
        del weights["transformer.ln_f.weight"]
        model = GPT(config)
        load_weights(model, weights, policy="init")
        # LayerNorm initializes its weight to ones
        assert torch.equal(model.transformer.ln_f.weight.data, torch.ones(config.hidden_size))

    def test_missing_error(self, config):
        weights = as_torch(tiny_weights(config))
        del weights["transformer.h.0.attn.q_proj.weight"]
        with pytest.raises(MissingWeightError, match="q_proj"):
            load_weights(GPT(config), weights, policy="error")

    def test_unknown_policy(self, config):
        with pytest.raises(ValueError):
            load_weights(GPT(config), {}, policy="guess")

    def test_lm_head_bias_is_optional(self, config):
        weights = as_torch(tiny_weights(config))
        del weights["lm_head.bias"]
        model = GPT(config)
        report = load_weights(model, weights, policy="error")

        assert report.missing == ["lm_head.bias"]
        assert torch.count_nonzero(model.lm_head.bias) == 0

    def test_tied_lm_head(self, config):
        weights = as_torch(tiny_weights(config))
        del weights["lm_head.weight"]
        model = GPT(config)
        report = load_weights(model, weights, policy="error")

        assert report.tied_lm_head
        assert "tied" in report.summary()
        assert torch.equal(model.lm_head.weight.data, weights["transformer.wte.weight"])

    def test_unknown_names_reported(self, config):
        weights = as_torch(tiny_weights(config))
        weights["vision_tower.proj.weight"] = torch.zeros(2, 2)
        report = load_weights(GPT(config), weights)
        assert report.unused == ["vision_tower.proj.weight"]

    def test_llama_embedding_name(self, config):
        weights = as_torch(tiny_weights(config))
        weights["model.embed_tokens.weight"] = weights.pop("transformer.wte.weight")
        model = GPT(config)
        report = load_weights(model, weights, policy="error")
        assert "transformer.wte.weight" in report.loaded

    def test_shape_mismatch_names_shard(self, config):
        weights = tiny_weights(config)
        weights["transformer.wpe.weight"] = np.zeros((4, config.hidden_size), dtype=np.float32)
        records = container.parse(
            container.serialize(weights), source="model-00001-of-00002.safetensors"
        )
        with pytest.raises(CorruptedError, match="transformer.wpe.weight") as exc:
            load_weights(GPT(config), records)
        assert exc.value.filename == "model-00001-of-00002.safetensors"


def to_gpt2_names(weights: dict, n_layers: int) -> dict:
    """Re-express canonical weights in the GPT-2 checkpoint layout."""
    out = {}
    for name in ("wte.weight", "wpe.weight", "ln_f.weight", "ln_f.bias"):
        out[name] = weights[f"transformer.{name}"]
    for i in range(n_layers):
        src, dst = f"transformer.h.{i}", f"h.{i}"
        for ln in ("ln_1", "ln_2"):
            out[f"{dst}.{ln}.weight"] = weights[f"{src}.{ln}.weight"]
            out[f"{dst}.{ln}.bias"] = weights[f"{src}.{ln}.bias"]
        qkv = [weights[f"{src}.attn.{p}.weight"] for p in ("q_proj", "k_proj", "v_proj")]
        out[f"{dst}.attn.c_attn.weight"] = torch.cat(qkv, dim=0).t().contiguous()
        out[f"{dst}.attn.c_attn.bias"] = torch.cat(
            [weights[f"{src}.attn.{p}.bias"] for p in ("q_proj", "k_proj", "v_proj")]
        )
        out[f"{dst}.attn.c_proj.weight"] = weights[f"{src}.attn.out_proj.weight"].t().contiguous()
        out[f"{dst}.attn.c_proj.bias"] = weights[f"{src}.attn.out_proj.bias"]
        out[f"{dst}.mlp.c_fc.weight"] = weights[f"{src}.mlp.fc1.weight"].t().contiguous()
        out[f"{dst}.mlp.c_fc.bias"] = weights[f"{src}.mlp.fc1.bias"]
        out[f"{dst}.mlp.c_proj.weight"] = weights[f"{src}.mlp.fc2.weight"].t().contiguous()
        out[f"{dst}.mlp.c_proj.bias"] = weights[f"{src}.mlp.fc2.bias"]
        out[f"{dst}.attn.bias"] = torch.ones(1, 1, 16, 16)
    return out


def test_gpt2_checkpoint_layout(model, config):
    canonical = {k: v.clone() for k, v in model.state_dict().items()}
    gpt2 = to_gpt2_names(canonical, config.n_layers)

    fresh = GPT(config)
    report = load_weights(fresh, gpt2, policy="init")

    # GPT-2 has a tied head and no lm_head bias
    assert report.tied_lm_head
    assert report.missing == ["lm_head.bias"]
    assert report.unused == ["h.0.attn.bias", "h.1.attn.bias"]
    for name, value in fresh.state_dict().items():
        if name.startswith("transformer."):
            assert torch.allclose(value, canonical[name]), name
