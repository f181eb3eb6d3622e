"""
GPT-style Transformer for local inference.

The architecture is the classic GPT-2 decoder, sized by ModelConfig and
filled with weights read from the downloaded shards:

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. FeedForward      two-layer MLP with GELU
  2. Attention        multi-head self-attention, separate Q/K/V/out projections
  3. TransformerBlock pre-norm block: LN → attention → residual, LN → MLP → residual
  4. GPT              token + learned position embeddings, N blocks, final LN, LM head

DATA FLOW FOR ONE SEQUENCE:
  tokens (seq,)
    → wte[tokens] + wpe[0..seq-1]        (seq, hidden)
    → block 0 … block N-1                (seq, hidden)
    → ln_f                               (seq, hidden)
    → lm_head                            (seq, vocab)   logits

WEIGHT NAMES:
  The module tree is laid out so state_dict() keys ARE the checkpoint names:

    transformer.wte.weight                         (vocab, hidden)
    transformer.wpe.weight                         (max_pos, hidden)
    transformer.h.{i}.ln_1.{weight,bias}           (hidden,)
    transformer.h.{i}.attn.q_proj.{weight,bias}    (hidden, hidden) / (hidden,)
    transformer.h.{i}.attn.k_proj.{weight,bias}
    transformer.h.{i}.attn.v_proj.{weight,bias}
    transformer.h.{i}.attn.out_proj.{weight,bias}
    transformer.h.{i}.ln_2.{weight,bias}
    transformer.h.{i}.mlp.fc1.{weight,bias}        (inter, hidden) / (inter,)
    transformer.h.{i}.mlp.fc2.{weight,bias}        (hidden, inter) / (hidden,)
    transformer.ln_f.{weight,bias}
    lm_head.{weight,bias}                          (vocab, hidden) / (vocab,)

  load_weights() also accepts the GPT-2 checkpoint spellings (fused c_attn,
  Conv1D layouts that need a transpose, names without the "transformer."
  prefix) and the LLaMA-style "model.embed_tokens.weight".

CAUSAL MASK:
  By default position i attends only to positions ≤ i. The first version of
  this engine applied NO mask (every position saw the future);
  GPT(config, causal_mask=False) reproduces that behavior on purpose.
"""

from dataclasses import dataclass, field

import torch
import torch.nn as nn
import torch.nn.functional as F

from aura_llm.config import MISSING_WEIGHT_POLICIES, ModelConfig
from aura_llm.dtypes import record_to_tensor
from aura_llm.errors import CorruptedError, MissingWeightError


# ═══════════════════════════════════════════════════════════════════════════
# 1. FeedForward
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    Position-wise MLP: fc1 → GELU → fc2.

    The GELU uses the tanh approximation, which is what GPT-2 family
    checkpoints were trained with.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.fc1 = nn.Linear(config.hidden_size, config.intermediate_size, bias=True)
        self.fc2 = nn.Linear(config.intermediate_size, config.hidden_size, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.fc2(F.gelu(self.fc1(x), approximate="tanh"))


# ═══════════════════════════════════════════════════════════════════════════
# 2. Attention
# ═══════════════════════════════════════════════════════════════════════════

class Attention(nn.Module):
    """
    Multi-head self-attention with separate projections.

    Data flow (batch B, sequence T, hidden H, heads h, head_dim d = H / h):
      x (B, T, H)
        ├─→ q_proj → (B, T, h, d) → transpose → (B, h, T, d)
        ├─→ k_proj → (B, T, h, d) → transpose → (B, h, T, d)
        └─→ v_proj → (B, T, h, d) → transpose → (B, h, T, d)

      softmax(Q·Kᵀ / √d [+ causal mask]) · V  → (B, h, T, d)
        → transpose → (B, T, H) → out_proj → (B, T, H)

    F.scaled_dot_product_attention computes exactly that formula; with
    is_causal=True it masks scores above the diagonal to -inf before the
    softmax.
    """

    def __init__(self, config: ModelConfig, causal: bool = True):
        super().__init__()
        self.n_heads = config.n_heads
        self.head_dim = config.head_dim
        self.causal = causal

        hidden = config.hidden_size
        self.q_proj = nn.Linear(hidden, hidden, bias=True)
        self.k_proj = nn.Linear(hidden, hidden, bias=True)
        self.v_proj = nn.Linear(hidden, hidden, bias=True)
        self.out_proj = nn.Linear(hidden, hidden, bias=True)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        batch_size, seq_len, _ = x.shape

        q = self.q_proj(x).view(batch_size, seq_len, self.n_heads, self.head_dim).transpose(1, 2)
        k = self.k_proj(x).view(batch_size, seq_len, self.n_heads, self.head_dim).transpose(1, 2)
        v = self.v_proj(x).view(batch_size, seq_len, self.n_heads, self.head_dim).transpose(1, 2)

        # A single position has nothing to mask.
        output = F.scaled_dot_product_attention(
            q, k, v, is_causal=(self.causal and seq_len > 1)
        )

        output = output.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return self.out_proj(output)


# ═══════════════════════════════════════════════════════════════════════════
# 3. TransformerBlock
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One decoder layer (pre-norm):

      h   = x + attn(ln_1(x))
      out = h + mlp(ln_2(h))
    """

    def __init__(self, config: ModelConfig, causal: bool = True):
        super().__init__()
        self.ln_1 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.attn = Attention(config, causal=causal)
        self.ln_2 = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.mlp = FeedForward(config)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        h = x + self.attn(self.ln_1(x))
        return h + self.mlp(self.ln_2(h))


# ═══════════════════════════════════════════════════════════════════════════
# 4. GPT
# ═══════════════════════════════════════════════════════════════════════════

class GPT(nn.Module):
    """
    The full decoder: embeddings, N TransformerBlocks, final LayerNorm and a
    linear projection to vocabulary logits.

    There is no KV cache. Generation re-runs the whole sequence every step,
    which is fine for short, demo-scale outputs.
    """

    def __init__(self, config: ModelConfig, causal_mask: bool = True):
        """
        Args:
            config: Architecture hyperparameters (validated here).
            causal_mask: Apply the standard causal mask in every block.
        """
        super().__init__()
        config.validate()
        self.config = config
        self.causal_mask = causal_mask

        self.transformer = nn.ModuleDict(dict(
            wte=nn.Embedding(config.vocab_size, config.hidden_size),
            wpe=nn.Embedding(config.max_position_embeddings, config.hidden_size),
            h=nn.ModuleList([
                TransformerBlock(config, causal=causal_mask)
                for _ in range(config.n_layers)
            ]),
            ln_f=nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps),
        ))
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=True)

    def forward(self, tokens: torch.Tensor) -> torch.Tensor:
        """
        Compute logits for every position.

        Args:
            tokens: Token ids, shape (seq_len,) or (batch, seq_len).

        Returns:
            Logits of shape (seq_len, vocab) or (batch, seq_len, vocab),
            matching the input rank.

        Raises:
            ValueError: The sequence is empty or longer than the position table.
        """
        squeeze = tokens.dim() == 1
        if squeeze:
            tokens = tokens.unsqueeze(0)

        seq_len = tokens.shape[1]
        if seq_len == 0:
            raise ValueError("Cannot run the model on an empty sequence")
        if seq_len > self.config.max_position_embeddings:
            raise ValueError(
                f"Sequence length {seq_len} exceeds max_position_embeddings "
                f"({self.config.max_position_embeddings})"
            )

        positions = torch.arange(seq_len, device=tokens.device)
        x = self.transformer.wte(tokens) + self.transformer.wpe(positions)
        for block in self.transformer.h:
            x = block(x)
        logits = self.lm_head(self.transformer.ln_f(x))

        return logits.squeeze(0) if squeeze else logits


# ═══════════════════════════════════════════════════════════════════════════
# 5. Weight loading
# ═══════════════════════════════════════════════════════════════════════════

# Names that may be absent without consulting the missing-weight policy.
# GPT-2 checkpoints have no LM-head bias; zero is the exact equivalent.
OPTIONAL_WEIGHTS = ("lm_head.bias",)

# Top-level GPT-2 modules saved without the "transformer." prefix.
_GPT2_ROOTS = ("wte.", "wpe.", "h.", "ln_f.")


def expected_weight_names(config: ModelConfig) -> list[str]:
    """Every parameter name a GPT of this config owns, in state_dict order."""
    names = ["transformer.wte.weight", "transformer.wpe.weight"]
    for i in range(config.n_layers):
        p = f"transformer.h.{i}"
        names += [f"{p}.ln_1.weight", f"{p}.ln_1.bias"]
        for proj in ("q_proj", "k_proj", "v_proj", "out_proj"):
            names += [f"{p}.attn.{proj}.weight", f"{p}.attn.{proj}.bias"]
        names += [f"{p}.ln_2.weight", f"{p}.ln_2.bias"]
        for fc in ("fc1", "fc2"):
            names += [f"{p}.mlp.{fc}.weight", f"{p}.mlp.{fc}.bias"]
    names += ["transformer.ln_f.weight", "transformer.ln_f.bias"]
    names += ["lm_head.weight", "lm_head.bias"]
    return names


@dataclass
class WeightLoadReport:
    loaded: list = field(default_factory=list)
    missing: list = field(default_factory=list)   # filled per policy (or zero bias)
    unused: list = field(default_factory=list)    # present in shards, not used by the model
    tied_lm_head: bool = False

    def summary(self) -> str:
        text = (
            f"{len(self.loaded)} weights loaded, {len(self.missing)} missing, "
            f"{len(self.unused)} unused"
        )
        if self.tied_lm_head:
            text += " (lm_head tied to token embedding)"
        return text


def _as_tensor(value) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        return value.to(torch.float32)
    return record_to_tensor(value)


def _canonicalize(tensors: dict) -> tuple[dict, list]:
    """
    Map checkpoint names onto this module tree's names.

    GPT-2 Conv1D weights are stored (in_features, out_features); nn.Linear
    wants (out_features, in_features), hence the transposes. The fused
    c_attn weight is (hidden, 3·hidden): transposed and split into equal
    q / k / v thirds.

    Returns:
        (canonical name → value, names that were not recognized)
    """
    canonical = {}
    unused = []
    for name, value in tensors.items():
        key = name
        if key == "model.embed_tokens.weight":
            key = "transformer.wte.weight"
        elif key.startswith(_GPT2_ROOTS):
            key = "transformer." + key

        if ".attn.c_attn." in key:
            prefix, kind = key.split(".attn.c_attn.")
            t = _as_tensor(value)
            if kind == "weight":
                t = t.t()
            parts = t.chunk(3, dim=0)
            for proj, part in zip(("q_proj", "k_proj", "v_proj"), parts):
                canonical[f"{prefix}.attn.{proj}.{kind}"] = part.contiguous()
        elif ".attn.c_proj." in key:
            prefix, kind = key.split(".attn.c_proj.")
            t = _as_tensor(value)
            canonical[f"{prefix}.attn.out_proj.{kind}"] = t.t().contiguous() if kind == "weight" else t
        elif ".mlp.c_fc." in key:
            prefix, kind = key.split(".mlp.c_fc.")
            t = _as_tensor(value)
            canonical[f"{prefix}.mlp.fc1.{kind}"] = t.t().contiguous() if kind == "weight" else t
        elif ".mlp.c_proj." in key:
            prefix, kind = key.split(".mlp.c_proj.")
            t = _as_tensor(value)
            canonical[f"{prefix}.mlp.fc2.{kind}"] = t.t().contiguous() if kind == "weight" else t
        elif key.endswith(".attn.bias") or key.endswith(".attn.masked_bias"):
            # GPT-2 stores its causal mask as a buffer; the mask is built here instead.
            unused.append(name)
        else:
            canonical[key] = value
    return canonical, unused


def load_weights(model: GPT, tensors: dict, policy: str = "zeros") -> WeightLoadReport:
    """
    Copy named tensors into a GPT.

    Args:
        model: Target model.
        tensors: name → torch.Tensor, or name → TensorRecord (converted to
                 float32 on demand, one tensor at a time).
        policy: What to do with a parameter no tensor provides:
                "zeros": fill with zeros (degraded, non-fatal)
                "init":  keep the module's initialization
                "error": raise MissingWeightError

    Returns:
        WeightLoadReport listing loaded, missing and unused names.

    Raises:
        CorruptedError: A tensor's shape disagrees with the configuration.
        MissingWeightError: policy == "error" and something is missing.
    """
    if policy not in MISSING_WEIGHT_POLICIES:
        raise ValueError(f"Unknown missing-weight policy '{policy}'")

    canonical, unused = _canonicalize(tensors)
    params = model.state_dict(keep_vars=True)
    report = WeightLoadReport()

    if "lm_head.weight" not in canonical and "transformer.wte.weight" in canonical:
        canonical["lm_head.weight"] = canonical["transformer.wte.weight"]
        report.tied_lm_head = True

    missing = [n for n in params if n not in canonical]
    required_missing = [n for n in missing if n not in OPTIONAL_WEIGHTS]
    if policy == "error" and required_missing:
        shown = ", ".join(required_missing[:5])
        more = f" (+{len(required_missing) - 5} more)" if len(required_missing) > 5 else ""
        raise MissingWeightError(f"Missing weights: {shown}{more}")

    report.unused = unused + sorted(n for n in canonical if n not in params)

    with torch.no_grad():
        for name, param in params.items():
            if name in canonical:
                value = canonical[name]
                shape = tuple(value.shape)
                if shape != tuple(param.shape):
                    raise CorruptedError(
                        f"Tensor {name} has shape {list(shape)}, "
                        f"expected {list(param.shape)}",
                        filename=getattr(value, "source", None),
                    )
                param.copy_(_as_tensor(value))
                report.loaded.append(name)
            else:
                report.missing.append(name)
                if policy == "zeros" or name in OPTIONAL_WEIGHTS:
                    param.zero_()

    return report
