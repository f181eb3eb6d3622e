"""
Configuration for model acquisition and local inference.

This module is the SINGLE SOURCE OF TRUTH for every tunable value. No magic
numbers should appear anywhere else in the codebase: download retry counts,
timeouts, shard layout, sampling temperature and architecture defaults are
all defined here and imported where needed.

Three dataclasses cover the three concerns:
  1. ModelConfig:       the transformer's shape, read from the model's config.json
  2. InferenceConfig:   how a loaded model is run (sampling, device, policies)
  3. AcquisitionConfig: where the model comes from and where it lives on disk

Like the rest of the codebase we treat these as read-only after creation and
serialize them with dataclasses.asdict().
"""

from dataclasses import dataclass, field, asdict
from typing import Optional
import json
import os


# Policies for a weight that the model expects but no shard provides.
MISSING_WEIGHT_POLICIES = ("zeros", "init", "error")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the GPT-style inference model.

    The values come from the downloaded config.json. Every field has a default
    that is applied when the source document does not mention it, so a sparse
    or unusual config still produces a usable (if degraded) model.

    SHAPES DERIVED FROM THESE FIELDS:
    ─────────────────────────────────────────────
    Token embedding:         (vocab_size, hidden_size)
    Position embedding:      (max_position_embeddings, hidden_size)
    Per layer:
      q/k/v/out projections: (hidden_size, hidden_size) + bias
      fc1:                   (intermediate_size, hidden_size) + bias
      fc2:                   (hidden_size, intermediate_size) + bias
      2× LayerNorm:          (hidden_size,) weight + bias
    Final LayerNorm:         (hidden_size,) weight + bias
    LM head:                 (vocab_size, hidden_size) + bias
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # Number of rows in the token embedding and columns in the logits.
    # 50257 is the GPT-2 BPE vocabulary, the fallback when config.json is silent.
    vocab_size: int = 50257

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the residual stream.
    hidden_size: int = 4096

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 24

    # ── Attention Heads ────────────────────────────────────────────────────
    # head_dim = hidden_size / n_heads; must divide evenly.
    n_heads: int = 16

    # ── Sequence Length ────────────────────────────────────────────────────
    # Rows of the learned absolute position table. Longer sequences are
    # cropped to the most recent window during generation.
    max_position_embeddings: int = 2048

    # ── Feed-Forward Network ───────────────────────────────────────────────
    # Hidden width of the two-layer GELU MLP. None means 4 × hidden_size,
    # the classic GPT ratio.
    intermediate_size: Optional[int] = None

    # ── Normalization ──────────────────────────────────────────────────────
    layer_norm_eps: float = 1e-5

    def __post_init__(self):
        if self.intermediate_size is None:
            self.intermediate_size = 4 * self.hidden_size

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (hidden_size / n_heads)."""
        assert self.hidden_size % self.n_heads == 0, (
            f"hidden_size ({self.hidden_size}) must be divisible by n_heads ({self.n_heads})"
        )
        return self.hidden_size // self.n_heads

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation to catch configuration errors early
        rather than getting cryptic shape mismatch errors deep in the model.

        Raises:
            ValueError: A size is not a positive integer, the epsilon is not
                        a positive number, or n_heads does not divide
                        hidden_size.
        """
        for name in (
            "vocab_size", "hidden_size", "n_layers", "n_heads",
            "max_position_embeddings", "intermediate_size",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        eps = self.layer_norm_eps
        if not isinstance(eps, (int, float)) or isinstance(eps, bool) or eps <= 0:
            raise ValueError(f"layer_norm_eps must be a positive number, got {eps!r}")
        if self.hidden_size % self.n_heads != 0:
            raise ValueError(
                f"hidden_size ({self.hidden_size}) must be divisible by n_heads ({self.n_heads})"
            )

    @classmethod
    def from_pretrained_dict(cls, d: dict) -> "ModelConfig":
        """
        Build a config from a Hugging Face style config.json document.

        Different model families spell the same hyperparameter differently
        (GPT-2 says n_embd, LLaMA says hidden_size). The first alias present
        wins; anything missing keeps the dataclass default.
        """
        aliases = {
            "vocab_size": ("vocab_size",),
            "hidden_size": ("hidden_size", "n_embd", "d_model"),
            "n_layers": ("num_hidden_layers", "n_layer", "n_layers"),
            "n_heads": ("num_attention_heads", "n_head", "n_heads"),
            "max_position_embeddings": ("max_position_embeddings", "n_positions", "n_ctx"),
            "intermediate_size": ("intermediate_size", "n_inner"),
            "layer_norm_eps": ("layer_norm_epsilon", "layer_norm_eps", "rms_norm_eps"),
        }
        kwargs = {}
        for field_name, keys in aliases.items():
            for key in keys:
                value = d.get(key)
                # bool is an int subclass; a stray true/false is not a size
                if value is not None and not isinstance(value, bool):
                    kwargs[field_name] = value
                    break
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """Reconstruct from dictionary produced by to_dict()."""
        return cls(**d)

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load a config.json (Hugging Face style or our own to_dict output)."""
        with open(path, "r") as f:
            return cls.from_pretrained_dict(json.load(f))


@dataclass
class InferenceConfig:
    """
    How a loaded model is run.

    None of these affect what gets downloaded; they can change between
    sessions without touching the files on disk.
    """

    # ── Generation ─────────────────────────────────────────────────────────
    # Hard cap on tokens produced per request. Every step re-runs the full
    # sequence (no KV cache), so cost grows quadratically with this value.
    max_new_tokens: int = 50

    # Logits are divided by this before softmax. 0.0 means greedy argmax.
    temperature: float = 0.7

    # Seed for the sampling generator. None draws from the global RNG.
    seed: Optional[int] = None

    # ── Device ─────────────────────────────────────────────────────────────
    # "cpu", "cuda", "mps", or "auto" (CUDA → MPS → CPU).
    device: str = "cpu"

    # ── Attention Masking ──────────────────────────────────────────────────
    # True applies the standard causal (upper-triangular) mask so position i
    # only attends to positions ≤ i. False lets every position attend to the
    # whole sequence, which is how the first version of this engine behaved.
    causal_mask: bool = True

    # ── Weight Loading Policies ────────────────────────────────────────────
    # What to do with a parameter no shard provides:
    #   "zeros": fill with zeros (degraded, non-fatal)
    #   "init":  keep the module's default initialization
    #   "error": refuse to load (MissingWeightError)
    missing_weights: str = "zeros"

    # Two shards defining the same tensor name. False: the later shard wins
    # and a warning is printed. True: CorruptedError.
    strict_tensor_names: bool = False

    def validate(self) -> None:
        assert self.max_new_tokens > 0, "max_new_tokens must be positive"
        assert self.temperature >= 0.0, "temperature must be non-negative"
        assert self.missing_weights in MISSING_WEIGHT_POLICIES, (
            f"missing_weights must be one of {MISSING_WEIGHT_POLICIES}, "
            f"got '{self.missing_weights}'"
        )

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "InferenceConfig":
        return cls(**d)


def default_models_dir() -> str:
    """
    Application-private directory holding one subdirectory per model.

    AURA_MODELS_DIR overrides the default ~/.aura/models.
    """
    override = os.environ.get("AURA_MODELS_DIR")
    if override:
        return override
    return os.path.join(os.path.expanduser("~"), ".aura", "models")


@dataclass
class AcquisitionConfig:
    """
    Where the model comes from, how it is fetched, and where it lives on disk.

    DISK LAYOUT:
      {models_dir}/{model_name}/
        config.json, tokenizer.json, ...            (metadata files)
        model-00001-of-00005.safetensors, ...       (weight shards)
        model-00003-of-00005.safetensors.tmp        (only while downloading)

    DOWNLOAD BUDGET:
      The 8-bit 20B checkpoint is ~22 GB across 5 shards. Over a residential
      connection that is hours, hence the long per-file resource timeout.
    """

    # ── Remote Location ────────────────────────────────────────────────────
    repo_id: str = "lmstudio-community/gpt-oss-20b-MLX-8bit"
    url_template: str = "https://huggingface.co/{repo_id}/resolve/main/{filename}?download=1"

    # ── Local Location ─────────────────────────────────────────────────────
    models_dir: str = field(default_factory=default_models_dir)
    # Subdirectory name; None means the last path component of repo_id.
    model_name: Optional[str] = None

    # ── Shard Layout ───────────────────────────────────────────────────────
    # Shards are named model-<i>-of-<n>.<ext> with 5-digit zero padding.
    shard_count: int = 5
    shard_extension: str = "safetensors"
    metadata_files: tuple = (
        "config.json",
        "tokenizer.json",
        "tokenizer_config.json",
        "model.safetensors.index.json",
        "generation_config.json",
        "special_tokens_map.json",
    )

    # ── Integrity ──────────────────────────────────────────────────────────
    # A shard smaller than this is treated as absent/corrupt during the
    # readiness check. Real shards are gigabytes; 1 MiB catches error pages
    # and truncated writes.
    min_shard_bytes: int = 1024 * 1024

    # ── Progress Estimation ────────────────────────────────────────────────
    # Used when HEAD probing fails for every file.
    estimated_total_bytes: int = 22 * 1024 ** 3

    # ── Retry Policy ───────────────────────────────────────────────────────
    # Delay before attempt n+1 is min(backoff_base ** n, backoff_cap) seconds.
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_cap: float = 30.0

    # ── Transfer ───────────────────────────────────────────────────────────
    chunk_size: int = 1024 * 1024
    # Connect and time-to-first-byte budget.
    connect_timeout: float = 180.0
    # Wall-clock budget for one file, checked between chunks.
    resource_timeout: float = 7200.0
    user_agent: str = "aura-llm/0.1 (offline model downloader)"

    @property
    def local_name(self) -> str:
        return self.model_name or self.repo_id.rstrip("/").split("/")[-1]

    @property
    def model_dir(self) -> str:
        return os.path.join(self.models_dir, self.local_name)

    def validate(self) -> None:
        assert self.repo_id, "repo_id must be set"
        assert self.shard_count > 0, "shard_count must be positive"
        assert self.max_attempts > 0, "max_attempts must be positive"
        assert self.chunk_size > 0, "chunk_size must be positive"
        assert self.min_shard_bytes >= 0, "min_shard_bytes must be non-negative"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["metadata_files"] = list(self.metadata_files)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "AcquisitionConfig":
        d = dict(d)
        if "metadata_files" in d:
            d["metadata_files"] = tuple(d["metadata_files"])
        return cls(**d)
