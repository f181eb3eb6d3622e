"""
Inference pipeline: autoregressive text generation with inverse-CDF sampling.

An LLM produces text one token at a time:
  1. Encode the prompt into tokens
  2. Run the model over the WHOLE sequence so far
  3. Take the logits at the last position and sample the next token
  4. Append it and go back to 2, until EOS or max_new_tokens

NO KV CACHE:
  Every step re-runs the full sequence from scratch, so a generation of N
  tokens costs O(N²) token-passes. That is acceptable only for short,
  demo-scale outputs, which is all this engine is for.

  When prompt + generated tokens exceed max_position_embeddings, the model
  sees only the most recent max_position_embeddings tokens.

SAMPLING:
  1. TEMPERATURE: logits / temperature
     - temperature < 1.0: sharper distribution → more deterministic
     - temperature > 1.0: flatter distribution → more random
     - temperature = 0:   greedy decoding (argmax)

  2. SOFTMAX → probability vector p over the vocabulary.

  3. INVERSE-CDF SAMPLING: draw u ~ Uniform[0, 1), walk the cumulative sum
     in vocabulary order and pick the first index whose cumulative
     probability reaches u.

       p      = [0.1, 0.2, 0.3, 0.4]
       cumsum = [0.1, 0.3, 0.6, 1.0]
       u = 0.25 → index 1        u = 0.6 → index 2

     Floating-point rounding can leave the last cumsum slightly below u;
     then the last index is returned.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import torch
import torch.nn.functional as F

from aura_llm.model import GPT
from aura_llm.tokenizer import Tokenizer


@dataclass
class GenerateResult:
    """Result of text generation with inference metrics."""
    text: str
    token_ids: list = field(default_factory=list)   # generated ids, EOS excluded
    prompt_tokens: int = 0      # tokens in the encoded prompt
    generated_tokens: int = 0   # tokens produced
    total_ms: float = 0.0       # total wall time (ms)
    temperature: float = 0.0    # sampling temperature used
    stopped_on_eos: bool = False

    @property
    def tok_per_sec(self) -> float:
        if self.total_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.total_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        lines = [
            f"Sampling       : temp={self.temperature}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"Stopped on EOS : {self.stopped_on_eos}",
            f"Speed          : {self.tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        return "\n".join(lines)


def sample_from_distribution(probs: torch.Tensor, draw: float) -> int:
    """
    Inverse-CDF sampling over a probability vector.

    Args:
        probs: Probabilities of shape (vocab_size,), in vocabulary order.
        draw: Uniform value in [0, 1).

    Returns:
        The first index whose cumulative probability is >= draw, or the last
        index if rounding keeps the total below the draw.
    """
    cumulative = torch.cumsum(probs.float(), dim=-1)
    hits = torch.nonzero(cumulative >= draw)
    if hits.numel() == 0:
        return probs.shape[-1] - 1
    return int(hits[0].item())


def sample_next_token(
    logits: torch.Tensor,
    temperature: float,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Pick the next token from last-position logits.

    Args:
        logits: Raw scores of shape (vocab_size,).
        temperature: Sampling temperature (0 = greedy).
        generator: Optional CPU generator for reproducible draws.

    Returns:
        Sampled token id.
    """
    logits = logits.float()
    if temperature == 0.0:
        return int(logits.argmax().item())

    probs = F.softmax(logits / temperature, dim=-1).cpu()
    draw = torch.rand(1, generator=generator).item()
    return sample_from_distribution(probs, draw)


@torch.inference_mode()
def generate_tokens(
    model: GPT,
    prompt_ids: list[int],
    max_new_tokens: int = 50,
    temperature: float = 0.7,
    eos_id: Optional[int] = None,
    generator: Optional[torch.Generator] = None,
    device: Optional[torch.device] = None,
) -> tuple[list[int], bool]:
    """
    Autoregressively extend a prompt.

    @torch.inference_mode():
      Disables autograd tracking entirely; nothing here needs gradients.

    Args:
        model: A loaded GPT.
        prompt_ids: Encoded prompt (must not be empty).
        max_new_tokens: Maximum tokens to generate.
        temperature: Sampling temperature (0 = greedy).
        eos_id: Stop as soon as this id is sampled (it is not returned).
        generator: Optional CPU generator for reproducible sampling.
        device: Device the model lives on.

    Returns:
        (generated ids, whether generation stopped on EOS)
    """
    if not prompt_ids:
        raise ValueError("prompt_ids must not be empty")

    window = model.config.max_position_embeddings
    tokens = list(prompt_ids)
    generated = []

    for _ in range(max_new_tokens):
        context = torch.tensor(tokens[-window:], dtype=torch.long, device=device)
        logits = model(context)[-1]
        next_id = sample_next_token(logits, temperature, generator)

        if eos_id is not None and next_id == eos_id:
            return generated, True

        tokens.append(next_id)
        generated.append(next_id)
        if len(generated) % 10 == 0:
            print(f"  → generated {len(generated)} tokens...")

    return generated, False


def generate(
    model: GPT,
    tokenizer: Tokenizer,
    prompt: str,
    max_new_tokens: int = 50,
    temperature: float = 0.7,
    generator: Optional[torch.Generator] = None,
    device: Optional[torch.device] = None,
) -> GenerateResult:
    """
    Generate a text continuation of `prompt`.

    An empty (or fully dropped) prompt starts from the EOS token when the
    tokenizer defines one.

    Raises:
        ValueError: The prompt encodes to nothing and there is no EOS token.
    """
    t_start = time.perf_counter()

    prompt_ids = tokenizer.encode(prompt)
    if not prompt_ids:
        if tokenizer.eos_id is None:
            raise ValueError("Prompt produced no tokens and the tokenizer has no EOS token")
        prompt_ids = [tokenizer.eos_id]
    print(f"Tokenized input: {prompt_ids[:10]}... ({len(prompt_ids)} tokens)")

    generated, stopped = generate_tokens(
        model,
        prompt_ids,
        max_new_tokens=max_new_tokens,
        temperature=temperature,
        eos_id=tokenizer.eos_id,
        generator=generator,
        device=device,
    )

    total_ms = (time.perf_counter() - t_start) * 1000
    return GenerateResult(
        text=tokenizer.decode(generated),
        token_ids=generated,
        prompt_tokens=len(prompt_ids),
        generated_tokens=len(generated),
        total_ms=total_ms,
        temperature=temperature,
        stopped_on_eos=stopped,
    )
