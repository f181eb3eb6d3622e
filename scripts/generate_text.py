"""
Interactive text generation against the locally downloaded model.

USAGE:
    # Interactive mode (type prompts, get completions)
    python scripts/generate_text.py

    # Single prompt
    python scripts/generate_text.py --prompt "Once upon a time"

    # Adjust generation parameters
    python scripts/generate_text.py --temperature 0.5 --max-new-tokens 30 --seed 42

    # Let every position attend to the whole prompt
    python scripts/generate_text.py --no-causal-mask

PREREQUISITES:
    The model must be downloaded first: python scripts/download_model.py

WHAT THIS SCRIPT DOES:
    1. Checks the model directory (the model must be READY)
    2. Loads tokenizer, config and weight shards into a LoadedSession
    3. Enters an interactive loop where you type prompts and the model
       generates continuations
    4. Displays the generated text with timing information
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aura_llm.acquisition import ModelAcquisitionManager, ModelState
from aura_llm.config import AcquisitionConfig, InferenceConfig, MISSING_WEIGHT_POLICIES, default_models_dir
from aura_llm.errors import ModelError
from aura_llm.service import LocalLLMService
from aura_llm.utils import set_seed


def interactive_loop(service: LocalLLMService, args: argparse.Namespace) -> None:
    """Run an interactive generation loop."""
    print("\n" + "=" * 60)
    print("Interactive Text Generation")
    print("=" * 60)
    print(f"Temperature: {args.temperature}")
    print(f"Max new tokens: {args.max_new_tokens}")
    print(f"Causal mask: {not args.no_causal_mask}")
    print("\nType a prompt and press Enter. Type 'quit' to exit.")
    print("Type 'stats' to see statistics of the last generation.")
    print("=" * 60 + "\n")

    while True:
        try:
            prompt = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not prompt:
            continue
        if prompt.lower() == "quit":
            print("Goodbye!")
            break
        if prompt.lower() == "stats":
            if service.last_result is not None:
                print(service.last_result.stats_string())
            continue

        try:
            text = service.generate_quick(prompt)
        except ModelError as e:
            print(f"Error: {e}")
            continue
        print(f"\n{text}\n")


def main():
    parser = argparse.ArgumentParser(
        description="Generate text with the locally downloaded model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--repo-id", type=str, default=AcquisitionConfig.repo_id,
        help="Repository id the model was downloaded from"
    )
    parser.add_argument(
        "--shard-count", type=int, default=AcquisitionConfig.shard_count,
        help="Number of weight shards"
    )
    parser.add_argument(
        "--models-dir", type=str, default=default_models_dir(),
        help="Directory holding one subdirectory per model"
    )
    parser.add_argument(
        "--prompt", type=str, default=None,
        help="Single prompt to generate from (if not provided, enters interactive mode)"
    )
    parser.add_argument(
        "--max-new-tokens", type=int, default=InferenceConfig.max_new_tokens,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--temperature", type=float, default=InferenceConfig.temperature,
        help="Sampling temperature (0=greedy, 1=default, >1=more random)"
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Seed for reproducible sampling"
    )
    parser.add_argument(
        "--device", type=str, default=InferenceConfig.device,
        help="cpu, cuda, mps or auto"
    )
    parser.add_argument(
        "--no-causal-mask", action="store_true",
        help="Let every position attend to the whole sequence"
    )
    parser.add_argument(
        "--missing-weights", type=str, default=InferenceConfig.missing_weights,
        choices=MISSING_WEIGHT_POLICIES,
        help="What to do with weights no shard provides"
    )
    parser.add_argument(
        "--strict-tensor-names", action="store_true",
        help="Fail when two shards define the same tensor"
    )

    args = parser.parse_args()
    if args.seed is not None:
        set_seed(args.seed)

    manager = ModelAcquisitionManager(AcquisitionConfig(
        repo_id=args.repo_id,
        models_dir=args.models_dir,
        shard_count=args.shard_count,
    ))
    if manager.state != ModelState.READY:
        print("Model is not downloaded. Run: python scripts/download_model.py")
        sys.exit(1)

    service = LocalLLMService(manager, InferenceConfig(
        max_new_tokens=args.max_new_tokens,
        temperature=args.temperature,
        seed=args.seed,
        device=args.device,
        causal_mask=not args.no_causal_mask,
        missing_weights=args.missing_weights,
        strict_tensor_names=args.strict_tensor_names,
    ))

    try:
        service.load()
    except ModelError as e:
        print(f"Failed to load model: {e}")
        if manager.last_error:
            print(f"State: {manager.state.value} ({manager.last_error})")
        sys.exit(1)

    if args.prompt:
        print(f"\n{service.generate(args.prompt)}")
        print(f"\n{service.last_result.stats_string()}")
    else:
        interactive_loop(service, args)


if __name__ == "__main__":
    main()
