"""
aura-llm: offline acquisition and local inference for a sharded language model.

This package downloads a multi-gigabyte checkpoint, verifies it, and runs a
GPT-style transformer over it entirely on the local machine.

Key modules:
  - config:      Model, inference and acquisition configuration
  - errors:      Error kinds shared by every layer
  - container:   Length-prefixed tensor container (safetensors) parser
  - dtypes:      F32 / F16 / BF16 → float32 conversion
  - tokenizer:   Vocabulary tokenizer with character fallback
  - manifest:    The files that make up one model
  - download:    Resumable HTTP transfer and post-download validation
  - acquisition: Readiness state machine and multi-file download
  - model:       GPT architecture and weight loading
  - generate:    Inverse-CDF sampling and the generation loop
  - service:     Loaded session and the UI-facing facade
  - device:      Compute-device selection (CUDA/MPS/CPU)
  - utils:       Seeding, timing, byte formatting, progress logging
"""

__version__ = "0.1.0"
