"""
Compute-device selection for local inference.

The model runs in float32 everywhere (all stored encodings are widened on
load), so unlike a training setup there is no mixed-precision or autocast
logic here: the only decision is WHERE the tensors live.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs): fastest option.
  2. MPS (Apple Silicon): Metal Performance Shaders on M-series Macs.
  3. CPU: always available; the default, since a 20B float32 model does not
     fit in most GPUs anyway.
"""

import torch


def get_device(requested: str = "cpu") -> torch.device:
    """
    Resolve a device string.

    "auto" picks CUDA → MPS → CPU. Any other value is passed to torch
    unchanged, so "cuda:1" works too.

    Raises:
        ValueError: An explicit accelerator was requested but is unavailable.
    """
    if requested == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return torch.device("mps")
        else:
            return torch.device("cpu")

    device = torch.device(requested)
    if device.type == "cuda" and not torch.cuda.is_available():
        raise ValueError("CUDA requested but not available")
    if device.type == "mps" and not (
        hasattr(torch.backends, "mps") and torch.backends.mps.is_available()
    ):
        raise ValueError("MPS requested but not available")
    return device


def device_info(device: torch.device) -> str:
    """
    Pretty-print device capabilities, printed once when a model is loaded.

    Returns:
        A human-readable string describing the device.
    """
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  CUDA Version: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)
