"""
Utility functions shared by acquisition and inference.

Cross-cutting concerns that don't belong in any specific component:
reproducibility (seeding), diagnostics (parameter counting, byte sizes),
timing, and progress logging.

These utilities are intentionally simple: no frameworks, no dependencies
beyond PyTorch, NumPy and the standard library.
"""

import os
import random
import time
from datetime import datetime
from typing import Optional

import numpy as np
import torch
import torch.nn as nn


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch (CPU and CUDA) random generators.

    Sampling draws its uniform values from torch, so with a fixed seed the
    same prompt and weights generate the same text.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(model: nn.Module) -> int:
    """Total number of parameters (the inference model has nothing frozen)."""
    return sum(p.numel() for p in model.parameters())


def format_bytes(n: int) -> str:
    """
    Human-readable byte count with binary units.

      format_bytes(512)            → "512 B"
      format_bytes(1536)           → "1.5 KB"
      format_bytes(22 * 1024**3)   → "22.0 GB"
    """
    value = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024 or unit == "GB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Forward pass") as t:
            output = model(input)
        print(t)   # "Forward pass: 0.0234s"

    On CUDA, operations are asynchronous; the timer synchronizes before and
    after so the measurement covers the GPU work.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# PROGRESS LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class ProgressLogger:
    """
    Lightweight download logger that writes to console and an optional log file.

    A 22 GB download in 1 MiB chunks would otherwise print ~22,000 lines, so
    progress records are throttled to one per whole percentage point.

    Example output:
      [INFO] Downloading model-00001-of-00005.safetensors [7/11]
      download  12% | 2.6 GB / 22.0 GB
      [ERROR] HTTP Error 404: Unable to download model
    """

    def __init__(self, log_dir: Optional[str] = None, quiet: bool = False):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            quiet: Suppress console output (the log file still receives everything).
        """
        self.quiet = quiet
        self.log_file = None
        self._last_percent = -1
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"download_{timestamp}.log")
            self.log_file = open(log_path, "a")
            print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        if not self.quiet:
            print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()  # keep the log intact if the process dies mid-download

    def info(self, msg: str) -> None:
        self._write(f"[INFO] {msg}")

    def error(self, msg: str) -> None:
        self._write(f"[ERROR] {msg}")

    def progress(self, downloaded: int, total: int) -> None:
        """Log cumulative progress, at most once per percentage point."""
        percent = min(int(100 * downloaded / total), 100) if total > 0 else 0
        if percent == self._last_percent:
            return
        self._last_percent = percent
        self._write(
            f"download {percent:>3d}% | "
            f"{format_bytes(downloaded)} / {format_bytes(total)}"
        )

    def reset(self) -> None:
        """Start throttling afresh for a new download operation."""
        self._last_percent = -1

    def close(self) -> None:
        if self.log_file:
            self.log_file.close()
            self.log_file = None
