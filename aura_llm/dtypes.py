"""
Dtype conversion: stored tensor encodings → float32.

Weight shards store elements in compact encodings. Before any arithmetic the
engine widens everything to float32:

  ┌──────┬───────┬────────────────────────────────────────────────────────┐
  │ Tag  │ Bytes │ Conversion                                             │
  ├──────┼───────┼────────────────────────────────────────────────────────┤
  │ F32  │ 4     │ Reinterpret the bytes as little-endian float32         │
  │ F16  │ 2     │ IEEE half → float32 (numpy does the widening)          │
  │ BF16 │ 2     │ Shift the 16-bit pattern into the high half of a       │
  │      │       │ 32-bit pattern and reinterpret as float32              │
  └──────┴───────┴────────────────────────────────────────────────────────┘

WHY BF16 IS A SHIFT:
  bfloat16 is literally the top 16 bits of a float32: 1 sign bit, 8 exponent
  bits, 7 mantissa bits. Appending 16 zero mantissa bits gives back a float32
  with exactly the same value. No rounding happens, so the conversion is
  lossless:
    0x3F80 → 0x3F800000 →  1.0
    0xC000 → 0xC0000000 → -2.0

Anything else (a size that does not match the element count, or a tag we do
not understand) is reported as CorruptedError.
"""

import numpy as np
import torch

from aura_llm.errors import CorruptedError


# Bytes per element for every tag the container format may carry. Only the
# float tags can be converted; the rest are here so headers can be sized.
ELEMENT_SIZES = {
    "F64": 8,
    "F32": 4,
    "F16": 2,
    "BF16": 2,
    "I64": 8,
    "I32": 4,
    "I16": 2,
    "I8": 1,
    "U8": 1,
    "U16": 2,
    "U32": 4,
    "U64": 8,
    "BOOL": 1,
}

CONVERTIBLE = ("F32", "F16", "BF16")

# numpy dtype → container tag, used when writing containers.
NUMPY_TAGS = {
    np.dtype(np.float64): "F64",
    np.dtype(np.float32): "F32",
    np.dtype(np.float16): "F16",
    np.dtype(np.int64): "I64",
    np.dtype(np.int32): "I32",
    np.dtype(np.int16): "I16",
    np.dtype(np.int8): "I8",
    np.dtype(np.uint8): "U8",
    np.dtype(np.uint16): "U16",
    np.dtype(np.uint32): "U32",
    np.dtype(np.uint64): "U64",
    np.dtype(np.bool_): "BOOL",
}


def _as_bytes_view(raw) -> np.ndarray:
    """View any bytes-like object (or uint8 array) as a flat uint8 array, no copy."""
    if isinstance(raw, np.ndarray):
        return raw.reshape(-1).view(np.uint8)
    return np.frombuffer(raw, dtype=np.uint8)


def convert(raw, dtype: str, count: int) -> np.ndarray:
    """
    Convert a raw element buffer into a flat float32 array.

    Args:
        raw: bytes, bytearray, memoryview or uint8 numpy array holding the
             tensor payload exactly (no header, no padding).
        dtype: Container dtype tag ("F32", "F16" or "BF16").
        count: Number of elements the tensor's shape promises.

    Returns:
        A 1-D float32 numpy array of length `count`.

    Raises:
        CorruptedError: Unknown tag, or byte length != element size × count.
    """
    if dtype not in CONVERTIBLE:
        raise CorruptedError(f"Unsupported dtype: {dtype}")

    data = _as_bytes_view(raw)
    expected = ELEMENT_SIZES[dtype] * count
    if data.size != expected:
        raise CorruptedError(
            f"{dtype} tensor size mismatch: expected {expected} bytes, got {data.size}"
        )

    if dtype == "F32":
        return np.frombuffer(data, dtype="<f4", count=count).astype(np.float32)

    if dtype == "F16":
        return np.frombuffer(data, dtype="<f2", count=count).astype(np.float32)

    # BF16: widen the 16-bit pattern to the top half of a 32-bit word.
    bits = np.frombuffer(data, dtype="<u2", count=count).astype(np.uint32)
    return (bits << np.uint32(16)).view(np.float32)


def validate_record(record) -> None:
    """
    Check that a tensor record can be converted, without converting it.

    Lets the weight loader reject a damaged shard up front (and repair it)
    instead of failing halfway through filling the model.
    """
    if record.dtype not in CONVERTIBLE:
        raise CorruptedError(
            f"Tensor '{record.name}' has unsupported dtype {record.dtype}",
            filename=getattr(record, "source", None),
        )
    count = 1
    for dim in record.shape:
        count *= dim
    expected = ELEMENT_SIZES[record.dtype] * count
    if record.end - record.start != expected:
        raise CorruptedError(
            f"Tensor '{record.name}' spans {record.end - record.start} bytes, "
            f"{record.dtype} {list(record.shape)} needs {expected}",
            filename=getattr(record, "source", None),
        )


def record_to_tensor(record) -> torch.Tensor:
    """
    Materialize a parsed tensor record as a float32 torch tensor.

    The record only needs `name`, `dtype`, `shape` and `data`. Errors are
    re-raised with the tensor name and source shard attached.
    """
    count = 1
    for dim in record.shape:
        count *= dim
    try:
        values = convert(record.data, record.dtype, count)
    except CorruptedError as e:
        raise CorruptedError(
            f"Tensor '{record.name}': {e.message}",
            filename=getattr(record, "source", None),
        ) from e
    return torch.from_numpy(values.reshape(tuple(record.shape)))
