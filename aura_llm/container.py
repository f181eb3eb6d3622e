"""
Tensor container parser (the safetensors layout).

FILE LAYOUT:
  ┌───────────────┬──────────────────────────┬──────────────────────────────┐
  │ 8 bytes       │ H bytes                  │ payload                      │
  │ u64 LE  = H   │ JSON header (UTF-8)      │ raw tensor bytes, back to    │
  │               │                          │ back                         │
  └───────────────┴──────────────────────────┴──────────────────────────────┘

  Header example:
    {
      "__metadata__": {"format": "pt"},
      "transformer.wte.weight": {
        "dtype": "BF16",
        "shape": [50257, 768],
        "data_offsets": [0, 77194752]
      },
      ...
    }

  data_offsets are [start, end) relative to the first payload byte, which is
  at file offset 8 + H.

VALIDATION (everything below is CorruptedError):
  - fewer than 8 bytes
  - H == 0 or H > MAX_HEADER_BYTES (bounds adversarial / garbage input)
  - header truncated, not UTF-8, not JSON, or not a JSON object
  - offsets outside 0 <= start < end <= payload length
  - zero valid tensors in the file

  An entry without dtype / shape / two-element data_offsets is skipped
  with a warning, not fatal.

MEMORY:
  The header is parsed in memory up front. Payloads are NOT copied: each
  TensorRecord holds a numpy view into the caller's buffer, and load_file()
  memory-maps the shard so a multi-gigabyte file costs only the pages that
  are actually touched during conversion.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from aura_llm.dtypes import ELEMENT_SIZES, NUMPY_TAGS
from aura_llm.errors import CorruptedError


HEADER_LENGTH_BYTES = 8
MAX_HEADER_BYTES = 10_000_000
METADATA_KEY = "__metadata__"


@dataclass(frozen=True)
class TensorRecord:
    """One named tensor inside a container."""
    name: str
    dtype: str
    shape: tuple
    start: int              # payload-relative, inclusive
    end: int                # payload-relative, exclusive
    data: np.ndarray = field(repr=False, compare=False)  # uint8 view, end - start bytes
    source: Optional[str] = None                          # shard file name, if loaded from disk

    @property
    def nbytes(self) -> int:
        return self.end - self.start

    @property
    def numel(self) -> int:
        n = 1
        for dim in self.shape:
            n *= dim
        return n

    def tobytes(self) -> bytes:
        return self.data.tobytes()


# ═══════════════════════════════════════════════════════════════════════════
# HEADER DECODING
# ═══════════════════════════════════════════════════════════════════════════

def _decode_header_length(prefix: bytes) -> int:
    if len(prefix) < HEADER_LENGTH_BYTES:
        raise CorruptedError(
            f"File too small for header ({len(prefix)} bytes)"
        )
    header_length = int.from_bytes(prefix[:HEADER_LENGTH_BYTES], "little", signed=False)
    if header_length == 0 or header_length > MAX_HEADER_BYTES:
        raise CorruptedError(f"Invalid header length: {header_length}")
    return header_length


def _decode_header(raw: bytes, header_length: int) -> dict:
    if len(raw) != header_length:
        raise CorruptedError(
            f"Header truncated: expected {header_length} bytes, got {len(raw)}"
        )
    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptedError(f"Failed to parse JSON header: {e}") from e
    if not isinstance(header, dict):
        raise CorruptedError("JSON header is not an object")
    return header


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _tensor_entries(header: dict, payload_length: int) -> list[tuple]:
    """
    Validate every tensor entry against the payload length.

    Entries with a missing or mistyped dtype, shape or data_offsets are
    skipped with a warning; offsets outside the payload are fatal.

    Returns:
        List of (name, dtype, shape, start, end) in header order.
    """
    entries = []
    for name, info in header.items():
        if name == METADATA_KEY:
            continue

        if not isinstance(info, dict):
            print(f"  skipping tensor {name}: invalid tensor info")
            continue
        dtype = info.get("dtype")
        shape = info.get("shape")
        offsets = info.get("data_offsets")
        if (
            not isinstance(dtype, str)
            or not isinstance(shape, list)
            or not all(_is_int(d) and d > 0 for d in shape)
            or not isinstance(offsets, list)
            or len(offsets) != 2
            or not all(_is_int(o) for o in offsets)
        ):
            print(f"  skipping tensor {name}: invalid tensor info")
            continue

        start, end = offsets
        if not (0 <= start < end <= payload_length):
            raise CorruptedError(
                f"Invalid data offsets for tensor {name}: [{start}, {end}] "
                f"(payload size: {payload_length})"
            )
        entries.append((name, dtype, tuple(shape), start, end))

    if not entries:
        raise CorruptedError("No valid tensors found in container")
    return entries


# ═══════════════════════════════════════════════════════════════════════════
# PARSING
# ═══════════════════════════════════════════════════════════════════════════

def _as_uint8(buffer) -> np.ndarray:
    if isinstance(buffer, np.ndarray):
        return buffer.reshape(-1).view(np.uint8)
    return np.frombuffer(buffer, dtype=np.uint8)


def parse(buffer, source: Optional[str] = None) -> dict[str, TensorRecord]:
    """
    Decode a whole container held in memory.

    Args:
        buffer: bytes, bytearray, memoryview, or a uint8 numpy array
                (including a np.memmap).
        source: Optional file name recorded on every TensorRecord.

    Returns:
        Mapping of tensor name → TensorRecord, in header order.

    Raises:
        CorruptedError: On any structural violation (see module docstring).
    """
    buf = _as_uint8(buffer)
    try:
        header_length = _decode_header_length(buf[:HEADER_LENGTH_BYTES].tobytes())
        header_end = HEADER_LENGTH_BYTES + header_length
        header = _decode_header(buf[HEADER_LENGTH_BYTES:header_end].tobytes(), header_length)
        payload = buf[header_end:]
        entries = _tensor_entries(header, payload.size)
    except CorruptedError as e:
        if source is not None and e.filename is None:
            e.filename = source
        raise

    return {
        name: TensorRecord(
            name=name,
            dtype=dtype,
            shape=shape,
            start=start,
            end=end,
            data=payload[start:end],
            source=source,
        )
        for name, dtype, shape, start, end in entries
    }


def load_file(path: str) -> dict[str, TensorRecord]:
    """
    Memory-map a shard and parse it.

    The returned records keep the mapping alive; nothing is read from disk
    until a record's data is converted.

    Raises:
        FileNotFoundError: The shard does not exist.
        CorruptedError: The shard is empty or structurally invalid.
    """
    name = os.path.basename(path)
    if os.path.getsize(path) == 0:
        raise CorruptedError(f"File {name} is empty", filename=name)
    mapped = np.memmap(path, dtype=np.uint8, mode="r")
    return parse(mapped, source=name)


def validate_file(path: str) -> int:
    """
    Structurally validate a shard without mapping its payload.

    Reads only the 8-byte prefix and the JSON header, then checks every
    tensor's byte range against the file size. Used right after a download
    finishes and before the file is renamed into place.

    Returns:
        Number of tensors described by the header.
    """
    name = os.path.basename(path)
    file_size = os.path.getsize(path)
    try:
        with open(path, "rb") as f:
            header_length = _decode_header_length(f.read(HEADER_LENGTH_BYTES))
            header = _decode_header(f.read(header_length), header_length)
        payload_length = file_size - HEADER_LENGTH_BYTES - header_length
        entries = _tensor_entries(header, payload_length)
    except CorruptedError as e:
        e.filename = e.filename or name
        raise
    return len(entries)


# ═══════════════════════════════════════════════════════════════════════════
# WRITING
# ═══════════════════════════════════════════════════════════════════════════

def serialize(tensors: dict, metadata: Optional[dict] = None) -> bytes:
    """
    Encode tensors into the container format.

    Args:
        tensors: name → numpy array, or name → TensorRecord (so a parsed
                 container can be re-encoded unchanged, including BF16 which
                 numpy cannot represent natively).
        metadata: Optional string → string mapping stored under __metadata__.

    Returns:
        The complete container as bytes. The header is space-padded to a
        multiple of 8 so payloads stay 8-byte aligned.
    """
    header = {}
    if metadata:
        header[METADATA_KEY] = {str(k): str(v) for k, v in metadata.items()}

    chunks = []
    offset = 0
    for name, tensor in tensors.items():
        if isinstance(tensor, TensorRecord):
            dtype, shape, raw = tensor.dtype, list(tensor.shape), tensor.tobytes()
        else:
            array = np.ascontiguousarray(tensor)
            if array.dtype not in NUMPY_TAGS:
                raise ValueError(f"Cannot serialize dtype {array.dtype} for tensor {name}")
            dtype, shape = NUMPY_TAGS[array.dtype], list(array.shape)
            raw = array.astype(array.dtype.newbyteorder("<"), copy=False).tobytes()

        expected = ELEMENT_SIZES[dtype]
        for dim in shape:
            expected *= dim
        if len(raw) != expected:
            raise ValueError(
                f"Tensor {name}: {len(raw)} bytes does not match {dtype} {shape}"
            )

        header[name] = {
            "dtype": dtype,
            "shape": shape,
            "data_offsets": [offset, offset + len(raw)],
        }
        chunks.append(raw)
        offset += len(raw)

    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    header_bytes += b" " * (-len(header_bytes) % 8)
    return len(header_bytes).to_bytes(HEADER_LENGTH_BYTES, "little") + header_bytes + b"".join(chunks)


def save_file(tensors: dict, path: str, metadata: Optional[dict] = None) -> None:
    """Serialize tensors and write them to `path`."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(serialize(tensors, metadata))
