"""
Shared builders for the test suite.

Everything here is deliberately tiny: a 16-token vocabulary, hidden size 8,
two layers, two shards of a few kilobytes. A FakeHub serves those files
through httpx.MockTransport so no test touches the network.
"""

import json
import os
import sys

import httpx
import numpy as np
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from aura_llm import container
from aura_llm.config import AcquisitionConfig, ModelConfig
from aura_llm.manifest import shard_filename
from aura_llm.model import GPT


REPO_ID = "test/tiny-model"

TINY_VOCAB = {
    "<unk>": 0,
    "</s>": 1,
    "<s>": 2,
    "once": 3,
    "upon": 4,
    "a": 5,
    "time": 6,
    "the": 7,
    "end": 8,
    "h": 9,
    "i": 10,
    "x": 11,
    "y": 12,
    ",": 13,
    "hello": 14,
    "world": 15,
}


def tiny_model_config() -> ModelConfig:
    return ModelConfig(
        vocab_size=16,
        hidden_size=8,
        n_layers=2,
        n_heads=2,
        max_position_embeddings=16,
        intermediate_size=16,
    )


def tiny_weights(config: ModelConfig = None, seed: int = 0) -> dict:
    """Canonical-name float32 arrays from a randomly initialized GPT."""
    config = config or tiny_model_config()
    torch.manual_seed(seed)
    model = GPT(config)
    return {name: t.detach().numpy().copy() for name, t in model.state_dict().items()}


def split_shards(weights: dict, shard_count: int) -> list:
    names = list(weights)
    per_shard = -(-len(names) // shard_count)
    return [
        {name: weights[name] for name in names[i * per_shard:(i + 1) * per_shard]}
        for i in range(shard_count)
    ]


def _json_bytes(doc) -> bytes:
    return json.dumps(doc, indent=2).encode("utf-8")


def model_files(shard_count: int = 2, weights: dict = None, shards: list = None) -> dict:
    """
    Every file of a complete tiny model: filename → bytes.

    Pass `shards` (a list of name → array dicts) to control shard contents
    exactly; otherwise `weights` (default: tiny_weights()) is split evenly.
    """
    if shards is None:
        shards = split_shards(weights or tiny_weights(), shard_count)

    shard_names = [shard_filename(i, len(shards)) for i in range(1, len(shards) + 1)]
    weight_map = {
        name: shard_name
        for shard_name, tensors in zip(shard_names, shards)
        for name in tensors
    }

    files = {
        # GPT-2 spellings on purpose; the loader maps them.
        "config.json": _json_bytes({
            "model_type": "gpt2",
            "vocab_size": 16,
            "n_embd": 8,
            "n_layer": 2,
            "n_head": 2,
            "n_positions": 16,
            "n_inner": 16,
        }),
        "tokenizer.json": _json_bytes({
            "version": "1.0",
            "added_tokens": [{"id": 1, "content": "</s>", "special": True}],
            "model": {"type": "BPE", "vocab": TINY_VOCAB, "merges": []},
        }),
        "tokenizer_config.json": _json_bytes({
            "eos_token": "</s>",
            "unk_token": {"content": "<unk>", "lstrip": False},
        }),
        "special_tokens_map.json": _json_bytes({"bos_token": "<s>", "eos_token": "<s>"}),
        "generation_config.json": _json_bytes({"max_new_tokens": 8}),
        "model.safetensors.index.json": _json_bytes({"metadata": {}, "weight_map": weight_map}),
    }
    for shard_name, tensors in zip(shard_names, shards):
        files[shard_name] = container.serialize(tensors, {"format": "pt"})
    return files


def write_files(directory, files: dict) -> None:
    os.makedirs(directory, exist_ok=True)
    for name, data in files.items():
        with open(os.path.join(directory, name), "wb") as f:
            f.write(data)


def acquisition_config(tmp_path, **overrides) -> AcquisitionConfig:
    """Config for the tiny model under tmp_path, served from a non-HF host."""
    values = dict(
        repo_id=REPO_ID,
        url_template="https://models.test/{repo_id}/resolve/main/{filename}",
        models_dir=str(tmp_path / "models"),
        shard_count=2,
        min_shard_bytes=64,
        estimated_total_bytes=10_000,
        max_attempts=3,
        chunk_size=64,
        connect_timeout=5.0,
        resource_timeout=60.0,
    )
    values.update(overrides)
    return AcquisitionConfig(**values)


class BrokenStream(httpx.SyncByteStream):
    """Yields some bytes, then fails like a reset connection."""

    def __init__(self, data: bytes):
        self.data = data

    def __iter__(self):
        yield self.data
        raise httpx.ReadError("connection reset by peer")


class FakeHub:
    """
    In-memory file server for httpx.MockTransport.

    failures[filename] is a queue consumed one item per GET of that file
    before the real content is served. An item is an HTTP status code, an
    exception to raise, or a callable(request) returning a response.
    """

    def __init__(self, files: dict, honor_range: bool = True):
        self.files = dict(files)
        self.honor_range = honor_range
        self.failures = {}
        self.requests = []

    @property
    def gets(self) -> list:
        return [
            r.url.path.rsplit("/", 1)[-1]
            for r in self.requests if r.method == "GET"
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        name = request.url.path.rsplit("/", 1)[-1]

        if name not in self.files:
            return httpx.Response(404)
        data = self.files[name]

        if request.method == "HEAD":
            return httpx.Response(200, headers={"X-Linked-Size": str(len(data))})

        queued = self.failures.get(name)
        if queued:
            failure = queued.pop(0)
            if isinstance(failure, int):
                return httpx.Response(failure)
            if isinstance(failure, Exception):
                raise failure
            return failure(request)

        range_header = request.headers.get("Range")
        if range_header and self.honor_range:
            start = int(range_header[len("bytes="):].rstrip("-"))
            if start >= len(data):
                return httpx.Response(416)
            return httpx.Response(206, stream=httpx.ByteStream(data[start:]), headers={
                "Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}",
                "Content-Length": str(len(data) - start),
            })
        return httpx.Response(200, stream=httpx.ByteStream(data), headers={
            "Content-Length": str(len(data)),
        })

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


def f32_array(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float32)
