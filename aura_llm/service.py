"""
Presentation-facing facade: load a downloaded model and answer prompts.

Two objects:

  LoadedSession     everything one inference session needs (tokenizer,
                    config, model on its device). Built in one go by
                    LoadedSession.load() and never mutated afterwards.
                    Unloading drops the whole value.

  LocalLLMService   what a UI talks to. Forwards download/delete/repair
                    commands to the ModelAcquisitionManager, exposes its
                    state/progress/last_error, and lazily builds a
                    LoadedSession the first time generate() is called.

LOAD SEQUENCE:
  1. state must be READY                       else NotReadyError
  2. tokenizer.json + tokenizer_config.json    (+ special_tokens_map.json)
  3. config.json → ModelConfig
  4. each shard: parse header, check every tensor's byte size
       CorruptedError → mark CORRUPTED, re-download that shard ONCE, retry
       still bad      → stay CORRUPTED, raise
  5. merge shard tables by name (duplicate policy)
  6. build GPT, copy weights (missing-weight policy), move to device
"""

import os
import threading
from dataclasses import dataclass
from typing import Optional, Union

import torch

from aura_llm import container
from aura_llm.acquisition import DownloadProgress, ModelAcquisitionManager, ModelState
from aura_llm.config import InferenceConfig, ModelConfig
from aura_llm.device import device_info, get_device
from aura_llm.dtypes import validate_record
from aura_llm.errors import CorruptedError, NotReadyError
from aura_llm.generate import GenerateResult, generate
from aura_llm.model import GPT, WeightLoadReport, load_weights
from aura_llm.tokenizer import Tokenizer
from aura_llm.utils import Timer, count_parameters


@dataclass(frozen=True)
class Message:
    """One chat turn."""
    content: str
    is_user: bool = True


def _load_shard(path: str) -> dict:
    records = container.load_file(path)
    for record in records.values():
        validate_record(record)
    return records


def _load_model_config(model_dir: str) -> ModelConfig:
    try:
        config = ModelConfig.load(os.path.join(model_dir, "config.json"))
        config.validate()
        return config
    except (AttributeError, TypeError, ValueError) as e:
        raise CorruptedError(f"config.json is invalid: {e}", filename="config.json") from e


def load_shard_tensors(manager: ModelAcquisitionManager, strict_names: bool = False) -> dict:
    """
    Parse every shard into one flat name → TensorRecord table.

    A shard that fails structural validation is re-downloaded once through
    the manager. Later shards override earlier ones on duplicate names
    unless strict_names is set.

    Raises:
        CorruptedError: A shard is still invalid after its re-download, or
                        (strict_names) two shards define the same tensor.
        ModelError: The re-download itself failed.
    """
    merged = {}
    shard_names = manager.manifest.shard_names
    for i, name in enumerate(shard_names, 1):
        path = os.path.join(manager.model_dir, name)
        print(f"Loading shard {i}/{len(shard_names)}: {name}")
        try:
            records = _load_shard(path)
        except CorruptedError as e:
            manager.mark_corrupted(name, f"Shard {name} is corrupted: {e.message}")
            manager.redownload_shard(name)
            try:
                records = _load_shard(path)
            except CorruptedError as retry_error:
                manager.mark_corrupted(
                    name, f"Shard {name} is still corrupted after re-download: {retry_error.message}"
                )
                raise
            print(f"  → {name} repaired")
            manager.mark_ready()

        for tensor_name, record in records.items():
            if tensor_name in merged:
                previous = merged[tensor_name].source
                if strict_names:
                    message = f"Tensor {tensor_name} is defined in both {previous} and {name}"
                    manager.mark_corrupted(None, message)
                    raise CorruptedError(message, filename=name)
                print(f"WARNING: tensor {tensor_name} in {name} overrides the copy in {previous}")
            merged[tensor_name] = record
        print(f"  → {len(records)} tensors")

    print(f"Total tensors: {len(merged)}")
    return merged


@dataclass(frozen=True)
class LoadedSession:
    """An immutable, fully loaded model ready for generation."""
    model: GPT
    tokenizer: Tokenizer
    config: ModelConfig
    device: torch.device
    report: WeightLoadReport
    tensor_count: int

    @classmethod
    def load(
        cls,
        manager: ModelAcquisitionManager,
        inference_config: Optional[InferenceConfig] = None,
    ) -> "LoadedSession":
        """
        Build a session from the files the manager owns.

        Raises:
            NotReadyError: The model is not in the READY state.
            CorruptedError: A file could not be repaired or the weights do
                            not fit the configuration.
            MissingWeightError: Missing weights under the "error" policy.
        """
        inference_config = inference_config or InferenceConfig()
        inference_config.validate()
        if manager.state != ModelState.READY:
            raise NotReadyError()

        model_dir = manager.model_dir
        print(f"Loading model from: {model_dir}")
        with Timer("Model load") as timer:
            tokenizer = Tokenizer.from_model_dir(model_dir)
            try:
                config = _load_model_config(model_dir)
            except CorruptedError as e:
                manager.mark_corrupted(e.filename, e.message)
                raise
            print(
                f"Model config: vocab_size={config.vocab_size}, layers={config.n_layers}, "
                f"hidden={config.hidden_size}, heads={config.n_heads}"
            )

            tensors = load_shard_tensors(manager, inference_config.strict_tensor_names)

            device = get_device(inference_config.device)
            model = GPT(config, causal_mask=inference_config.causal_mask)
            try:
                report = load_weights(model, tensors, inference_config.missing_weights)
            except CorruptedError as e:
                manager.mark_corrupted(e.filename, e.message)
                raise
            model.to(device)
            model.eval()

        print(report.summary())
        print(f"Parameters: {count_parameters(model):,}")
        print(device_info(device))
        print(timer)
        return cls(
            model=model,
            tokenizer=tokenizer,
            config=config,
            device=device,
            report=report,
            tensor_count=len(tensors),
        )


PromptInput = Union[str, list]


def _prompt_text(prompt: PromptInput) -> str:
    """A plain string is the prompt; for a message history it is the last message."""
    if isinstance(prompt, str):
        return prompt
    if not prompt:
        return ""
    return prompt[-1].content


class LocalLLMService:
    """
    Offline LLM facade for the presentation layer.

    USAGE:
      service = LocalLLMService()
      if service.state != ModelState.READY:
          service.download()
      print(service.generate("Once upon a time"))
    """

    def __init__(
        self,
        manager: Optional[ModelAcquisitionManager] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        self.manager = manager or ModelAcquisitionManager()
        self.inference_config = inference_config or InferenceConfig()
        self.last_result: Optional[GenerateResult] = None
        self._session: Optional[LoadedSession] = None
        self._lock = threading.RLock()
        self.manager.add_listener(self._on_state_change)

    def _on_state_change(self, state: ModelState, progress: DownloadProgress) -> None:
        # A session must not outlive the files it was loaded from.
        if state != ModelState.READY and self._session is not None:
            self.unload()

    # ─────────────────────────────────────────────────────────────────────
    # Session
    # ─────────────────────────────────────────────────────────────────────

    @property
    def session(self) -> Optional[LoadedSession]:
        return self._session

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def load(self) -> LoadedSession:
        """Load the model if it is not loaded yet and return the session."""
        with self._lock:
            if self._session is None:
                self._session = LoadedSession.load(self.manager, self.inference_config)
            return self._session

    def unload(self) -> None:
        with self._lock:
            if self._session is not None:
                print("Model unloaded")
            self._session = None

    # ─────────────────────────────────────────────────────────────────────
    # Generation
    # ─────────────────────────────────────────────────────────────────────

    def generate(self, prompt: PromptInput) -> str:
        """
        Generate a reply to a prompt string or a list of Messages.

        Raises:
            NotReadyError: The model is not READY. Checked before any
                           tensor work happens.
        """
        if self.manager.state != ModelState.READY:
            raise NotReadyError()

        text = _prompt_text(prompt)
        with self._lock:
            session = self.load()
            print(f"Generating response for: {text!r}")

            generator = None
            if self.inference_config.seed is not None:
                generator = torch.Generator().manual_seed(self.inference_config.seed)

            result = generate(
                session.model,
                session.tokenizer,
                text,
                max_new_tokens=self.inference_config.max_new_tokens,
                temperature=self.inference_config.temperature,
                generator=generator,
                device=session.device,
            )
            self.last_result = result
        print(result.stats_string())
        return result.text

    def generate_quick(self, query: str) -> str:
        """Single-turn shortcut: generate([Message(query, is_user=True)])."""
        return self.generate([Message(query, is_user=True)])

    # ─────────────────────────────────────────────────────────────────────
    # Commands forwarded to the acquisition manager
    # ─────────────────────────────────────────────────────────────────────

    def download(self) -> bool:
        return self.manager.download()

    def delete(self) -> None:
        self.unload()
        self.manager.delete()

    def repair_incomplete(self) -> bool:
        return self.manager.repair_incomplete()

    def delete_and_redownload(self) -> bool:
        self.unload()
        return self.manager.delete_and_redownload()

    @property
    def state(self) -> ModelState:
        return self.manager.state

    @property
    def progress(self) -> DownloadProgress:
        return self.manager.progress

    @property
    def last_error(self) -> Optional[str]:
        return self.manager.last_error
