"""
Vocabulary tokenizer with word → character fallback.

This module turns text into the integer ids the model consumes and back. It
reads the vocabulary that ships with the downloaded checkpoint
(tokenizer.json) and the special-token table (tokenizer_config.json and/or
special_tokens_map.json).

TOKENIZATION SCHEME:
  A deliberately simple word/character scheme, NOT byte-pair encoding. The
  vocabulary document usually carries BPE merges too; they are ignored.

    "hello wxyz" → split on whitespace → ["hello", "wxyz"]
      "hello" in vocab          → [id("hello")]
      "wxyz"  not in vocab      → per character:
         "w" in vocab           → id("w")
         "x" not in vocab       → unk id (if the table defines one)
         ...

  A character with no mapping is replaced by the unk token. When the
  checkpoint defines no unk token the character is silently DROPPED, so
  encode() can lose information.

DECODING:
  Reverse-lookup each id and join with single spaces. Original whitespace
  and punctuation boundaries are not recovered:
    encode("Once upon a time") → [...] → decode → "Once upon a time"
    encode("a,b")              → [...] → decode → "a , b"  (if split per char)

  If two tokens share an id, the reverse lookup keeps the one seen LAST.

SPECIAL TOKENS:
  Roles are normalized from the Hugging Face key names:
    "unk_token" → "unk", "eos_token" → "eos", "bos_token" → "bos", ...
  A value may be a plain string ("</s>") or an object ({"content": "</s>"}).
  A special token whose text is not in the vocabulary is ignored.
"""

import json
import os
from typing import Optional

from aura_llm.errors import CorruptedError


def _read_json(path: str) -> dict:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Tokenizer file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = json.load(f)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptedError(
            f"Failed to parse {os.path.basename(path)}: {e}",
            filename=os.path.basename(path),
        ) from e
    if not isinstance(doc, dict):
        raise CorruptedError(
            f"{os.path.basename(path)} is not a JSON object",
            filename=os.path.basename(path),
        )
    return doc


def _extract_vocab(doc: dict) -> dict[str, int]:
    """
    Pull the token → id mapping out of a vocabulary document.

    Accepts the Hugging Face tokenizer.json layout ({"model": {"vocab": ...}})
    or a flat {"token": id} mapping. Entries of "added_tokens" are merged in.
    """
    model = doc.get("model")
    if isinstance(model, dict) and isinstance(model.get("vocab"), dict):
        raw = model["vocab"]
    elif doc and all(isinstance(v, int) and not isinstance(v, bool) for v in doc.values()):
        raw = doc
    else:
        raise CorruptedError("Vocabulary document has no token → id mapping")

    vocab = {}
    for token, token_id in raw.items():
        if not isinstance(token_id, int) or isinstance(token_id, bool):
            raise CorruptedError(f"Invalid id for token {token!r}: {token_id!r}")
        vocab[token] = token_id

    for added in doc.get("added_tokens") or []:
        if isinstance(added, dict) and isinstance(added.get("content"), str) \
                and isinstance(added.get("id"), int):
            vocab[added["content"]] = added["id"]

    return vocab


def _normalize_role(key: str) -> str:
    return key[: -len("_token")] if key.endswith("_token") else key


def _extract_special_tokens(doc: dict, vocab: dict[str, int]) -> dict[str, int]:
    """
    Resolve special-token roles to ids.

    tokenizer_config.json may nest the table under "special_tokens_map";
    special_tokens_map.json (and most tokenizer_config.json files) put the
    "*_token" keys at the top level.
    """
    table = doc.get("special_tokens_map")
    if not isinstance(table, dict):
        table = {k: v for k, v in doc.items() if k.endswith("_token")}

    special = {}
    for key, value in table.items():
        if isinstance(value, dict):
            value = value.get("content")
        if isinstance(value, str) and value in vocab:
            special[_normalize_role(key)] = vocab[value]
    return special


class Tokenizer:
    """
    Immutable vocabulary + special-token table.

    USAGE:
      tokenizer = Tokenizer("model/tokenizer.json", "model/tokenizer_config.json")
      ids = tokenizer.encode("Once upon a time")
      text = tokenizer.decode(ids)
    """

    def __init__(self, vocab_path: str, special_tokens_path: str):
        """
        Load a vocabulary document and a special-token document.

        Raises:
            FileNotFoundError: Either document is missing.
            CorruptedError: Either document is not valid JSON or has no vocabulary.
        """
        vocab_doc = _read_json(vocab_path)
        special_doc = _read_json(special_tokens_path)
        self._init_from_documents(vocab_doc, special_doc)

    @classmethod
    def from_documents(cls, vocab_doc: dict, special_doc: Optional[dict] = None) -> "Tokenizer":
        """Build a tokenizer from already-parsed JSON documents."""
        tokenizer = cls.__new__(cls)
        tokenizer._init_from_documents(vocab_doc, special_doc or {})
        return tokenizer

    @classmethod
    def from_model_dir(cls, model_dir: str) -> "Tokenizer":
        """
        Load the tokenizer that ships with a downloaded checkpoint.

        Special tokens come from tokenizer_config.json; roles it does not
        define are filled from special_tokens_map.json when that file exists.
        """
        vocab_doc = _read_json(os.path.join(model_dir, "tokenizer.json"))
        special_doc = _read_json(os.path.join(model_dir, "tokenizer_config.json"))

        map_path = os.path.join(model_dir, "special_tokens_map.json")
        if os.path.exists(map_path):
            merged = {k: v for k, v in _read_json(map_path).items() if k.endswith("_token")}
            nested = special_doc.get("special_tokens_map")
            if isinstance(nested, dict):
                merged.update(nested)
            else:
                merged.update({k: v for k, v in special_doc.items() if k.endswith("_token")})
            special_doc = {"special_tokens_map": merged}

        return cls.from_documents(vocab_doc, special_doc)

    def _init_from_documents(self, vocab_doc: dict, special_doc: dict) -> None:
        self._vocab = _extract_vocab(vocab_doc)
        self._special = _extract_special_tokens(special_doc, self._vocab)
        # Last token wins when ids collide.
        self._id_to_token = {}
        for token, token_id in self._vocab.items():
            self._id_to_token[token_id] = token

    def encode(self, text: str) -> list[int]:
        """
        Encode text into token ids.

        Whole words are looked up first; a missing word falls back to one
        lookup per character, and a missing character becomes the unk id
        (or nothing, if no unk token is defined).
        """
        unk = self.unk_id
        tokens = []
        for word in text.split():
            token_id = self._vocab.get(word)
            if token_id is not None:
                tokens.append(token_id)
                continue
            for char in word:
                char_id = self._vocab.get(char)
                if char_id is not None:
                    tokens.append(char_id)
                elif unk is not None:
                    tokens.append(unk)
        return tokens

    def decode(self, tokens: list[int]) -> str:
        """Reverse-lookup each id (unknown ids are skipped) and join with spaces."""
        words = [self._id_to_token[t] for t in tokens if t in self._id_to_token]
        return " ".join(words)

    @property
    def vocab_size(self) -> int:
        """Number of distinct token strings in the vocabulary."""
        return len(self._vocab)

    @property
    def special_tokens(self) -> dict[str, int]:
        """Role name ("unk", "eos", ...) → id. A copy; the tokenizer is immutable."""
        return dict(self._special)

    @property
    def unk_id(self) -> Optional[int]:
        return self._special.get("unk")

    @property
    def eos_id(self) -> Optional[int]:
        return self._special.get("eos")

    @property
    def bos_id(self) -> Optional[int]:
        return self._special.get("bos")

    def id_to_token(self, token_id: int) -> Optional[str]:
        return self._id_to_token.get(token_id)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._vocab.get(token)

    def __len__(self) -> int:
        return self.vocab_size
