"""
HTTP transfer of a single model file: size probing, resumable streaming,
post-download validation and the atomic rename.

ONE ATTEMPT OF download_file():

  ┌──────────────────────────────┐
  │ foo.safetensors.tmp exists?  │── yes ─→ GET with "Range: bytes=<len>-"
  └──────────────────────────────┘── no ──→ plain GET
                 │
   206 Partial Content → append to .tmp (Content-Range must start at <len>,
                         otherwise delete it: integrity failure)
   200 OK              → server ignored the range: truncate .tmp, start at 0
   416                 → .tmp is unusable: delete it (integrity failure)
   other               → HttpStatusError
                 │
   stream chunks → .tmp      (cancel flag + per-file deadline checked per chunk)
                 │
   bytes written == Content-Length?   no → delete .tmp, IncompleteDownloadError
                 │
   validate_downloaded_file(.tmp)     bad → delete .tmp, CorruptedError
                 │
   os.replace(.tmp → foo.safetensors)

Nothing but a fully validated file ever appears under its final name.

The retry policy (how often, how long to back off) belongs to the
acquisition manager; this module only classifies failures:
  TransientNetworkError     connection/timeout problems, .tmp kept for resume
  HttpStatusError           .is_retryable for 5xx / 408 / 429
  Incomplete/CorruptedError integrity failures, .tmp already deleted
  DownloadCancelledError    cancel flag seen, .tmp kept for resume
"""

import json
import os
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx

from aura_llm import container
from aura_llm.errors import (
    CorruptedError,
    DownloadCancelledError,
    HttpStatusError,
    IncompleteDownloadError,
    InvalidLocationError,
    TransientNetworkError,
)
from aura_llm.manifest import TMP_SUFFIX


TRUSTED_HF_HOSTS = ("huggingface.co", "hf.co")


# ═══════════════════════════════════════════════════════════════════════════
# URLS AND CLIENT
# ═══════════════════════════════════════════════════════════════════════════

def build_url(config, filename: str) -> str:
    """
    Fill the URL template of an AcquisitionConfig for one file.

    Raises:
        InvalidLocationError: The result is not an absolute http(s) URL.
    """
    try:
        url = config.url_template.format(repo_id=config.repo_id, filename=filename)
    except (KeyError, IndexError, ValueError) as e:
        raise InvalidLocationError(config.url_template) from e

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc or " " in url:
        raise InvalidLocationError(url)
    return url


def _is_trusted_hf_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower().rstrip(".")
    return any(host == h or host.endswith("." + h) for h in TRUSTED_HF_HOSTS)


def auth_headers(url: str) -> dict[str, str]:
    """Bearer token from HF_TOKEN, only ever sent to Hugging Face hosts."""
    token = os.environ.get("HF_TOKEN", "").strip()
    if token and _is_trusted_hf_url(url):
        return {"Authorization": f"Bearer {token}"}
    return {}


def request_headers(url: str) -> dict[str, str]:
    """
    Headers for every HEAD and GET.

    Bodies are read with iter_raw(), which never decodes a Content-Encoding,
    so compression is refused up front.
    """
    return {"Accept-Encoding": "identity", **auth_headers(url)}


def create_client(config) -> httpx.Client:
    """
    HTTP client for model downloads.

    connect_timeout bounds connecting and each read (time-to-first-byte and
    stalls between chunks). The much longer per-file budget is enforced by
    download_file() itself.
    """
    return httpx.Client(
        timeout=httpx.Timeout(config.connect_timeout),
        follow_redirects=True,
        headers={"User-Agent": config.user_agent, "Accept-Encoding": "identity"},
    )


# ═══════════════════════════════════════════════════════════════════════════
# SIZE PROBING
# ═══════════════════════════════════════════════════════════════════════════

def probe_size(client: httpx.Client, url: str) -> Optional[int]:
    """
    Best-effort remote size via HEAD.

    Hugging Face answers LFS files with a redirect; the size of the real
    object is in X-Linked-Size on the first hop, Content-Length on the last.

    Returns:
        Size in bytes, or None when the probe fails for any reason (the
        caller substitutes an estimate).
    """
    try:
        response = client.head(url, headers=request_headers(url))
    except httpx.HTTPError as e:
        print(f"  size probe failed for {url}: {e}")
        return None
    if response.status_code != 200:
        return None

    for header in ("X-Linked-Size", "Content-Length"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            size = int(value)
        except ValueError:
            continue
        if size > 0:
            return size
    return None


# ═══════════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════════

def validate_downloaded_file(path: str, filename: Optional[str] = None) -> None:
    """
    Check a finished download before it is renamed into place.

    Args:
        path: File to check (usually the .tmp sibling).
        filename: Final file name; its extension selects the check. Defaults
                  to the base name of `path` without a .tmp suffix.

    Raises:
        CorruptedError: Missing/empty file, bad container header or tensor
                        bounds, or unparseable JSON.
    """
    name = filename or os.path.basename(path)
    if name.endswith(TMP_SUFFIX):
        name = name[: -len(TMP_SUFFIX)]

    if not os.path.isfile(path) or os.path.getsize(path) == 0:
        raise CorruptedError(f"Downloaded file {name} is empty or missing", filename=name)

    if name.endswith(".safetensors"):
        try:
            container.validate_file(path)
        except CorruptedError as e:
            raise CorruptedError(f"{name}: {e.message}", filename=name) from e
    elif name.endswith(".json"):
        try:
            with open(path, "r", encoding="utf-8") as f:
                json.load(f)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptedError(f"{name} is not valid JSON: {e}", filename=name) from e


# ═══════════════════════════════════════════════════════════════════════════
# TRANSFER
# ═══════════════════════════════════════════════════════════════════════════

def _remove(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)


def _content_range_start(response: httpx.Response) -> Optional[int]:
    """First byte position of a "bytes <start>-<end>/<total>" Content-Range."""
    value = response.headers.get("Content-Range", "")
    unit, _, spec = value.strip().partition(" ")
    if unit != "bytes":
        return None
    start, _, _ = spec.partition("-")
    try:
        return int(start)
    except ValueError:
        return None


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: str,
    chunk_size: int = 1024 * 1024,
    resource_timeout: float = 7200.0,
    on_bytes: Optional[Callable[[int], None]] = None,
    cancel_event=None,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    One download attempt of `url` into `dest_path`, resuming from a .tmp.

    Args:
        client: httpx client (see create_client).
        url: Remote file.
        dest_path: Final local path. Data is staged in dest_path + ".tmp".
        chunk_size: Bytes requested per read.
        resource_timeout: Wall-clock budget for this attempt, in seconds.
        on_bytes: Called with the size of every chunk written.
        cancel_event: threading.Event; when set the transfer stops between chunks.
        clock: Monotonic time source.

    Returns:
        Bytes written during this attempt.

    Raises:
        See the module docstring for the failure classification.
    """
    filename = os.path.basename(dest_path)
    tmp_path = dest_path + TMP_SUFFIX
    os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

    existing = os.path.getsize(tmp_path) if os.path.exists(tmp_path) else 0
    headers = request_headers(url)
    if existing > 0:
        headers["Range"] = f"bytes={existing}-"

    deadline = clock() + resource_timeout
    written = 0
    try:
        with client.stream("GET", url, headers=headers) as response:
            status = response.status_code
            if status == 206 and existing > 0:
                if _content_range_start(response) != existing:
                    _remove(tmp_path)
                    raise CorruptedError(
                        f"Server resumed {filename} at the wrong offset "
                        f"(Content-Range: {response.headers.get('Content-Range')!r}, "
                        f"expected start {existing})",
                        filename=filename,
                    )
                mode = "ab"
            elif status in (200, 206):
                if existing > 0:
                    print(f"  server ignored range request for {filename}, restarting from zero")
                mode = "wb"
            elif status == 416 and existing > 0:
                _remove(tmp_path)
                raise CorruptedError(
                    f"Partial file for {filename} does not match the remote file",
                    filename=filename,
                )
            else:
                raise HttpStatusError(status, url)

            declared = response.headers.get("Content-Length")
            try:
                declared = int(declared) if declared is not None else None
            except ValueError:
                declared = None

            with open(tmp_path, mode) as f:
                for chunk in response.iter_raw(chunk_size):
                    if cancel_event is not None and cancel_event.is_set():
                        raise DownloadCancelledError()
                    if clock() > deadline:
                        raise TransientNetworkError(
                            f"Download of {filename} exceeded {resource_timeout:.0f}s"
                        )
                    f.write(chunk)
                    written += len(chunk)
                    if on_bytes is not None:
                        on_bytes(len(chunk))
    except httpx.TransportError as e:
        raise TransientNetworkError(f"Network error while downloading {filename}: {e}") from e

    if declared is not None and written != declared:
        _remove(tmp_path)
        raise IncompleteDownloadError(declared, written, filename)

    try:
        validate_downloaded_file(tmp_path, filename)
    except CorruptedError:
        _remove(tmp_path)
        raise

    os.replace(tmp_path, dest_path)
    return written
