"""
Model acquisition: the readiness state machine and the multi-file download.

The ModelAcquisitionManager is the ONLY owner of the files under the model
directory and of the ModelState. Every other component asks it.

STATE MACHINE:

                    ┌──────────┐
          start ──→ │ CHECKING │
                    └────┬─────┘
           files ok ┌────┴────┐ missing / undersized
                    ▼         ▼
               ┌───────┐  ┌────────────────┐
               │ READY │  │ NOT_DOWNLOADED │◀──── delete() (from any state)
               └───┬───┘  └───────┬────────┘      cancel_download()
                   │              │ download()
                   │              ▼
                   │      ┌─────────────┐  retries exhausted  ┌─────────────────┐
                   │      │ DOWNLOADING │ ──────────────────→ │ DOWNLOAD_FAILED │
                   │      └──────┬──────┘ ◀── download() ──── └─────────────────┘
                   │             │ all files verified
                   │             ▼
                   │          READY
                   │
                   │ shard fails structural validation while loading weights
                   ▼
             ┌───────────┐   repair_incomplete() re-fetches only the
             │ CORRUPTED │   missing / corrupted files, then re-verifies
             └───────────┘   → READY

CONCURRENCY:
  - One RLock serializes every write of state / progress / last_error, so a
    reader on another thread never sees a torn update.
  - A separate non-blocking lock admits at most one download. A second
    download() while one is running returns False immediately; it is NOT
    queued.
  - Files are fetched one after another. A threading.Event is checked
    between chunks and between files for cooperative cancellation.
  - Listeners are called outside the state lock with a snapshot.

RETRY POLICY (per file):
  up to max_attempts attempts; after failed attempt n the manager sleeps
  min(backoff_base ** n, backoff_cap) seconds:
    attempt 1 fails → 2s, 2 → 4s, 3 → 8s, 4 → 16s, (5 → give up)
  Transient failures resume from the .tmp file; integrity failures
  (Content-Length mismatch, validation) restart that file from zero.
"""

import os
import shutil
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from aura_llm.config import AcquisitionConfig
from aura_llm.download import build_url, create_client, download_file, probe_size
from aura_llm.errors import (
    CorruptedError,
    DownloadCancelledError,
    HttpStatusError,
    IncompleteDownloadError,
    ModelError,
    TransientNetworkError,
)
from aura_llm.manifest import ManifestEntry, ModelStatus, ShardManifest
from aura_llm.utils import ProgressLogger, format_bytes


class ModelState(Enum):
    CHECKING = "checking"
    NOT_DOWNLOADED = "not_downloaded"
    DOWNLOADING = "downloading"
    READY = "ready"
    CORRUPTED = "corrupted"
    DOWNLOAD_FAILED = "download_failed"


@dataclass(frozen=True)
class DownloadProgress:
    """
    Progress of the current (or last) download operation.

    downloaded_bytes starts at the size of the files already on disk and
    never decreases during an operation, even when a file restarts from
    zero. total_bytes is the best available estimate.
    """
    downloaded_bytes: int = 0
    total_bytes: int = 0

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(self.downloaded_bytes / self.total_bytes, 1.0)


class ModelAcquisitionManager:
    """
    Owns the model directory, the ModelState and the download machinery.

    Download operations never raise for network or validation failures:
    they record last_error, move to a failure state and return False.
    """

    def __init__(
        self,
        config: Optional[AcquisitionConfig] = None,
        client=None,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Optional[ProgressLogger] = None,
    ):
        """
        Args:
            config: Where the model lives and how to fetch it.
            client: httpx.Client to use. None creates one on first download.
            sleep: Backoff sleep function (injected by tests). None waits on
                   the cancel flag so cancel_download() interrupts the backoff.
            logger: Console / file logger for download progress.
        """
        self.config = config or AcquisitionConfig()
        self.config.validate()
        self.manifest = ShardManifest.from_config(self.config)
        self.logger = logger or ProgressLogger()

        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

        self._lock = threading.RLock()
        self._download_lock = threading.Lock()
        self._cancel = threading.Event()
        self._listeners = []

        self._state = ModelState.CHECKING
        self._progress = DownloadProgress()
        self._last_error: Optional[str] = None
        self._corrupted_files: set = set()

        self.check_model_exists()

    # ─────────────────────────────────────────────────────────────────────
    # Observation
    # ─────────────────────────────────────────────────────────────────────

    @property
    def model_dir(self) -> str:
        return self.config.model_dir

    @property
    def state(self) -> ModelState:
        with self._lock:
            return self._state

    @property
    def progress(self) -> DownloadProgress:
        with self._lock:
            return self._progress

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def is_downloading(self) -> bool:
        return self._download_lock.locked()

    def add_listener(self, listener: Callable[[ModelState, DownloadProgress], None]) -> None:
        """Register a callback for state and progress changes."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self) -> None:
        with self._lock:
            state, progress = self._state, self._progress
            listeners = list(self._listeners)
        for listener in listeners:
            listener(state, progress)

    def _set_state(self, state: ModelState, error: Optional[str] = None) -> None:
        with self._lock:
            self._state = state
            self._last_error = error
        self._notify()

    def _set_progress(self, progress: DownloadProgress) -> None:
        with self._lock:
            self._progress = progress
        self._notify()

    def _advance(self, nbytes: int) -> None:
        with self._lock:
            p = self._progress
            self._progress = DownloadProgress(p.downloaded_bytes + nbytes, p.total_bytes)
            progress = self._progress
        self.logger.progress(progress.downloaded_bytes, progress.total_bytes)
        self._notify()

    # ─────────────────────────────────────────────────────────────────────
    # Disk checks
    # ─────────────────────────────────────────────────────────────────────

    def verify_model_integrity(self) -> bool:
        """
        Lightweight completeness check: every metadata file present and
        non-empty, every shard present and at least min_shard_bytes.
        Shard headers are NOT opened here.
        """
        status = self.model_status()
        if not status.is_complete:
            for name in status.missing_files:
                print(f"  missing or undersized: {name}")
            return False
        print(
            f"Model integrity verified: {len(self.manifest.shard_names)} shards and "
            f"{len(self.manifest.metadata_names)} metadata files present"
        )
        return True

    def check_model_exists(self) -> ModelState:
        """
        Re-derive READY / NOT_DOWNLOADED from the files on disk.

        Does nothing while a download is running; the download decides the
        final state itself.
        """
        if self.is_downloading:
            return self.state
        if self.verify_model_integrity():
            print(f"Model found and ready at: {self.model_dir}")
            self._set_state(ModelState.READY)
        else:
            print(f"Model not found or incomplete. Will download {self.config.repo_id}")
            self._set_state(ModelState.NOT_DOWNLOADED)
        return self.state

    def model_status(self) -> ModelStatus:
        return self.manifest.status(self.model_dir, self.config.min_shard_bytes)

    def directory_size(self) -> int:
        """Bytes used by everything under the model directory, .tmp files included."""
        total = 0
        for root, _, files in os.walk(self.model_dir):
            for name in files:
                path = os.path.join(root, name)
                if os.path.isfile(path):
                    total += os.path.getsize(path)
        return total

    # ─────────────────────────────────────────────────────────────────────
    # Download operations
    # ─────────────────────────────────────────────────────────────────────

    def _get_client(self):
        if self._client is None:
            self._client = create_client(self.config)
        return self._client

    def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def download(self) -> bool:
        """
        Fetch every missing (or known-corrupted) file and verify the result.

        Returns:
            True when the model ends up READY. False if another download was
            already running (no-op), or if this one failed or was cancelled;
            see last_error.
        """
        return self._run_download("download")

    def repair_incomplete(self) -> bool:
        """
        Re-fetch only the files that are missing, undersized or marked
        corrupted, then re-verify. A model that is already complete is just
        re-checked.
        """
        status = self.model_status()
        with self._lock:
            corrupted = set(self._corrupted_files)
        if status.is_complete and not corrupted:
            self.logger.info("Model is already complete")
            return self.check_model_exists() == ModelState.READY

        self.logger.info(
            f"Repairing model: {format_bytes(status.present_bytes)} present, "
            f"{len(status.missing_files) + len(corrupted)} files to fetch"
        )
        return self._run_download("repair")

    def start_download(self) -> Optional[threading.Thread]:
        """Run download() on a background thread. None if one is already active."""
        if self.is_downloading:
            return None
        thread = threading.Thread(target=self.download, name="model-download", daemon=True)
        thread.start()
        return thread

    def cancel_download(self) -> bool:
        """
        Ask the running download to stop at the next chunk or file boundary.
        The partial .tmp file is kept so a later download resumes it.

        Returns:
            True if a download was running.
        """
        if not self.is_downloading:
            return False
        self._cancel.set()
        return True

    def _run_download(self, label: str) -> bool:
        if not self._download_lock.acquire(blocking=False):
            self.logger.info(f"{label} requested while a download is running; ignored")
            return False
        try:
            self._cancel.clear()
            self.logger.reset()
            self._set_progress(DownloadProgress())
            self._set_state(ModelState.DOWNLOADING)

            try:
                self._download_missing()
            except DownloadCancelledError as e:
                self.logger.info("Download cancelled; partial files kept for resume")
                self._set_state(ModelState.NOT_DOWNLOADED, e.message)
                return False
            except ModelError as e:
                self.logger.error(f"Model {label} failed: {e.message}")
                self._set_state(ModelState.DOWNLOAD_FAILED, e.message)
                return False
            except OSError as e:
                self.logger.error(f"Model {label} failed: {e}")
                self._set_state(ModelState.DOWNLOAD_FAILED, str(e))
                return False

            if not self.verify_model_integrity():
                message = "Downloaded files failed verification"
                self.logger.error(message)
                self._set_state(ModelState.DOWNLOAD_FAILED, message)
                return False

            with self._lock:
                self._corrupted_files.clear()
            self.logger.info(f"Model {label} completed successfully")
            self._set_state(ModelState.READY)
            return True
        finally:
            self._cancel.clear()
            self._download_lock.release()

    def _download_missing(self) -> None:
        os.makedirs(self.model_dir, exist_ok=True)

        with self._lock:
            corrupted = set(self._corrupted_files)
        status = self.model_status()
        needed = [
            e for e in self.manifest.entries
            if e.filename in status.missing_files or e.filename in corrupted
        ]
        if not needed:
            self.logger.info("Model already complete")
            return

        for entry in needed:
            path = entry.local_path(self.model_dir)
            if entry.filename in corrupted and os.path.exists(path):
                os.remove(path)

        urls = {e.filename: build_url(self.config, e.filename) for e in needed}
        finished = sum(
            os.path.getsize(e.local_path(self.model_dir))
            for e in self.manifest.entries
            if e not in needed and os.path.exists(e.local_path(self.model_dir))
        )
        resumed = sum(
            os.path.getsize(e.tmp_path(self.model_dir))
            for e in needed
            if os.path.exists(e.tmp_path(self.model_dir))
        )
        starting = finished + resumed

        client = self._get_client()
        per_file_estimate = self.config.estimated_total_bytes // len(self.manifest.entries)
        expected = finished
        for entry in needed:
            size = probe_size(client, urls[entry.filename])
            expected += size if size is not None else per_file_estimate
        self._set_progress(DownloadProgress(starting, expected))

        self.logger.info(
            f"Downloading {len(needed)} files (~{format_bytes(expected - starting)})"
        )
        for i, entry in enumerate(needed, 1):
            if self._cancel.is_set():
                raise DownloadCancelledError()
            note = " (large file, may take a while)" if entry.is_shard else ""
            self.logger.info(f"Downloading {entry.filename} [{i}/{len(needed)}]{note}")
            self._fetch(entry, urls[entry.filename])
            self.logger.info(f"Downloaded {entry.filename}")

        with self._lock:
            p = self._progress
            done = max(p.downloaded_bytes, p.total_bytes)
            self._progress = DownloadProgress(done, done)
        self._notify()

    def _fetch(self, entry: ManifestEntry, url: str) -> None:
        """Download one file with retries and backoff."""
        last_error: Optional[ModelError] = None
        for attempt in range(1, self.config.max_attempts + 1):
            if self._cancel.is_set():
                raise DownloadCancelledError()
            try:
                download_file(
                    self._get_client(),
                    url,
                    entry.local_path(self.model_dir),
                    chunk_size=self.config.chunk_size,
                    resource_timeout=self.config.resource_timeout,
                    on_bytes=self._advance,
                    cancel_event=self._cancel,
                )
                return
            except HttpStatusError as e:
                if not e.is_retryable:
                    raise
                last_error = e
                self.logger.info(f"Attempt {attempt} for {entry.filename} failed: {e}")
            except TransientNetworkError as e:
                last_error = e
                self.logger.info(f"Attempt {attempt} for {entry.filename} failed: {e}")
            except (IncompleteDownloadError, CorruptedError) as e:
                last_error = e
                self.logger.info(
                    f"Attempt {attempt} for {entry.filename} failed integrity check, "
                    f"restarting from zero: {e}"
                )

            if attempt < self.config.max_attempts:
                delay = min(self.config.backoff_base ** attempt, self.config.backoff_cap)
                if self._sleep is None:
                    self._cancel.wait(delay)
                else:
                    self._sleep(delay)

        raise last_error

    def redownload_shard(self, filename: str) -> None:
        """
        Replace one file (normally a corrupted shard) with a fresh copy.

        Used by the weight loader's single repair attempt. Unlike download()
        this raises on failure, records last_error and leaves the state alone.

        Raises:
            ModelError: Another download is running, or the fetch failed.
        """
        entry = self.manifest.entry(filename)
        if not self._download_lock.acquire(blocking=False):
            raise ModelError("Cannot re-download while another download is running")
        try:
            self._cancel.clear()
            self.logger.info(f"Re-downloading corrupted file: {filename}")
            path = entry.local_path(self.model_dir)
            if os.path.exists(path):
                os.remove(path)
            tmp = entry.tmp_path(self.model_dir)
            if os.path.exists(tmp):
                os.remove(tmp)
            try:
                self._fetch(entry, build_url(self.config, filename))
            except ModelError as e:
                with self._lock:
                    self._last_error = e.message
                self._notify()
                raise
            with self._lock:
                self._corrupted_files.discard(filename)
            self.logger.info(f"Re-downloaded {filename}")
        finally:
            self._download_lock.release()

    # ─────────────────────────────────────────────────────────────────────
    # Corruption bookkeeping
    # ─────────────────────────────────────────────────────────────────────

    def mark_corrupted(self, filename: Optional[str] = None, message: Optional[str] = None) -> None:
        """Record a structural failure found while loading weights."""
        with self._lock:
            if filename is not None:
                self._corrupted_files.add(filename)
        text = message or (f"Model file {filename} is corrupted" if filename else "Model is corrupted")
        self.logger.error(text)
        self._set_state(ModelState.CORRUPTED, text)

    def mark_ready(self) -> None:
        """A repaired model loaded cleanly."""
        with self._lock:
            self._corrupted_files.clear()
        self._set_state(ModelState.READY)

    @property
    def corrupted_files(self) -> list:
        with self._lock:
            return sorted(self._corrupted_files)

    # ─────────────────────────────────────────────────────────────────────
    # Deletion
    # ─────────────────────────────────────────────────────────────────────

    def delete(self) -> None:
        """
        Remove the model directory and return to NOT_DOWNLOADED.

        A running download is cancelled and waited for first, so no writer
        is left behind in the directory.
        """
        self._cancel.set()
        with self._download_lock:
            if os.path.exists(self.model_dir):
                shutil.rmtree(self.model_dir)
            with self._lock:
                self._corrupted_files.clear()
                self._progress = DownloadProgress()
            self._cancel.clear()
        print(f"Model deleted: {self.model_dir}")
        self._set_state(ModelState.NOT_DOWNLOADED)

    def delete_and_redownload(self) -> bool:
        self.logger.info("Deleting model and downloading again")
        self.delete()
        return self.download()
