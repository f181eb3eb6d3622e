"""
Error kinds raised by the acquisition and inference layers.

Every error carries a human-readable message because the last one is shown
to the user until their next action. The split between kinds matters for
control flow:

  TransientNetworkError  retried locally with backoff
  IncompleteDownloadError, CorruptedError
                         integrity failures: partial file discarded, restart from zero
  HttpStatusError        retried only for 5xx / 408 / 429
  everything else        propagated to the caller as a state transition
"""

from typing import Optional


class ModelError(Exception):
    """Base class for all acquisition/inference errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidLocationError(ModelError):
    """The remote address could not be formed or is not http(s)."""

    def __init__(self, url: str):
        super().__init__(f"Invalid model download URL: {url}")
        self.url = url


class TransientNetworkError(ModelError):
    """Connection reset, timeout, DNS hiccup. Safe to retry."""


class HttpStatusError(ModelError):
    """The server answered with a status other than 200/206."""

    def __init__(self, status_code: int, url: str = ""):
        super().__init__(f"HTTP Error {status_code}: Unable to download model")
        self.status_code = status_code
        self.url = url

    @property
    def is_retryable(self) -> bool:
        return self.status_code >= 500 or self.status_code in (408, 429)


class IncompleteDownloadError(ModelError):
    """Bytes written differ from the Content-Length the server declared."""

    def __init__(self, expected: int, written: int, filename: str = ""):
        super().__init__(
            f"Downloaded file {filename} is incomplete: "
            f"expected {expected} bytes, got {written}"
        )
        self.expected = expected
        self.written = written
        self.filename = filename


class CorruptedError(ModelError):
    """
    A file failed structural or content validation.

    `filename` names the offending file when known, so the weight loader can
    re-download exactly that shard.
    """

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class NotReadyError(ModelError):
    """An inference operation was attempted before the model was usable."""

    def __init__(self, message: str = "Model is not ready for inference"):
        super().__init__(message)


class MissingWeightError(ModelError):
    """A required weight is absent and the policy forbids defaulting it."""


class DownloadCancelledError(ModelError):
    """The download was cancelled cooperatively."""

    def __init__(self, message: str = "Download cancelled"):
        super().__init__(message)
