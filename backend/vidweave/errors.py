"""Exception hierarchy for the generation pipeline.

Provider errors are split by how the generation client must react to them:

- TransientProviderError / RateLimitedError: retried with backoff
- InvalidInputError / ModelUnavailableError: never retried, next model
- ProviderAuthError: configuration problem, aborts the whole call
- UnrecognizedOutputError: hard failure, no retry and no fallback

Media errors abort the current media step only; the job worker decides
whether the step was essential.
"""

from typing import Optional


class VidweaveError(Exception):
    """Base class for all pipeline errors."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------
class ProviderError(VidweaveError):
    """Error returned by (or while talking to) the generative-media provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.model_id = model_id


class TransientProviderError(ProviderError):
    """5xx response, network failure or provider-side prediction failure."""


class RateLimitedError(ProviderError):
    """429 response."""


class InvalidInputError(ProviderError):
    """4xx response other than 429/401/403/404: the request itself is bad."""


class ModelUnavailableError(ProviderError):
    """The model exists in our catalogue but the provider will not run it."""


class ProviderAuthError(ProviderError):
    """401/403: missing or rejected credentials."""


class UnrecognizedOutputError(ProviderError):
    """The provider answered with an output shape we cannot interpret."""


class ModelNotFoundError(VidweaveError):
    """Requested model is neither in the catalogue nor known to the provider."""


class AllModelsExhaustedError(VidweaveError):
    """Every model in the fallback list failed after its retry budget."""

    def __init__(self, message: str, last_error: Optional[str] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Media errors
# ---------------------------------------------------------------------------
class MediaError(VidweaveError):
    """Base class for local media-processing failures."""


class MediaProbeError(MediaError):
    """Source is corrupt or reports a zero/non-finite duration."""


class MediaToolError(MediaError):
    """ffmpeg/ffprobe exited non-zero; message carries its stderr."""


class DownloadError(MediaError):
    """Remote fetch returned a non-2xx status."""

    def __init__(self, url: str, status_code: Optional[int], detail: str = "") -> None:
        message = f"Failed to download {url}: HTTP {status_code}" if status_code else f"Failed to download {url}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.url = url
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------
class JobStateError(VidweaveError):
    """Illegal job state transition (e.g. reviving a terminal job)."""


class ProjectNotFoundError(VidweaveError):
    """No project row exists for the given id."""
