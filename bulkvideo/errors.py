"""
Error taxonomy for the bulk video worker.

Validation errors subclass ValueError so the route layer maps them to 400
the same way it maps any other bad input.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


# ── Validation (rejected before reaching the orchestrator) ──────────────────

class InputValidationError(PipelineError, ValueError):
    """Malformed input row, missing required column, bad parameter."""


class InvalidProviderError(InputValidationError):
    """Animation provider id outside the allow-list."""


class InvalidAnimationParamsError(InputValidationError):
    """Duration / resolution not supported by the selected provider."""


# ── Provider errors ──────────────────────────────────────────────────────────

class AnimationError(PipelineError):
    """An animation provider rejected or failed a request."""

    transient = False

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class RateLimitedError(AnimationError):
    transient = True


class InvalidImageError(AnimationError):
    pass


class QuotaExceededError(AnimationError):
    pass


# ── Storage ──────────────────────────────────────────────────────────────────

class ArtifactUnavailableError(PipelineError):
    """A stored artifact could not be fetched even with a fresh signed URL."""


class StoreUnavailableError(PipelineError):
    """The durable store cannot be reached; batch scheduling must stop."""


def classify_provider_error(provider: str, status_code: Optional[int], detail: str) -> AnimationError:
    """Turn a failed provider response into a specific, user-actionable error."""
    text = (detail or "").lower()

    if status_code == 429 or "rate limit" in text or "too many requests" in text:
        return RateLimitedError(
            f"Rate limit exceeded for {provider}. Please try again in a few minutes.",
            provider, status_code,
        )

    if status_code == 402 or any(w in text for w in ("insufficient credits", "quota", "balance", "not enough credits")):
        return QuotaExceededError(
            f"Insufficient credits for {provider}. Please top up your account and retry.",
            provider, status_code,
        )

    if status_code in (400, 415, 422) and "image" in text:
        return InvalidImageError(
            f"Invalid image format or URL for {provider}. "
            "Please ensure the image is publicly accessible and in JPEG/PNG format.",
            provider, status_code,
        )

    return AnimationError(
        f"Animation generation failed ({provider}): {detail or 'unknown error'}",
        provider, status_code,
    )
