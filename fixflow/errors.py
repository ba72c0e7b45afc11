"""Error taxonomy for the issue-to-pull-request pipeline.

Errors fall in three groups:
- Intake no-ops: the webhook is acknowledged but no run is admitted.
- Fatal step errors: the run is marked failed immediately, never retried.
- Transient step errors: retried up to the step budget, then fatal.
"""

from __future__ import annotations


class FixFlowError(Exception):
    """Base exception for all FixFlow errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# =============================================================================
# Intake
# =============================================================================

class SignatureInvalid(FixFlowError):
    """Webhook signature is missing or does not match the shared secret."""


class IntakeNoOp(FixFlowError):
    """Event acknowledged without admitting work."""


class EventIgnored(IntakeNoOp):
    """Unsupported event kind or action."""


class RepoNotWatched(IntakeNoOp):
    """Repository is unknown or not currently watched."""


class NoValidCredential(IntakeNoOp):
    """Repository owner holds no valid key for a supported provider."""


# =============================================================================
# Step errors
# =============================================================================

class FatalStepError(FixFlowError):
    """A step failure that must not be retried."""


class MissingCredentials(FatalStepError):
    """Access token or primary API key could not be resolved."""


class DecryptionFailure(FatalStepError):
    """Stored ciphertext is corrupt or failed tag verification."""


class ContextFetchFailure(FixFlowError):
    """Issue, comments or file listing could not be read."""


class IssueNotFound(ContextFetchFailure, FatalStepError):
    """Issue was deleted or access to it was revoked."""


class UnsupportedProvider(FatalStepError):
    """Credential names a provider no adapter exists for."""


class ProviderFailure(FixFlowError):
    """A model provider call failed."""

    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.reason = message
        self.status_code = status_code


class ProviderRateLimited(ProviderFailure):
    """A model provider refused the call because of rate limiting or quota."""


class FallbackFailure(ProviderFailure):
    """Primary provider was rate limited and the fallback also failed."""

    def __init__(self, primary: str, fallback: str, reason: str) -> None:
        super().__init__(
            fallback,
            f"primary provider {primary} was rate limited and fallback {fallback} failed: {reason}",
        )
        self.primary = primary
        self.fallback = fallback


class PatchRejected(FatalStepError):
    """Model proposal rejected by the quality gate."""


class MalformedPatch(PatchRejected):
    """Proposal lacks a file path or code change."""


class LowConfidencePatch(PatchRejected):
    """Proposal confidence is below the acceptance threshold."""

    def __init__(self, score: int, threshold: int) -> None:
        super().__init__(f"Low confidence score: {score} (threshold {threshold})")
        self.score = score
        self.threshold = threshold


class MutationFailure(FixFlowError):
    """A source-control write failed."""


def is_transient(exc: BaseException) -> bool:
    """Return True if a step should be retried after ``exc``."""
    return not isinstance(exc, FatalStepError)
