"""Quality gate between the model and any repository mutation."""

from __future__ import annotations

from fixflow.errors import LowConfidencePatch, MalformedPatch
from fixflow.schemas import ModelPatch


CONFIDENCE_THRESHOLD = 40


def validate_patch(patch: ModelPatch, threshold: int = CONFIDENCE_THRESHOLD) -> None:
    """Reject incomplete or low-confidence proposals.

    Raises:
        MalformedPatch: ``file_path`` or ``code_change`` is missing.
        LowConfidencePatch: ``confidence_score`` is below ``threshold``.
    """
    if not patch.file_path or not patch.file_path.strip() or not patch.code_change:
        raise MalformedPatch("AI response missing required fields")
    if patch.confidence_score < threshold:
        raise LowConfidencePatch(patch.confidence_score, threshold)
