"""Detection of the reserved human-handoff marker in generated text.

The generation backend is instructed (in its prompt, outside this package) to
append a fixed marker when, and only when, the user explicitly asks for a
human. The detector trusts that literal marker and nothing else; it performs
no language inference of its own.
"""

from __future__ import annotations

from .models import DetectionResult

DEFAULT_MARKER = "[ESCALATION_REQUESTED]"
DEFAULT_REASON = "user requested human assistance"


class EscalationDetector:
    def __init__(
        self,
        marker: str = DEFAULT_MARKER,
        default_reason: str = DEFAULT_REASON,
    ) -> None:
        if not marker:
            raise ValueError("escalation marker must not be empty")
        self.marker = marker
        self.default_reason = default_reason

    def detect(self, text: str, reason: str | None = None) -> DetectionResult:
        """Strip the marker from ``text`` and report whether it was present.

        ``reason`` is the backend-supplied explanation, used instead of the
        default when the marker is found. Removal repeats until no marker is
        left so that stripping can never splice a new one together, which
        keeps detection idempotent on its own output.
        """

        text = text or ""
        if self.marker not in text:
            return DetectionResult(clean_content=text, escalation_requested=False)
        cleaned = text
        while self.marker in cleaned:
            cleaned = cleaned.replace(self.marker, "")
        return DetectionResult(
            clean_content=cleaned.strip(),
            escalation_requested=True,
            escalation_reason=(reason or "").strip() or self.default_reason,
        )
