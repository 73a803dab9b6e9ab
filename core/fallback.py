"""Escalation to the learner's native language after repeated misunderstandings."""

from .config import FALLBACK_THRESHOLD, FALLBACK_STICKY


class FallbackPolicy:
    """Counts consecutive comprehension failures within one call.

    In sticky mode a successful turn does not clear the counter once the
    threshold was reached, so the call stays in the native language.
    """

    def __init__(self, threshold: int = FALLBACK_THRESHOLD, sticky: bool = FALLBACK_STICKY):
        self.threshold = threshold
        self.sticky = sticky
        self.consecutive_failures = 0

    @property
    def escalated(self) -> bool:
        return self.consecutive_failures >= self.threshold

    def on_failure(self) -> bool:
        """Record a misunderstanding. Returns True if output should escalate."""
        self.consecutive_failures += 1
        return self.escalated

    def on_success(self) -> None:
        if self.sticky and self.escalated:
            return
        self.consecutive_failures = 0

    def language_for(self, target_language: str, native_language: str) -> str:
        return native_language if self.escalated else target_language

    def reset(self) -> None:
        self.consecutive_failures = 0
