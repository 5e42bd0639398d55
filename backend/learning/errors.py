"""Learning Engine error taxonomy."""


class LearningEngineError(Exception):
    """Base class for recoverable, per-event engine failures."""


class MalformedEventError(LearningEngineError):
    """Event is missing or has an unparseable quantity, date, or identity."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class StoreError(LearningEngineError):
    """Underlying statistics store failed a read or write."""


class KeyLockTimeout(LearningEngineError):
    """A key-scoped lock could not be acquired within its timeout."""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for lock on {key}")


class AlertTransitionError(LearningEngineError):
    """Alert does not exist or cannot move to the requested status."""
