"""
Error taxonomy for the exam session engine.

Only ConfigurationError and PersistenceExhausted ever reach the test-taker.
The rest are logged and handled where they occur.
"""


class ExamEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ExamEngineError):
    """Exam or its sections are missing / not configured. Terminal for the session."""


class ExamAlreadyCompleted(ConfigurationError):
    """A completed result already exists for this student and exam."""


class ValidationError(ExamEngineError):
    """Malformed answer or answer outside the active section."""


class TransientStorageError(ExamEngineError):
    """One write tier failed; the writer falls through to the next tier."""

    def __init__(self, tier: str, cause: BaseException | str):
        self.tier = tier
        self.cause = cause
        super().__init__(f"{tier} tier failed: {cause}")


class PersistenceExhausted(ExamEngineError):
    """Every write tier failed. The record is kept and retried later."""

    def __init__(self, record, reason: str):
        self.record = record
        self.reason = reason
        super().__init__(f"Result pending save: {reason}")


class TimerRace(ExamEngineError):
    """Expiry and manual submit collided. Resolved by the completion guard, never raised."""
