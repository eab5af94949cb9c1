from __future__ import annotations


class StepError(RuntimeError):
    retryable: bool = True


class RetryableStepError(StepError):
    retryable = True


class TerminalStepError(StepError):
    retryable = False

    def __init__(self, message: str, *, reason: str = "terminal") -> None:
        super().__init__(message)
        self.reason = reason


class EventPublishError(RuntimeError):
    pass
