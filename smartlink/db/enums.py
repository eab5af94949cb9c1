from enum import Enum


class ConversionEventTypeEnum(str, Enum):
    subscribe = "subscribe"
    purchase = "purchase"
    rebill = "rebill"
    click = "click"


class SideEffectStatusEnum(str, Enum):
    sent = "sent"
    skipped = "skipped"
    failed = "failed"


class StepStatusEnum(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed_retryable = "failed_retryable"
    failed_terminal = "failed_terminal"


class WorkflowRunStatusEnum(str, Enum):
    running = "running"
    completed = "completed"
    completed_with_failures = "completed_with_failures"
    halted = "halted"


class DeviceTypeEnum(str, Enum):
    mobile = "mobile"
    tablet = "tablet"
    desktop = "desktop"
