from datetime import datetime
from typing import Any

PROBLEM_TYPE_BASE = "https://servicebook.example.com/problems"


class DomainError(Exception):
    """Base class for failures that map onto a problem-details response."""

    status_code = 400
    title = "Domain Error"
    slug = "domain-error"

    def __init__(
        self,
        detail: str | None = None,
        *,
        title: str | None = None,
        errors: list[dict[str, Any]] | None = None,
        type: str | None = None,
        **context: Any,
    ) -> None:
        self.title = title or self.title
        self.detail = detail or self.title
        self.context = {key: _serialize(value) for key, value in context.items() if value is not None}
        self.errors = errors if errors is not None else _context_errors(self.context)
        self.type = type or f"{PROBLEM_TYPE_BASE}/{self.slug}"
        super().__init__(self.detail)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _context_errors(context: dict[str, Any]) -> list[dict[str, Any]]:
    return [{"field": key, "message": str(value)} for key, value in context.items()]


class NotFound(DomainError):
    status_code = 404
    title = "Not Found"
    slug = "not-found"


class SlotConflict(DomainError):
    status_code = 409
    title = "Slot Conflict"
    slug = "slot-conflict"


class OutsideWorkingHours(DomainError):
    status_code = 422
    title = "Outside Working Hours"
    slug = "outside-working-hours"


class TooFarInAdvance(DomainError):
    status_code = 422
    title = "Too Far In Advance"
    slug = "too-far-in-advance"


class SlotInPast(DomainError):
    status_code = 422
    title = "Slot In Past"
    slug = "slot-in-past"


class HoldExpired(DomainError):
    status_code = 410
    title = "Hold Expired"
    slug = "hold-expired"


class PaymentMismatch(DomainError):
    status_code = 422
    title = "Payment Mismatch"
    slug = "payment-mismatch"


class InsufficientWalletBalance(DomainError):
    status_code = 402
    title = "Insufficient Wallet Balance"
    slug = "insufficient-wallet-balance"


class BufferConflict(DomainError):
    status_code = 409
    title = "Buffer Conflict"
    slug = "buffer-conflict"


class NoAvailableWorker(DomainError):
    status_code = 409
    title = "No Available Worker"
    slug = "no-available-worker"


class InvalidTransition(DomainError):
    status_code = 409
    title = "Invalid Transition"
    slug = "invalid-transition"


class InvalidCompletionCode(DomainError):
    status_code = 422
    title = "Invalid Completion Code"
    slug = "invalid-completion-code"


class InvalidConfigValue(DomainError):
    status_code = 422
    title = "Invalid Config Value"
    slug = "invalid-config-value"


class DuplicateWebhook(DomainError):
    """Idempotency short-circuit. Callers absorb it; it is never rendered."""

    status_code = 200
    title = "Duplicate Webhook"
    slug = "duplicate-webhook"
