# app/domain/errors.py
from dataclasses import dataclass


@dataclass
class DomainError(Exception):
    code: str
    technical: str | None = None

    http_status = 400

    def __str__(self) -> str:
        if self.technical:
            return f"{self.code}: {self.technical}"
        return self.code


class InsufficientCredits(DomainError):
    http_status = 402

    def __init__(self, technical: str | None = None):
        super().__init__("INSUFFICIENT_CREDITS", technical)


class QuotaExceeded(DomainError):
    http_status = 429

    def __init__(self, technical: str | None = None):
        super().__init__("QUOTA_EXCEEDED", technical)


class ProviderUnavailable(DomainError):
    http_status = 502

    def __init__(self, technical: str | None = None):
        super().__init__("PROVIDER_UNAVAILABLE", technical)


class UnknownModel(DomainError):
    def __init__(self, technical: str | None = None):
        super().__init__("UNKNOWN_MODEL", technical)


class NotFound(DomainError):
    http_status = 404

    def __init__(self, technical: str | None = None):
        super().__init__("NOT_FOUND", technical)


class AlreadyRefunded(DomainError):
    http_status = 409

    def __init__(self, technical: str | None = None):
        super().__init__("ALREADY_REFUNDED", technical)


class RecordNotFound(DomainError):
    http_status = 404

    def __init__(self, technical: str | None = None):
        super().__init__("RECORD_NOT_FOUND", technical)


class PaymentNotConfirmed(DomainError):
    http_status = 402

    def __init__(self, technical: str | None = None):
        super().__init__("PAYMENT_NOT_CONFIRMED", technical)


class UnknownTier(DomainError):
    http_status = 409

    def __init__(self, technical: str | None = None):
        super().__init__("UNKNOWN_TIER", technical)


# короткие тексты для клиента; technical уходит только в лог
PUBLIC_MESSAGES = {
    "INSUFFICIENT_CREDITS":  "Not enough credits for this model.",
    "QUOTA_EXCEEDED":        "Daily or weekly limit for this model reached.",
    "PROVIDER_UNAVAILABLE":  "Video service is temporarily unavailable. Credits were returned.",
    "UNKNOWN_PLAN":          "Unknown package.",
    "UNKNOWN_MODEL":         "Unknown model.",
    "NOT_FOUND":             "Not found.",
    "ALREADY_REFUNDED":      "This record has already been refunded.",
    "RECORD_NOT_FOUND":      "Payment record not found.",
    "PAYMENT_NOT_CONFIRMED": "Payment is not confirmed yet.",
    "UNKNOWN_TIER":          "Payment received but the package could not be identified. Support will review it.",
    "EMPTY_BATCH":           "Batch has no prompts.",
    "BATCH_TOO_LARGE":       "Too many prompts in one batch.",
    "BATCH_NOT_FOUND":       "Batch not found.",
    "EMPTY_ADJUSTMENT":      "Adjustment changes nothing.",
}


def to_user_message(code: str) -> str:
    return PUBLIC_MESSAGES.get(code, "Request failed. Please try again later.")
