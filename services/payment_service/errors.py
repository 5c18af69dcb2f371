"""
Payment error taxonomy, classification and the error handler.

Every payment failure is normalized into exactly one PaymentErrorType before
it is logged, persisted or shown. Users only ever see the type's user message
and recovery suggestions; the raw text stays in the audit log.
"""
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.config.database import utcnow
from shared.observability import hm_fraud_alerts_total, hm_payment_errors_total
from shared.security.stores import CounterRecord, CounterStore, InMemoryCounterStore
from .models import ComplianceRecord, FraudAlert, PaymentTransaction
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)


class PaymentErrorType(str, Enum):
    VALIDATION_ERROR = "validation_error"
    GATEWAY_ERROR = "gateway_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT_ERROR = "timeout_error"
    FRAUD_DETECTED = "fraud_detected"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CARD_DECLINED = "card_declined"
    EXPIRED_CARD = "expired_card"
    INVALID_CARD = "invalid_card"
    DUPLICATE_TRANSACTION = "duplicate_transaction"
    CURRENCY_MISMATCH = "currency_mismatch"
    AMOUNT_TOO_HIGH = "amount_too_high"
    AMOUNT_TOO_LOW = "amount_too_low"
    COMPLIANCE_VIOLATION = "compliance_violation"
    SYSTEM_ERROR = "system_error"


RETRYABLE_ERROR_TYPES = {
    PaymentErrorType.TIMEOUT_ERROR,
    PaymentErrorType.GATEWAY_ERROR,
    PaymentErrorType.NETWORK_ERROR,
    PaymentErrorType.SYSTEM_ERROR,
}

CRITICAL_ERROR_TYPES = {
    PaymentErrorType.FRAUD_DETECTED,
    PaymentErrorType.SYSTEM_ERROR,
    PaymentErrorType.COMPLIANCE_VIOLATION,
}

USER_MESSAGES = {
    PaymentErrorType.VALIDATION_ERROR: "Please check your payment information and try again.",
    PaymentErrorType.GATEWAY_ERROR: "Payment service temporarily unavailable. Please try again later.",
    PaymentErrorType.NETWORK_ERROR: "Network connection issue. Please check your connection and try again.",
    PaymentErrorType.TIMEOUT_ERROR: "Payment request timed out. Please try again.",
    PaymentErrorType.FRAUD_DETECTED: "Payment flagged for security review. Please contact support.",
    PaymentErrorType.INSUFFICIENT_FUNDS: "Insufficient funds. Please check your account balance.",
    PaymentErrorType.CARD_DECLINED: "Card was declined. Please try a different card or contact your bank.",
    PaymentErrorType.EXPIRED_CARD: "Card has expired. Please use a different card.",
    PaymentErrorType.INVALID_CARD: "Invalid card details. Please check and try again.",
    PaymentErrorType.DUPLICATE_TRANSACTION: "Duplicate transaction detected.",
    PaymentErrorType.CURRENCY_MISMATCH: "Currency mismatch. Please try again.",
    PaymentErrorType.AMOUNT_TOO_HIGH: "Payment amount exceeds allowed limit.",
    PaymentErrorType.AMOUNT_TOO_LOW: "Payment amount below minimum required.",
    PaymentErrorType.COMPLIANCE_VIOLATION: "Payment violates compliance rules.",
    PaymentErrorType.SYSTEM_ERROR: "System error occurred. Please try again later.",
}

RECOVERY_SUGGESTIONS = {
    PaymentErrorType.VALIDATION_ERROR: [
        "Check all payment fields are filled correctly",
        "Verify card details or payment information",
        "Ensure amounts are within allowed limits",
    ],
    PaymentErrorType.CARD_DECLINED: [
        "Try a different payment card",
        "Contact your bank to check for restrictions",
        "Verify sufficient funds are available",
    ],
    PaymentErrorType.EXPIRED_CARD: [
        "Use a different payment card",
        "Update your card information",
    ],
    PaymentErrorType.INSUFFICIENT_FUNDS: [
        "Check account balance",
        "Use a different payment method",
        "Contact your bank for assistance",
    ],
    PaymentErrorType.TIMEOUT_ERROR: [
        "Check your internet connection",
        "Try again in a few moments",
        "Use a different device if possible",
    ],
    PaymentErrorType.GATEWAY_ERROR: [
        "Try again in a few minutes",
        "Contact support if the problem persists",
    ],
    PaymentErrorType.FRAUD_DETECTED: [
        "Contact customer support for assistance",
        "Additional verification may be required",
    ],
    PaymentErrorType.NETWORK_ERROR: [
        "Check your internet connection",
        "Try switching networks",
        "Disable VPN if active",
    ],
    PaymentErrorType.DUPLICATE_TRANSACTION: [
        "Check if payment already processed",
        "Contact support if you see unexpected charges",
    ],
    PaymentErrorType.AMOUNT_TOO_HIGH: [
        "Reduce the payment amount",
        "Split into multiple payments",
        "Contact support for higher limits",
    ],
    PaymentErrorType.AMOUNT_TOO_LOW: [
        "Increase the payment amount to meet minimum",
        "Add additional items or services",
    ],
    PaymentErrorType.COMPLIANCE_VIOLATION: [
        "Contact support for compliance assistance",
        "Additional documentation may be required",
    ],
    PaymentErrorType.SYSTEM_ERROR: [
        "Try again later",
        "Contact support if the problem persists",
        "Check system status page",
    ],
    PaymentErrorType.CURRENCY_MISMATCH: [
        "Verify currency selection",
        "Contact support for currency exchange assistance",
    ],
    PaymentErrorType.INVALID_CARD: [
        "Double-check card number and details",
        "Try entering card information again",
        "Use a different card",
    ],
}


class PaymentError(Exception):
    def __init__(
        self,
        type: PaymentErrorType,
        message: str,
        code: str = "",
        details: dict[str, Any] | None = None,
        retryable: bool | None = None,
        user_message: str | None = None,
    ):
        super().__init__(message)
        self.type = type
        self.message = message
        self.code = code or type.value.upper()
        self.details = details or {}
        self.retryable = type in RETRYABLE_ERROR_TYPES if retryable is None else retryable
        self.user_message = user_message or USER_MESSAGES.get(type, "An error occurred during payment processing.")

    @property
    def suggestions(self) -> list[str]:
        return get_error_recovery_suggestions(self)

    def to_public_dict(self) -> dict[str, Any]:
        """The only shape that may leave the service."""
        return {
            "type": self.type.value,
            "message": self.user_message,
            "suggestions": self.suggestions,
            "retryable": self.retryable,
        }


def get_error_recovery_suggestions(error: PaymentError) -> list[str]:
    return list(RECOVERY_SUGGESTIONS.get(error.type, ["Contact customer support for assistance"]))


@dataclass(frozen=True)
class ClassificationRule:
    error_type: PaymentErrorType
    matches: Callable[[str], bool]


def _contains_any(*words: str) -> Callable[[str], bool]:
    return lambda message: any(word in message for word in words)


# Evaluated top to bottom against the lower-cased message; first match wins.
# The specific card rules must stay ahead of the generic validation rule.
CLASSIFICATION_RULES = [
    ClassificationRule(PaymentErrorType.TIMEOUT_ERROR, _contains_any("timeout", "network", "connection")),
    ClassificationRule(PaymentErrorType.GATEWAY_ERROR, _contains_any("gateway", "api", "unavailable")),
    ClassificationRule(PaymentErrorType.CARD_DECLINED, _contains_any("declined", "decline")),
    ClassificationRule(PaymentErrorType.EXPIRED_CARD, _contains_any("expired")),
    ClassificationRule(PaymentErrorType.INVALID_CARD, lambda message: "invalid" in message and "card" in message),
    ClassificationRule(PaymentErrorType.INSUFFICIENT_FUNDS, _contains_any("insufficient", "funds")),
    ClassificationRule(PaymentErrorType.FRAUD_DETECTED, _contains_any("fraud", "suspicious")),
    ClassificationRule(PaymentErrorType.VALIDATION_ERROR, _contains_any("validation", "invalid", "required")),
]


def classify_error(error: BaseException) -> PaymentError:
    if isinstance(error, PaymentError):
        return error

    raw = str(error) or error.__class__.__name__
    message = raw.lower()
    for rule in CLASSIFICATION_RULES:
        if rule.matches(message):
            return PaymentError(rule.error_type, raw, details={"original_error": error.__class__.__name__})

    # Unknown failures are assumed transient
    return PaymentError(
        PaymentErrorType.SYSTEM_ERROR,
        raw,
        details={"original_error": error.__class__.__name__},
        retryable=True,
    )


@dataclass
class PaymentErrorContext:
    payment_id: str | None = None
    order_id: str | None = None
    gateway_id: str | None = None
    user_id: str | None = None
    amount: float | None = None
    currency: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class RetryResult:
    success: bool
    error: PaymentError | None = None


class PaymentErrorBoundary:
    """
    Error-rate circuit breaker per (user, error type).

    A user is blocked for a type once it has MAX_ERRORS errors that each came
    within WINDOW_SECONDS of the previous one, until the window passes without
    a new error.
    """

    MAX_ERRORS = 5
    WINDOW_SECONDS = 60 * 60

    def __init__(self, store: CounterStore | None = None, clock: Callable[[], float] = time.time):
        self.store = store or InMemoryCounterStore()
        self.clock = clock

    @staticmethod
    def _key(user_id: str, error_type: PaymentErrorType) -> str:
        return f"payment_errors:{user_id}:{error_type.value}"

    def record_error(self, user_id: str, error_type: PaymentErrorType) -> None:
        now = self.clock()
        key = self._key(user_id, error_type)
        record = self.store.get(key)

        if record and now - record.timestamp < self.WINDOW_SECONDS:
            self.store.set(key, CounterRecord(count=record.count + 1, timestamp=now))
        else:
            self.store.set(key, CounterRecord(count=1, timestamp=now))

    def should_block_payment(self, user_id: str, error_type: PaymentErrorType) -> bool:
        record = self.store.get(self._key(user_id, error_type))
        if record is None:
            return False
        return self.clock() - record.timestamp < self.WINDOW_SECONDS and record.count >= self.MAX_ERRORS

    def blocked_error_type(self, user_id: str) -> PaymentErrorType | None:
        for error_type in PaymentErrorType:
            if self.should_block_payment(user_id, error_type):
                return error_type
        return None

    def clear_error_record(self, user_id: str, error_type: PaymentErrorType) -> None:
        self.store.delete(self._key(user_id, error_type))


class PaymentErrorHandler:
    def __init__(self, boundary: PaymentErrorBoundary | None = None):
        self.boundary = boundary or PaymentErrorBoundary()

    async def handle_payment_error(
        self,
        db: AsyncSession,
        error: BaseException,
        context: PaymentErrorContext | None = None,
    ) -> PaymentError:
        """Classify, audit and apply the side effects of a payment failure.
        Never raises; the typed error is returned for the caller to present."""
        context = context or PaymentErrorContext()
        payment_error = classify_error(error)

        hm_payment_errors_total.labels(
            error_type=payment_error.type.value,
            retryable=str(payment_error.retryable).lower(),
        ).inc()
        logger.error(
            "payment_error",
            error_type=payment_error.type.value,
            error_code=payment_error.code,
            error_message=payment_error.message,
            retryable=payment_error.retryable,
            **asdict(context),
        )

        try:
            await self._persist(db, payment_error, context)
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("payment_error_persist_failed", payment_id=context.payment_id)

        if payment_error.type in CRITICAL_ERROR_TYPES:
            self._notify_critical(payment_error, context)

        if context.user_id:
            self.boundary.record_error(context.user_id, payment_error.type)

        return payment_error

    async def retry_payment(
        self,
        db: AsyncSession,
        payment_id: str,
        max_retries: int = settings.MAX_PAYMENT_RETRIES,
    ) -> RetryResult:
        """Count a retry and reset an open payment to pending. Re-invoking the
        gateway is up to the caller. Failed payments are final."""
        payment = await PaymentRepository.get_payment(db, payment_id)
        if payment is None:
            return RetryResult(False, PaymentError(PaymentErrorType.VALIDATION_ERROR, "Payment not found"))
        if payment.status == "failed":
            # Non-retryable errors end the attempt; paying again needs a new payment
            return RetryResult(False, PaymentError(
                PaymentErrorType.VALIDATION_ERROR,
                "Failed payments cannot be retried",
                retryable=False,
                user_message="This payment attempt has ended. Please start a new payment with another payment method.",
            ))

        metadata = dict(payment.meta or {})
        retry_count = metadata.get("retryCount", 0)
        if retry_count >= max_retries:
            return RetryResult(False, PaymentError(PaymentErrorType.SYSTEM_ERROR, "Maximum retry attempts exceeded"))

        metadata["retryCount"] = retry_count + 1
        moved = await PaymentRepository.transition_status(
            db, payment_id, ("pending", "processing"), "pending", meta=metadata
        )
        if not moved:
            return RetryResult(
                False,
                PaymentError(PaymentErrorType.VALIDATION_ERROR, f"Payment in status '{payment.status}' cannot be retried"),
            )

        await db.commit()
        return RetryResult(True)

    @staticmethod
    async def _persist(db: AsyncSession, error: PaymentError, context: PaymentErrorContext) -> None:
        await PaymentRepository.add_audit_log(
            db,
            "payment_error",
            {
                "errorType": error.type.value,
                "errorCode": error.code,
                "errorMessage": error.message,
                "context": asdict(context),
            },
            entity_id=context.payment_id,
            user_id=context.user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )

        if context.payment_id:
            payment = await PaymentRepository.get_payment(db, context.payment_id)
            target = "pending" if error.retryable else "failed"
            # Completed, refunded or cancelled payments are never downgraded
            moved = await PaymentRepository.transition_status(
                db, context.payment_id, ("pending", "processing"), target, failure_reason=error.message
            )
            if moved and not error.retryable and payment is not None:
                await PaymentRepository.add(db, PaymentTransaction(
                    payment_id=payment.id,
                    type="charge",
                    amount=payment.amount,
                    currency=payment.currency,
                    status="failed",
                    gateway_transaction_id=payment.gateway_transaction_id,
                    gateway_response={"error_type": error.type.value, "error_code": error.code},
                    processed_at=utcnow(),
                ))

        if error.type == PaymentErrorType.FRAUD_DETECTED:
            await PaymentRepository.add(db, FraudAlert(
                payment_id=context.payment_id,
                user_id=context.user_id,
                alert_type="gateway_report",
                severity="high",
                description=error.message,
                meta={"error_code": error.code},
            ))
            hm_fraud_alerts_total.labels(severity="high").inc()
        elif error.type == PaymentErrorType.COMPLIANCE_VIOLATION:
            await PaymentRepository.add(db, ComplianceRecord(
                payment_id=context.payment_id,
                regulation_type="Libyan_Financial_Regulations",
                compliance_status="non_compliant",
                details={"message": error.message, **error.details},
            ))

    @staticmethod
    def _notify_critical(error: PaymentError, context: PaymentErrorContext) -> None:
        # Picked up by log-based alerting; there is no paging integration
        logger.critical(
            "payment_error_critical",
            error_type=error.type.value,
            error_message=error.message,
            **asdict(context),
        )


payment_error_handler = PaymentErrorHandler()
