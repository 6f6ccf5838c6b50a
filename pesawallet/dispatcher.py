"""
Single choke point for money-moving backend calls.

Every transfer, merchant payment and top-up goes through
`PaymentDispatcher`, which turns it into one `TransactionRequest`, calls the
executor exactly once and classifies the outcome. There is no retry loop:
a transient failure is reported and the caller decides whether to resubmit.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from pesawallet.api import ApiClient, Response, error_message, is_success, unwrap
from pesawallet.codec import DecodeError, PaymentIntent, ReceiveIntent
from pesawallet.config import MAX_AMOUNT_MINOR, MAX_TOPUP_MINOR, MIN_TOPUP_MINOR, PIN_LENGTH
from pesawallet.models import (
    FAILED_STATES,
    PENDING_STATES,
    TransferDraft,
    TransferResult,
    TransferStatus,
    exact_minor,
    format_money,
    to_major,
)

logger = logging.getLogger(__name__)

PIN_WORD_RE = re.compile(r"\bpin\b")
BUSINESS_CODES = {
    "pin_mismatch": "pin_mismatch",
    "invalid_pin": "pin_mismatch",
    "incorrect_pin": "pin_mismatch",
    "insufficient_funds": "insufficient_funds",
    "insufficient_balance": "insufficient_funds",
    "limit_exceeded": "limit_exceeded",
    "transaction_limit": "limit_exceeded",
}


# ------------------------
# Failure classification
# ------------------------
class FailureKind(enum.Enum):
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    BUSINESS = "business"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class TransferFailure:
    kind: FailureKind
    reason: str
    code: Optional[str] = None
    status: int = 0

    @property
    def retryable(self) -> bool:
        return self.kind is FailureKind.TRANSIENT


@dataclass(frozen=True)
class DispatchOutcome:
    result: Optional[TransferResult] = None
    failure: Optional[TransferFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def invalid(cls, reason: str) -> "DispatchOutcome":
        return cls(failure=TransferFailure(FailureKind.VALIDATION, reason))


def business_code(j: Any, message: str, status: int) -> Optional[str]:
    if isinstance(j, dict):
        code = j.get("code") or j.get("errorCode")
        if isinstance(code, str) and code.lower() in BUSINESS_CODES:
            return BUSINESS_CODES[code.lower()]
    msg = message.lower()
    if PIN_WORD_RE.search(msg):
        return "pin_mismatch"
    if status == 402 or "insufficient" in msg:
        return "insufficient_funds"
    if "limit" in msg:
        return "limit_exceeded"
    return None


def classify(status: int, text: str, j: Any) -> Optional[TransferFailure]:
    """None for a successful response, otherwise the failure class."""
    if is_success(status, j):
        body = unwrap(j)
        state = str(body.get("status", "")).lower() if isinstance(body, dict) else ""
        if state in FAILED_STATES:
            return TransferFailure(FailureKind.BUSINESS, error_message(status, text, j, "transaction rejected"), "rejected", status)
        return None
    message = error_message(status, text, j, "transaction failed")
    if status == 0 or status in (408, 429) or status >= 500:
        return TransferFailure(FailureKind.TRANSIENT, message, status=status)
    if status == 401:
        return TransferFailure(FailureKind.UNAUTHORIZED, message, status=status)
    code = business_code(j, message, status)
    if code is not None:
        return TransferFailure(FailureKind.BUSINESS, message, code, status)
    if status in (400, 422):
        return TransferFailure(FailureKind.VALIDATION, message, status=status)
    return TransferFailure(FailureKind.BUSINESS, message, "rejected", status)


def parse_result(j: Any) -> TransferResult:
    body = unwrap(j)
    if not isinstance(body, dict):
        return TransferResult(TransferStatus.COMPLETED)
    tx = body.get("transaction") if isinstance(body.get("transaction"), dict) else body
    tx_id = tx.get("transactionId") or tx.get("_id") or tx.get("id") or body.get("checkoutRequestId")
    state = str(body.get("status") or tx.get("status") or "").lower()
    status = TransferStatus.PENDING if state in PENDING_STATES else TransferStatus.COMPLETED
    return TransferResult(status, reason=str(body.get("message") or ""), transaction_id=str(tx_id) if tx_id else None)


# ------------------------
# Requests & executor
# ------------------------
class RequestKind(enum.Enum):
    SEND = "send"
    MERCHANT = "merchant"
    TOPUP = "topup"


@dataclass(frozen=True)
class TransactionRequest:
    kind: RequestKind
    amount_minor: int
    pin: str = field(default="", repr=False)
    recipient_id: Optional[str] = None
    merchant_name: Optional[str] = None
    reference: Optional[str] = None
    description: str = ""
    phone_number: Optional[str] = None
    method: str = "mpesa"

    def body(self) -> Dict[str, Any]:
        amount = to_major(self.amount_minor)
        if self.kind is RequestKind.SEND:
            return {"recipientId": self.recipient_id, "amount": amount, "description": self.description, "pin": self.pin}
        if self.kind is RequestKind.MERCHANT:
            d = {"merchantName": self.merchant_name, "amount": amount, "description": self.description, "pin": self.pin}
            if self.reference:
                d["reference"] = self.reference
            return d
        return {"amount": amount, "phoneNumber": self.phone_number, "method": self.method}


class TransactionExecutor:
    """The backend's authoritative money movement. Returns a raw response, never raises."""

    async def execute(self, request: TransactionRequest) -> Response:
        raise NotImplementedError


class BackendExecutor(TransactionExecutor):
    def __init__(self, api: ApiClient):
        self.api = api

    async def execute(self, request: TransactionRequest) -> Response:
        if request.kind is RequestKind.SEND:
            return await self.api.send_money(request.body())
        if request.kind is RequestKind.MERCHANT:
            return await self.api.pay_merchant(request.body())
        return await self.api.stk_push(request.body())


# ------------------------
# Dispatcher
# ------------------------
class PaymentDispatcher:
    def __init__(self, executor: TransactionExecutor, session=None):
        self.executor = executor
        self.session = session

    def _check(self, request: TransactionRequest) -> Optional[str]:
        if request.amount_minor is None or request.amount_minor <= 0:
            return "amount must be greater than zero"
        if request.amount_minor > MAX_AMOUNT_MINOR:
            return f"maximum amount is {format_money(MAX_AMOUNT_MINOR)}"
        if request.kind is RequestKind.TOPUP:
            if not request.phone_number:
                return "phone number is required"
            if request.amount_minor < MIN_TOPUP_MINOR:
                return f"minimum top-up amount is {format_money(MIN_TOPUP_MINOR)}"
            if request.amount_minor > MAX_TOPUP_MINOR:
                return f"maximum top-up amount is {format_money(MAX_TOPUP_MINOR)}"
            return None
        if len(request.pin) != PIN_LENGTH or not request.pin.isdigit():
            return f"enter your {PIN_LENGTH}-digit PIN"
        if request.kind is RequestKind.SEND and not request.recipient_id:
            return "please select a recipient"
        if request.kind is RequestKind.MERCHANT and not request.merchant_name:
            return "merchant is missing"
        return None

    async def dispatch(self, request: TransactionRequest) -> DispatchOutcome:
        problem = self._check(request)
        if problem:
            return DispatchOutcome.invalid(problem)
        logger.info("dispatching %s of %s", request.kind.value, format_money(request.amount_minor))
        s, t, j = await self.executor.execute(request)
        failure = classify(s, t, j)
        if failure is None:
            result = parse_result(j)
            logger.info("%s accepted: %s %s", request.kind.value, result.status.value, result.transaction_id or "")
            return DispatchOutcome(result=result)
        logger.warning("%s failed (%s): %s", request.kind.value, failure.kind.value, failure.reason)
        if failure.kind is FailureKind.UNAUTHORIZED and self.session is not None:
            await self.session.handle_unauthorized()
        return DispatchOutcome(failure=failure)

    async def dispatch_draft(self, draft: TransferDraft) -> DispatchOutcome:
        if draft.recipient is None:
            return DispatchOutcome.invalid("please select a recipient")
        if draft.amount_minor is None:
            return DispatchOutcome.invalid("please enter a valid amount")
        return await self.dispatch(
            TransactionRequest(
                kind=RequestKind.SEND,
                amount_minor=draft.amount_minor,
                pin=draft.pin_digits,
                recipient_id=draft.recipient.id,
                description=draft.note,
            )
        )

    async def dispatch_code(
        self,
        payload: Union[ReceiveIntent, PaymentIntent, DecodeError],
        pin: str,
        amount_minor: Optional[int] = None,
        note: str = "",
    ) -> DispatchOutcome:
        if isinstance(payload, ReceiveIntent):
            if amount_minor is None:
                return DispatchOutcome.invalid("please enter a valid amount")
            request = TransactionRequest(
                kind=RequestKind.SEND, amount_minor=amount_minor, pin=pin, recipient_id=payload.user_id, description=note
            )
        elif isinstance(payload, PaymentIntent):
            if amount_minor is None:
                if payload.amount is None:
                    return DispatchOutcome.invalid("please enter a valid amount")
                try:
                    amount_minor = exact_minor(payload.amount)
                except ValueError as e:
                    logger.warning("merchant code amount refused: %s", e)
                    return DispatchOutcome.invalid("the amount on this code is not valid")
            request = TransactionRequest(
                kind=RequestKind.MERCHANT,
                amount_minor=amount_minor,
                pin=pin,
                merchant_name=payload.merchant_name,
                reference=payload.reference,
                description=note,
            )
        else:
            return DispatchOutcome.invalid("this code is not supported")
        return await self.dispatch(request)

    async def top_up(self, amount_minor: int, phone_number: str, method: str = "mpesa") -> DispatchOutcome:
        return await self.dispatch(
            TransactionRequest(kind=RequestKind.TOPUP, amount_minor=amount_minor, phone_number=phone_number, method=method)
        )
