"""
Scannable payment codes.

Wire format is a JSON object tagged by `type`:

    {"type": "receive", "userId": ..., "name": ..., "phoneNumber": ...}
    {"type": "payment", "merchantName": ..., "amount": 250, "reference": ...}

`decode` treats its input as untrusted: it returns a `DecodeError` for
anything it cannot fully validate and never raises. `encode` refuses, with
ValueError, any value that `decode` would refuse, so every code this package
writes can be read back unchanged.

Amounts are exact to the cent: positive, at most two decimal places and no
larger than MAX_AMOUNT_MINOR.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from pesawallet.models import Recipient, UserProfile, exact_minor, to_decimal

RECEIVE = "receive"
PAYMENT = "payment"


@dataclass(frozen=True)
class ReceiveIntent:
    user_id: str
    name: str
    phone_number: str

    def to_recipient(self) -> Recipient:
        return Recipient(id=self.user_id, display_name=self.name, phone_number=self.phone_number)


@dataclass(frozen=True)
class PaymentIntent:
    """Merchant payment request. `amount` is only a suggestion the payer may edit."""

    merchant_name: str
    amount: Optional[Decimal] = None
    reference: Optional[str] = None


class DecodeFailure(enum.Enum):
    INVALID_FORMAT = "invalid_format"


@dataclass(frozen=True)
class DecodeError:
    reason: DecodeFailure = DecodeFailure.INVALID_FORMAT
    detail: str = ""


CodePayload = Union[ReceiveIntent, PaymentIntent]


def receive_intent_for(user: UserProfile) -> ReceiveIntent:
    """The code a user shows to get paid. A profile without a name shows its phone number."""
    return ReceiveIntent(user_id=user.id, name=user.name or user.phone_number or user.id, phone_number=user.phone_number)


# ------------------------
# Field checks (shared by encode and decode)
# ------------------------
def _require_text(key: str, v: Any) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{key} missing or not text")
    return v


def _check_amount(v: Any) -> Decimal:
    amount = to_decimal(v)
    exact_minor(amount)
    return amount


def _check_reference(v: Any) -> Optional[str]:
    if v is not None and not isinstance(v, str):
        raise ValueError("reference not text")
    return v


# ------------------------
# Encode
# ------------------------
def _json_amount(amount: Decimal) -> Union[int, float]:
    # at most 12 significant digits, so the float's shortest repr is the exact decimal
    if amount == amount.to_integral_value():
        return int(amount)
    return float(amount)


def encode(intent: CodePayload) -> str:
    if isinstance(intent, ReceiveIntent):
        d: Dict[str, Any] = {
            "type": RECEIVE,
            "userId": _require_text("userId", intent.user_id),
            "name": _require_text("name", intent.name),
            "phoneNumber": _require_text("phoneNumber", intent.phone_number),
        }
    elif isinstance(intent, PaymentIntent):
        d = {"type": PAYMENT, "merchantName": _require_text("merchantName", intent.merchant_name)}
        if intent.amount is not None:
            d["amount"] = _json_amount(_check_amount(intent.amount))
        if _check_reference(intent.reference) is not None:
            d["reference"] = intent.reference
    else:
        raise TypeError(f"cannot encode {type(intent).__name__}")
    return json.dumps(d, separators=(",", ":"))


# ------------------------
# Decode
# ------------------------
def _decode_receive(d: Dict[str, Any]) -> ReceiveIntent:
    return ReceiveIntent(
        user_id=_require_text("userId", d.get("userId")),
        name=_require_text("name", d.get("name")),
        phone_number=_require_text("phoneNumber", d.get("phoneNumber")),
    )


def _decode_payment(d: Dict[str, Any]) -> PaymentIntent:
    amount = _check_amount(d["amount"]) if d.get("amount") is not None else None
    return PaymentIntent(
        merchant_name=_require_text("merchantName", d.get("merchantName")),
        amount=amount,
        reference=_check_reference(d.get("reference")),
    )


DECODERS = {RECEIVE: _decode_receive, PAYMENT: _decode_payment}


def decode(raw: Any) -> Union[CodePayload, DecodeError]:
    if not isinstance(raw, str):
        return DecodeError(detail="code is not text")
    try:
        d = json.loads(raw, parse_float=Decimal)
    except (ValueError, RecursionError):
        return DecodeError(detail="not JSON")
    if not isinstance(d, dict):
        return DecodeError(detail="not a JSON object")
    decoder = DECODERS.get(d.get("type")) if isinstance(d.get("type"), str) else None
    if decoder is None:
        return DecodeError(detail=f"unknown code type {d.get('type')!r}")
    try:
        return decoder(d)
    except ValueError as e:
        return DecodeError(detail=str(e))
