"""Session, wallet, transfer and history value types, plus amount helpers."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from pesawallet.config import DEFAULT_CURRENCY, MAX_AMOUNT_MINOR

AMOUNT_RE = re.compile(r"^\d+(\.\d{1,2})?$")
CENT = Decimal("0.01")


# ------------------------
# Amount helpers
# ------------------------
def to_decimal(value: Any) -> Decimal:
    """Decimal from a JSON number or numeric string. Rejects bools, NaN and infinities."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"not an amount: {value!r}")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not an amount: {value!r}") from None
    if not d.is_finite():
        raise ValueError(f"not an amount: {value!r}")
    return d


def to_minor(value: Any) -> int:
    """Major currency units (e.g. 12.5) to integer minor units (1250)."""
    try:
        return int((to_decimal(value) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValueError(f"amount out of range: {value!r}") from None


def exact_minor(value: Any, limit: int = MAX_AMOUNT_MINOR) -> int:
    """
    Minor units for an amount that must be exact: positive, at most two
    decimal places and no more than `limit`. Raises ValueError otherwise.
    """
    d = to_decimal(value)
    if d <= 0:
        raise ValueError("amount must be positive")
    if d * 100 > limit:
        raise ValueError("amount too large")
    if d != d.quantize(CENT):
        raise ValueError("amount has more than two decimal places")
    return to_minor(d)


def to_major(amount_minor: int) -> Union[int, float]:
    """Minor units to the JSON number the backend expects."""
    if amount_minor % 100 == 0:
        return amount_minor // 100
    return float(Decimal(amount_minor) / 100)


def parse_amount(text: str) -> Optional[int]:
    """User-typed amount ("500", "12.50") to minor units; None when malformed."""
    text = (text or "").strip().replace(",", "")
    if not AMOUNT_RE.match(text):
        return None
    return to_minor(text)


def format_money(amount_minor: int, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{currency} {Decimal(amount_minor) / 100:,.2f}"


# ------------------------
# Identity & wallet
# ------------------------
@dataclass(frozen=True)
class UserProfile:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: str = ""
    role: str = "user"
    is_verified: bool = False

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserProfile":
        uid = d.get("_id") or d.get("id")
        if not uid:
            raise ValueError("user profile has no id")
        return cls(
            id=str(uid),
            first_name=str(d.get("firstName") or ""),
            last_name=str(d.get("lastName") or ""),
            email=str(d.get("email") or ""),
            phone_number=str(d.get("phoneNumber") or ""),
            role=str(d.get("role") or "user"),
            is_verified=bool(d.get("isVerified", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phoneNumber": self.phone_number,
            "role": self.role,
            "isVerified": self.is_verified,
        }


@dataclass(frozen=True)
class WalletSnapshot:
    """Point-in-time balance. Advisory only; the backend re-checks every transfer."""

    balance: Decimal
    currency: str = DEFAULT_CURRENCY
    pin_configured: bool = False

    @property
    def balance_minor(self) -> int:
        return to_minor(self.balance)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WalletSnapshot":
        return cls(
            balance=to_decimal(d.get("balance", 0)),
            currency=str(d.get("currency") or DEFAULT_CURRENCY),
            pin_configured=bool(d.get("isPinSet", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"balance": str(self.balance), "currency": self.currency, "isPinSet": self.pin_configured}


@dataclass(frozen=True)
class Session:
    user: UserProfile
    token: str
    wallet: Optional[WalletSnapshot] = None

    def __repr__(self) -> str:
        return f"Session(user={self.user.id!r}, wallet={self.wallet!r}, token=<hidden>)"


@dataclass(frozen=True)
class Recipient:
    id: str
    display_name: str
    phone_number: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Recipient":
        uid = d.get("_id") or d.get("id")
        if not uid:
            raise ValueError("recipient has no id")
        name = f"{d.get('firstName') or ''} {d.get('lastName') or ''}".strip()
        return cls(id=str(uid), display_name=name or str(d.get("name") or ""), phone_number=str(d.get("phoneNumber") or ""))


# ------------------------
# Transfer outcome
# ------------------------
class TransferStatus(enum.Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TransferResult:
    status: TransferStatus
    reason: str = ""
    transaction_id: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str) -> "TransferResult":
        return cls(TransferStatus.REJECTED, reason)


@dataclass(frozen=True)
class TransferDraft:
    """What the send-money wizard has collected so far. The PIN is kept out of repr."""

    recipient: Optional[Recipient] = None
    amount_minor: Optional[int] = None
    note: str = ""
    fee_minor: int = 0
    pin_digits: str = field(default="", repr=False)
    result: Optional[TransferResult] = None

    @property
    def total_minor(self) -> Optional[int]:
        if self.amount_minor is None:
            return None
        return self.amount_minor + self.fee_minor


PENDING_STATES = {"pending", "processing", "queued", "initiated"}
FAILED_STATES = {"failed", "rejected", "cancelled", "declined"}


def status_from_backend(state: Any) -> TransferStatus:
    state = str(state or "").lower()
    if state in PENDING_STATES:
        return TransferStatus.PENDING
    if state in FAILED_STATES:
        return TransferStatus.REJECTED
    return TransferStatus.COMPLETED


# ------------------------
# History
# ------------------------
OUTGOING_TYPES = {"send", "payment", "withdrawal"}


def _party_name(d: Any) -> str:
    if not isinstance(d, dict):
        return ""
    name = d.get("name") or f"{d.get('firstName') or ''} {d.get('lastName') or ''}".strip()
    return str(name or d.get("phoneNumber") or "")


def _timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class TransactionRecord:
    """One row of the wallet's transaction history."""

    id: str
    kind: str
    amount: Decimal
    status: TransferStatus
    fee: Decimal = Decimal(0)
    description: str = ""
    counterparty: str = ""
    created_at: Optional[datetime] = None

    @property
    def is_outgoing(self) -> bool:
        return self.kind in OUTGOING_TYPES

    @property
    def total(self) -> Decimal:
        return self.amount + self.fee

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TransactionRecord":
        tx_id = d.get("_id") or d.get("id") or d.get("transactionId")
        if not tx_id:
            raise ValueError("transaction has no id")
        kind = str(d.get("type") or "").lower()
        party = d.get("recipient") if kind in OUTGOING_TYPES else d.get("sender")
        return cls(
            id=str(tx_id),
            kind=kind,
            amount=to_decimal(d.get("amount")),
            status=status_from_backend(d.get("status")),
            fee=to_decimal(d.get("fee") or 0),
            description=str(d.get("description") or ""),
            counterparty=_party_name(party) or _party_name(d.get("recipient") or d.get("sender")),
            created_at=_timestamp(d.get("createdAt")),
        )
