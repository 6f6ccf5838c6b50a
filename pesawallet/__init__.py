"""
PesaSoft wallet client v0.1.0

Client-side core of the PesaSoft mobile wallet: cached session, the
send-money wizard, scannable payment codes, the transaction dispatcher and
recent history.
"""

from pesawallet.codec import DecodeError, PaymentIntent, ReceiveIntent, decode, encode
from pesawallet.dispatcher import DispatchOutcome, FailureKind, PaymentDispatcher
from pesawallet.history import TransactionHistory
from pesawallet.session import SessionStore
from pesawallet.wizard import TransferWizard, WizardStep

__version__ = "0.1.0"

__all__ = [
    "DecodeError",
    "DispatchOutcome",
    "FailureKind",
    "PaymentDispatcher",
    "PaymentIntent",
    "ReceiveIntent",
    "SessionStore",
    "TransactionHistory",
    "TransferWizard",
    "WizardStep",
    "decode",
    "encode",
]
