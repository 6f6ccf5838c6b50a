"""
Send-money wizard.

The steps are strictly linear:

    RECIPIENT_SELECTION -> AMOUNT_ENTRY -> CONFIRMATION
        -> PIN_AUTHENTICATION -> SUBMITTING -> COMPLETED

`transition(state, event)` is the whole state machine and is pure, so it can
be exercised without a UI or a network. `TransferWizard` wraps it with the
async parts: the debounced recipient search, the single in-flight submission
and the session refresh after a completed transfer.

Moving back to an earlier step clears whatever the later steps collected.
The balance check in AMOUNT_ENTRY and the PIN length check are fast-fail
conveniences only; the backend verifies both on submit.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

from pesawallet.api import ApiClient
from pesawallet.codec import ReceiveIntent
from pesawallet.config import MIN_SEARCH_LENGTH, PIN_LENGTH, SEARCH_DEBOUNCE
from pesawallet.dispatcher import DispatchOutcome, FailureKind, PaymentDispatcher, TransferFailure
from pesawallet.errors import InvalidTransitionError, SubmissionPendingError
from pesawallet.models import Recipient, TransferDraft, TransferResult, format_money

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "insufficient balance"
NON_POSITIVE_AMOUNT = "amount must be greater than zero"
PIN_INCOMPLETE = f"enter your {PIN_LENGTH}-digit PIN"
PIN_NOT_DIGIT = "PIN digits must be 0-9"


class WizardStep(enum.IntEnum):
    RECIPIENT_SELECTION = 1
    AMOUNT_ENTRY = 2
    CONFIRMATION = 3
    PIN_AUTHENTICATION = 4
    SUBMITTING = 5
    COMPLETED = 6
    CANCELLED = 7


TERMINAL = (WizardStep.COMPLETED, WizardStep.CANCELLED)
BACKTRACKABLE = (WizardStep.AMOUNT_ENTRY, WizardStep.CONFIRMATION, WizardStep.PIN_AUTHENTICATION)


@dataclass(frozen=True)
class WizardState:
    step: WizardStep = WizardStep.RECIPIENT_SELECTION
    draft: TransferDraft = field(default_factory=TransferDraft)
    query: str = ""
    candidates: Tuple[Recipient, ...] = ()
    error: Optional[str] = None
    failure: Optional[TransferFailure] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL


# ------------------------
# Events
# ------------------------
@dataclass(frozen=True)
class QueryChanged:
    query: str


@dataclass(frozen=True)
class CandidatesFound:
    query: str
    candidates: Tuple[Recipient, ...]


@dataclass(frozen=True)
class SelectRecipient:
    recipient: Recipient


@dataclass(frozen=True)
class UseReceiveIntent:
    intent: ReceiveIntent


@dataclass(frozen=True)
class EnterAmount:
    amount_minor: int
    available_minor: int
    note: str = ""


@dataclass(frozen=True)
class QuoteFee:
    fee_minor: int


@dataclass(frozen=True)
class Acknowledge:
    pass


@dataclass(frozen=True)
class PinDigit:
    digit: str = field(repr=False)


@dataclass(frozen=True)
class PinBackspace:
    pass


@dataclass(frozen=True)
class SubmitPin:
    pass


@dataclass(frozen=True)
class SubmissionSucceeded:
    result: TransferResult


@dataclass(frozen=True)
class SubmissionFailed:
    failure: TransferFailure


@dataclass(frozen=True)
class GoBack:
    step: WizardStep


@dataclass(frozen=True)
class Cancel:
    pass


# ------------------------
# Transition function
# ------------------------
def _clear_after(draft: TransferDraft, step: WizardStep) -> TransferDraft:
    """Drop everything collected by steps after `step`."""
    if step < WizardStep.AMOUNT_ENTRY:
        draft = replace(draft, amount_minor=None, note="")
    if step < WizardStep.CONFIRMATION:
        draft = replace(draft, fee_minor=0)
    if step < WizardStep.PIN_AUTHENTICATION:
        draft = replace(draft, pin_digits="")
    return draft


def _refuse(state: WizardState, event) -> InvalidTransitionError:
    return InvalidTransitionError(f"{type(event).__name__} not accepted in {state.step.name}")


def _choose(state: WizardState, recipient: Recipient) -> WizardState:
    draft = _clear_after(replace(state.draft, recipient=recipient), WizardStep.RECIPIENT_SELECTION)
    return replace(state, step=WizardStep.AMOUNT_ENTRY, draft=draft, candidates=(), error=None, failure=None)


def _after_failure(state: WizardState, failure: TransferFailure) -> WizardState:
    if failure.kind is FailureKind.UNAUTHORIZED:
        return WizardState(
            step=WizardStep.CANCELLED,
            draft=TransferDraft(result=TransferResult.rejected(failure.reason)),
            error=failure.reason,
            failure=failure,
        )
    if failure.kind is FailureKind.TRANSIENT:
        return replace(state, step=WizardStep.CONFIRMATION, error=failure.reason, failure=failure)
    if failure.kind is FailureKind.VALIDATION or failure.code == "pin_mismatch":
        target = WizardStep.PIN_AUTHENTICATION
    else:
        target = WizardStep.AMOUNT_ENTRY
    draft = _clear_after(replace(state.draft, pin_digits=""), target)
    return replace(state, step=target, draft=draft, error=failure.reason, failure=failure)


def transition(state: WizardState, event) -> WizardState:
    """Next state for `event`. Refused input stays in place with `error` set."""
    step = state.step
    if step in TERMINAL:
        raise _refuse(state, event)
    if isinstance(event, Cancel):
        return WizardState(step=WizardStep.CANCELLED)
    if isinstance(event, GoBack):
        if step not in BACKTRACKABLE or not WizardStep.RECIPIENT_SELECTION <= event.step < step:
            raise _refuse(state, event)
        return replace(
            state, step=event.step, draft=_clear_after(state.draft, event.step), error=None, failure=None
        )

    if step is WizardStep.RECIPIENT_SELECTION:
        if isinstance(event, QueryChanged):
            candidates = state.candidates if len(event.query.strip()) >= MIN_SEARCH_LENGTH else ()
            return replace(state, query=event.query, candidates=candidates, error=None)
        if isinstance(event, CandidatesFound):
            if event.query != state.query:
                return state
            return replace(state, candidates=tuple(event.candidates))
        if isinstance(event, SelectRecipient):
            return _choose(state, event.recipient)
        if isinstance(event, UseReceiveIntent):
            return _choose(state, event.intent.to_recipient())

    elif step is WizardStep.AMOUNT_ENTRY:
        if isinstance(event, EnterAmount):
            if event.amount_minor <= 0:
                return replace(state, error=NON_POSITIVE_AMOUNT)
            if event.amount_minor > event.available_minor:
                return replace(state, error=INSUFFICIENT_BALANCE)
            draft = replace(state.draft, amount_minor=event.amount_minor, note=event.note.strip(), fee_minor=0)
            return replace(state, step=WizardStep.CONFIRMATION, draft=draft, error=None, failure=None)

    elif step is WizardStep.CONFIRMATION:
        if isinstance(event, QuoteFee):
            if event.fee_minor < 0:
                raise _refuse(state, event)
            return replace(state, draft=replace(state.draft, fee_minor=event.fee_minor))
        if isinstance(event, Acknowledge):
            return replace(state, step=WizardStep.PIN_AUTHENTICATION, error=None)

    elif step is WizardStep.PIN_AUTHENTICATION:
        pin = state.draft.pin_digits
        if isinstance(event, PinDigit):
            if len(event.digit) != 1 or event.digit not in "0123456789":
                return replace(state, error=PIN_NOT_DIGIT)
            if len(pin) >= PIN_LENGTH:
                return state
            return replace(state, draft=replace(state.draft, pin_digits=pin + event.digit), error=None)
        if isinstance(event, PinBackspace):
            return replace(state, draft=replace(state.draft, pin_digits=pin[:-1]), error=None)
        if isinstance(event, SubmitPin):
            if len(pin) != PIN_LENGTH:
                return replace(state, error=PIN_INCOMPLETE)
            return replace(state, step=WizardStep.SUBMITTING, error=None, failure=None)

    elif step is WizardStep.SUBMITTING:
        if isinstance(event, SubmissionSucceeded):
            draft = replace(state.draft, pin_digits="", result=event.result)
            return replace(state, step=WizardStep.COMPLETED, draft=draft, error=None, failure=None)
        if isinstance(event, SubmissionFailed):
            return _after_failure(state, event.failure)

    raise _refuse(state, event)


# ------------------------
# Recipient search
# ------------------------
class RecipientSearch:
    """
    Debounced directory lookup. Returns None for a query that was superseded
    while waiting, so only the newest query's results are ever used.
    """

    def __init__(self, api: ApiClient, debounce: float = SEARCH_DEBOUNCE, min_length: int = MIN_SEARCH_LENGTH):
        self.api = api
        self.debounce = debounce
        self.min_length = min_length
        self._generation = 0

    async def lookup(self, query: str) -> Optional[List[Recipient]]:
        self._generation += 1
        gen = self._generation
        q = query.strip()
        if len(q) < self.min_length:
            return []
        if self.debounce > 0:
            await asyncio.sleep(self.debounce)
        if gen != self._generation:
            return None
        ok, users = await self.api.search_users(q)
        if gen != self._generation:
            return None
        recipients = []
        for u in users:
            try:
                recipients.append(Recipient.from_dict(u))
            except ValueError:
                logger.debug("skipping malformed search result")
        return recipients


# ------------------------
# Driver
# ------------------------
class TransferWizard:
    """One send-money attempt. Discard the instance once it is terminal."""

    def __init__(self, session, dispatcher: PaymentDispatcher, search: Optional[RecipientSearch] = None):
        self.session = session
        self.dispatcher = dispatcher
        self.search = search
        self.state = WizardState()
        self._listeners: List[Callable[[WizardState], None]] = []
        self._submitting = False

    @property
    def step(self) -> WizardStep:
        return self.state.step

    @property
    def draft(self) -> TransferDraft:
        return self.state.draft

    @property
    def submitting(self) -> bool:
        return self._submitting

    def on_change(self, listener: Callable[[WizardState], None]) -> None:
        self._listeners.append(listener)

    def send(self, event) -> WizardState:
        self.state = transition(self.state, event)
        for listener in list(self._listeners):
            listener(self.state)
        return self.state

    # ------------------------
    # Step helpers
    # ------------------------
    async def set_query(self, query: str) -> WizardState:
        self.send(QueryChanged(query))
        if self.search is None:
            return self.state
        candidates = await self.search.lookup(query)
        if candidates is not None and self.state.step is WizardStep.RECIPIENT_SELECTION:
            self.send(CandidatesFound(query, tuple(candidates)))
        return self.state

    def select(self, recipient: Recipient) -> WizardState:
        return self.send(SelectRecipient(recipient))

    def use_receive_intent(self, intent: ReceiveIntent) -> WizardState:
        return self.send(UseReceiveIntent(intent))

    def enter_amount(self, amount_minor: int, note: str = "") -> WizardState:
        # read at event time so the newest completed refresh is what gets checked
        wallet = self.session.wallet if self.session is not None else None
        available = wallet.balance_minor if wallet is not None else 0
        return self.send(EnterAmount(amount_minor=amount_minor, available_minor=available, note=note))

    def quote_fee(self, fee_minor: int) -> WizardState:
        return self.send(QuoteFee(fee_minor))

    def acknowledge(self) -> WizardState:
        return self.send(Acknowledge())

    def press_digit(self, digit: str) -> WizardState:
        return self.send(PinDigit(digit))

    def backspace(self) -> WizardState:
        return self.send(PinBackspace())

    def back(self, step: WizardStep) -> WizardState:
        return self.send(GoBack(step))

    def cancel(self) -> WizardState:
        """Navigate away. A submission already in flight is left to finish."""
        if self.state.is_terminal:
            return self.state
        return self.send(Cancel())

    def recap(self) -> dict:
        draft = self.state.draft
        if draft.recipient is None or draft.amount_minor is None:
            raise InvalidTransitionError("nothing to confirm yet")
        currency = self.session.wallet.currency if self.session is not None and self.session.wallet else "KES"
        return {
            "recipient": draft.recipient.display_name,
            "phone_number": draft.recipient.phone_number,
            "amount": format_money(draft.amount_minor, currency),
            "note": draft.note,
            "fee": format_money(draft.fee_minor, currency),
            "total": format_money(draft.total_minor, currency),
        }

    # ------------------------
    # Submission
    # ------------------------
    async def submit(self) -> WizardState:
        if self._submitting:
            raise SubmissionPendingError("a transfer from this wizard is already in flight")
        self.send(SubmitPin())
        if self.state.step is not WizardStep.SUBMITTING:
            return self.state
        self._submitting = True
        try:
            outcome: DispatchOutcome = await self.dispatcher.dispatch_draft(self.state.draft)
        except Exception:
            logger.exception("transfer submission raised")
            if self.state.step is WizardStep.SUBMITTING:
                self.send(SubmissionFailed(TransferFailure(FailureKind.TRANSIENT, "transfer failed, please try again")))
            raise
        finally:
            self._submitting = False
        cancelled = self.state.step is WizardStep.CANCELLED
        if outcome.ok:
            if not cancelled:
                self.send(SubmissionSucceeded(outcome.result))
            if self.session is not None:
                await self.session.refresh()
        elif not cancelled:
            self.send(SubmissionFailed(outcome.failure))
        else:
            logger.info("transfer outcome after cancel: %s", outcome.failure.kind.value)
        return self.state
