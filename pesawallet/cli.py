#!/usr/bin/env python3
"""
PesaSoft terminal wallet.

Reads ~/.pesawallet/config.json (or ./pesawallet.json) for the backend URL,
restores the cached session and drops into a menu: send money, scan a
payment code, show your receive code, top up via M-Pesa. The home screen
lists recent transactions and re-checks any transfer still pending.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import shutil
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Tuple

from pesawallet.api import ApiClient
from pesawallet.cache import FileCache
from pesawallet.codec import DecodeError, PaymentIntent, ReceiveIntent, decode, encode, receive_intent_for
from pesawallet.config import CONFIG_LOCATIONS, ClientConfig
from pesawallet.dispatcher import BackendExecutor, PaymentDispatcher
from pesawallet.errors import AuthenticationError
from pesawallet.history import TransactionHistory
from pesawallet.models import TransferStatus, format_money, parse_amount
from pesawallet.session import SessionStore, session_summary
from pesawallet.wizard import RecipientSearch, TransferWizard, WizardStep

logger = logging.getLogger(__name__)

SPINNER_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

# Terminal colors (minimal)
C = {
    "r": "\033[0m",
    "c": "\033[36m",
    "g": "\033[32m",
    "y": "\033[33m",
    "R": "\033[31m",
    "B": "\033[1m",
    "bg": "\033[44m",
    "bgr": "\033[41m",
    "bgg": "\033[42m",
    "w": "\033[37m",
}


# ------------------------
# Utilities (terminal)
# ------------------------
def cls() -> None:
    os.system("cls" if os.name == "nt" else "clear")


def term_size() -> Tuple[int, int]:
    return shutil.get_terminal_size((80, 25))


def at(x: int, y: int, text: str, cl: str = "") -> None:
    print(f"\033[{y};{x}H{cl}{text}{C['r']}", end="")


_executor = ThreadPoolExecutor(max_workers=1)


async def ainput_at(x: int, y: int, secret: bool = False) -> str:
    print(f"\033[{y};{x}H", end="", flush=True)
    loop = asyncio.get_event_loop()
    reader = (lambda: getpass.getpass("")) if secret else input
    return await loop.run_in_executor(_executor, reader)


async def spin_animation(x: int, y: int, msg: str):
    idx = 0
    try:
        while True:
            at(x, y, f"{C['c']}{SPINNER_FRAMES[idx % len(SPINNER_FRAMES)]} {msg}", C["r"])
            idx += 1
            await asyncio.sleep(0.1)
    except asyncio.CancelledError:
        at(x, y, " " * (len(msg) + 3), "")


async def with_spinner(x: int, y: int, msg: str, coro):
    spin = asyncio.create_task(spin_animation(x, y, msg))
    try:
        return await coro
    finally:
        spin.cancel()
        try:
            await spin
        except asyncio.CancelledError:
            pass


def draw_box(x: int, y: int, w: int, h: int, title: str = "") -> None:
    print(f"\033[{y};{x}H{C['bg']}{C['w']}┌{'─' * (w - 2)}┐{C['r']}")
    if title:
        print(f"\033[{y};{x}H{C['bg']}{C['w']}┤ {C['B']}{title} {C['w']}├{C['r']}")
    for i in range(1, h - 1):
        print(f"\033[{y + i};{x}H{C['bg']}{C['w']}│{' ' * (w - 2)}│{C['r']}")
    print(f"\033[{y + h - 1};{x}H{C['bg']}{C['w']}└{'─' * (w - 2)}┘{C['r']}")


def open_box(w: int, hb: int, title: str) -> Tuple[int, int]:
    cls()
    cr_w, cr_h = term_size()
    x = max(2, (cr_w - w) // 2)
    y = max(2, (cr_h - hb) // 2)
    draw_box(x, y, w, hb, title)
    return x, y


async def notice(x: int, y: int, text: str, ok: bool = False) -> None:
    at(x, y, text, (C["bgg"] if ok else C["bgr"]) + C["w"])
    await ainput_at(x, y + 2)


def setup_logging(cfg: ClientConfig) -> None:
    """Log to a file so records never draw over the terminal UI."""
    cfg.cache_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(cfg.cache_dir / "client.log")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("pesawallet")
    root.setLevel(logging.INFO)
    root.addHandler(handler)


# ------------------------
# Wiring
# ------------------------
class WalletApp:
    def __init__(self, cfg: ClientConfig):
        self.cfg = cfg
        self.api = ApiClient(cfg.api, timeout=cfg.timeout)
        self.session = SessionStore(FileCache(cfg.cache_dir), self.api)
        self.api.token_provider = lambda: self.session.token
        self.api.on_unauthorized = self.session.handle_unauthorized
        self.dispatcher = PaymentDispatcher(BackendExecutor(self.api), self.session)
        self.history = TransactionHistory(self.api)
        self.session.subscribe(self._on_session)

    def _on_session(self, session) -> None:
        if session is None:
            self.history.clear()

    def new_wizard(self) -> TransferWizard:
        return TransferWizard(self.session, self.dispatcher, RecipientSearch(self.api, debounce=0))

    async def close(self) -> None:
        await self.api.close()


# ------------------------
# UI flows
# ------------------------
async def login_flow(app: WalletApp) -> bool:
    x, y = open_box(70, 16, "login")
    at(x + 2, y + 2, "phone or email: (or [r] to register, [esc] to quit)", C["y"])
    identifier = (await ainput_at(x + 2, y + 3)).strip()
    if not identifier or identifier.lower() == "esc":
        return False
    if identifier.lower() == "r":
        return await register_flow(app)
    at(x + 2, y + 5, "password:", C["y"])
    password = await ainput_at(x + 2, y + 6, secret=True)
    try:
        await with_spinner(x + 2, y + 9, "signing in", app.session.login(identifier, password))
    except AuthenticationError as e:
        await notice(x + 2, y + 11, f"✗ {e.message[:60]}")
        return True
    await notice(x + 2, y + 11, f"✓ welcome {app.session.user.first_name}", ok=True)
    return True


async def register_flow(app: WalletApp) -> bool:
    x, y = open_box(70, 22, "create account")
    fields = {}
    prompts = [
        ("firstName", "first name:"),
        ("lastName", "last name:"),
        ("email", "email:"),
        ("phoneNumber", "phone number:"),
    ]
    for i, (key, label) in enumerate(prompts):
        at(x + 2, y + 2 + i * 2, label, C["y"])
        value = (await ainput_at(x + 20, y + 2 + i * 2)).strip()
        if not value or value.lower() == "esc":
            return True
        fields[key] = value
    at(x + 2, y + 10, "password:", C["y"])
    fields["password"] = await ainput_at(x + 20, y + 10, secret=True)
    try:
        await with_spinner(x + 2, y + 13, "creating account", app.session.register(**fields))
    except AuthenticationError as e:
        await notice(x + 2, y + 15, f"✗ {e.message[:60]}")
        return True
    await notice(x + 2, y + 15, "✓ account created", ok=True)
    return True


async def send_money_flow(app: WalletApp, wizard: Optional[TransferWizard] = None) -> None:
    wizard = wizard or app.new_wizard()
    x, y = open_box(80, 26, "send money")
    while wizard.step is WizardStep.RECIPIENT_SELECTION:
        at(x + 2, y + 2, "recipient name or phone: (or [esc] to cancel)", C["y"])
        query = (await ainput_at(x + 2, y + 3)).strip()
        if not query or query.lower() == "esc":
            wizard.cancel()
            return
        await with_spinner(x + 2, y + 5, "searching", wizard.set_query(query))
        candidates = wizard.state.candidates
        if not candidates:
            at(x + 2, y + 5, "no matching users (need at least 3 characters)", C["R"])
            continue
        for i, r in enumerate(candidates[:8]):
            at(x + 2, y + 5 + i, f"[{i + 1}] {r.display_name:<30} {r.phone_number}", C["w"])
        at(x + 2, y + 14, "choose number:", C["y"])
        choice = (await ainput_at(x + 17, y + 14)).strip()
        if choice.isdigit() and 1 <= int(choice) <= min(len(candidates), 8):
            wizard.select(candidates[int(choice) - 1])
        x, y = open_box(80, 26, "send money")

    while wizard.step is WizardStep.AMOUNT_ENTRY:
        wallet = app.session.wallet
        at(x + 2, y + 2, f"to: {wizard.draft.recipient.display_name} ({wizard.draft.recipient.phone_number})", C["c"])
        at(x + 2, y + 3, f"available: {format_money(wallet.balance_minor if wallet else 0)}", C["g"])
        if wizard.state.error:
            at(x + 2, y + 12, wizard.state.error, C["R"])
        at(x + 2, y + 5, "amount: (or [esc] to cancel)", C["y"])
        a_in = (await ainput_at(x + 2, y + 6)).strip()
        if not a_in or a_in.lower() == "esc":
            wizard.cancel()
            return
        amount = parse_amount(a_in)
        at(x + 2, y + 8, "description (optional, enter to skip):", C["y"])
        note = (await ainput_at(x + 2, y + 9)).strip()
        wizard.enter_amount(amount if amount is not None else 0, note)
        x, y = open_box(80, 26, "send money")

    while wizard.step in (WizardStep.CONFIRMATION, WizardStep.PIN_AUTHENTICATION):
        recap = wizard.recap()
        if wizard.state.error:
            at(x + 2, y + 11, f"✗ {wizard.state.error[:70]}", C["R"])
        if wizard.step is WizardStep.CONFIRMATION:
            for i, (label, key) in enumerate([("recipient", "recipient"), ("phone", "phone_number"), ("amount", "amount"),
                                              ("fee", "fee"), ("total", "total")]):
                at(x + 2, y + 2 + i, f"{label:<10} {recap[key]}", C["w"])
            at(x + 2, y + 9, "confirm? [y/n]:", C["B"] + C["y"])
            if (await ainput_at(x + 18, y + 9)).strip().lower() != "y":
                wizard.cancel()
                return
            wizard.acknowledge()
        if len(wizard.draft.pin_digits) < 4:
            at(x + 2, y + 13, "enter your 4-digit PIN:", C["y"])
            for ch in await ainput_at(x + 26, y + 13, secret=True):
                if ch == "\b":
                    wizard.backspace()
                else:
                    wizard.press_digit(ch)
        await with_spinner(x + 2, y + 16, "sending money", wizard.submit())
        if wizard.step is WizardStep.PIN_AUTHENTICATION:
            x, y = open_box(80, 26, "send money")

    if wizard.step is WizardStep.COMPLETED:
        result = wizard.draft.result
        app.history.track(result)
        app.history.invalidate()
        text = "✓ money sent successfully!" if result.status is TransferStatus.COMPLETED else "✓ transfer submitted, pending"
        await notice(x + 2, y + 20, text, ok=True)
    elif wizard.step is WizardStep.AMOUNT_ENTRY:
        await notice(x + 2, y + 20, f"✗ {wizard.state.error[:60]}")
    elif wizard.step is WizardStep.CANCELLED and wizard.state.error:
        await notice(x + 2, y + 20, f"✗ {wizard.state.error[:60]} - please log in again")


async def scan_code_flow(app: WalletApp) -> None:
    x, y = open_box(80, 22, "scan code")
    at(x + 2, y + 2, "paste the scanned code:", C["y"])
    raw = (await ainput_at(x + 2, y + 3)).strip()
    if not raw:
        return
    payload = decode(raw)
    if isinstance(payload, DecodeError):
        await notice(x + 2, y + 6, "✗ this code is not supported by PesaSoft")
        return
    if isinstance(payload, ReceiveIntent):
        wizard = app.new_wizard()
        wizard.use_receive_intent(payload)
        await send_money_flow(app, wizard)
        return
    if isinstance(payload, PaymentIntent):
        await merchant_payment_flow(app, payload, x, y)


async def merchant_payment_flow(app: WalletApp, intent: PaymentIntent, x: int, y: int) -> None:
    suggested = f"KES {intent.amount}" if intent.amount is not None else "amount"
    at(x + 2, y + 5, f"pay {suggested} to {intent.merchant_name}?", C["B"])
    at(x + 2, y + 7, "amount (enter to accept):", C["y"])
    a_in = (await ainput_at(x + 28, y + 7)).strip()
    amount = parse_amount(a_in) if a_in else None
    if a_in and amount is None:
        await notice(x + 2, y + 12, "✗ invalid amount")
        return
    at(x + 2, y + 9, "PIN:", C["y"])
    pin = await ainput_at(x + 8, y + 9, secret=True)
    outcome = await with_spinner(x + 2, y + 11, "paying", app.dispatcher.dispatch_code(intent, pin.strip(), amount))
    if outcome.ok:
        app.history.track(outcome.result)
        app.history.invalidate()
        await app.session.refresh()
        await notice(x + 2, y + 14, f"✓ paid {intent.merchant_name}", ok=True)
    else:
        await notice(x + 2, y + 14, f"✗ {outcome.failure.reason[:60]}")


async def receive_code_flow(app: WalletApp) -> None:
    x, y = open_box(80, 14, "receive money")
    user = app.session.user
    at(x + 2, y + 2, f"{user.name} - {user.phone_number}", C["B"])
    try:
        code = encode(receive_intent_for(user))
    except ValueError:
        await notice(x + 2, y + 6, "✗ add a phone number to your profile to receive money")
        return
    at(x + 2, y + 4, "share this code to get paid:", C["y"])
    at(x + 2, y + 6, code[:76], C["g"])
    await ainput_at(x + 2, y + 11)


async def top_up_flow(app: WalletApp) -> None:
    x, y = open_box(70, 18, "top up")
    at(x + 2, y + 2, "amount (KES 10 - 150,000):", C["y"])
    amount = parse_amount(await ainput_at(x + 30, y + 2))
    if amount is None:
        await notice(x + 2, y + 12, "✗ please enter a valid amount")
        return
    phone = app.session.user.phone_number
    at(x + 2, y + 4, f"M-Pesa number [{phone}]:", C["y"])
    phone = (await ainput_at(x + 30, y + 4)).strip() or phone
    outcome = await with_spinner(x + 2, y + 8, "requesting M-Pesa prompt", app.dispatcher.top_up(amount, phone))
    if outcome.ok:
        app.history.track(outcome.result)
        await notice(x + 2, y + 12, "✓ check your phone for the M-Pesa prompt", ok=True)
    else:
        await notice(x + 2, y + 12, f"✗ {outcome.failure.reason[:60]}")


def draw_history(x: int, y: int, w: int, h: int, app: WalletApp) -> None:
    draw_box(x, y, w, h, "recent transactions")
    if not app.history.records:
        at(x + 2, y + 2, "no transactions yet", C["y"])
        return
    currency = app.session.wallet.currency if app.session.wallet else "KES"
    for i, tx in enumerate(app.history.records[: h - 3]):
        when = tx.created_at.strftime("%d %b %H:%M") if tx.created_at else "--"
        sign, cl = ("-", C["R"]) if tx.is_outgoing else ("+", C["g"])
        amount = f"{sign}{currency} {tx.amount:,.2f}"
        color = C["y"] if tx.status is TransferStatus.PENDING else cl
        line = f"{when:<13} {tx.kind:<9} {amount:>16}  {tx.counterparty[:18]:<18} {tx.status.value}"
        at(x + 2, y + 2 + i, line[: w - 4], color)


async def main_loop(app: WalletApp):
    stop_flag = threading.Event()

    def handle_sig(signum, frame):
        stop_flag.set()

    signal.signal(signal.SIGINT, handle_sig)
    signal.signal(signal.SIGTERM, handle_sig)

    while not stop_flag.is_set():
        if not app.session.is_authenticated:
            if not await login_flow(app):
                break
            continue
        if await app.history.follow_up():
            await app.session.refresh()
        await app.history.update()
        cls()
        cr_w, cr_h = term_size()
        header = f" pesasoft wallet v0.1.0 │ {datetime.now().strftime('%H:%M:%S')} "
        at((cr_w - len(header)) // 2, 1, header, C["B"] + C["w"])
        draw_box(2, 3, 28, 12, "commands")
        for i, label in enumerate(["[1] send money", "[2] refresh", "[3] scan code", "[4] receive",
                                   "[5] top up", "[6] logout", "[0] exit"]):
            at(4, 5 + i, label, C["w"])
        summary = session_summary(app.session)
        draw_box(32, 3, cr_w - 34, 8, "wallet")
        at(34, 5, f"user:    {summary['user']} ({summary['phone']})", C["c"])
        balance = f"{summary['currency']} {summary['balance']}" if summary["balance"] is not None else "---"
        at(34, 6, f"balance: {balance}", C["g"])
        if app.history.pending:
            at(34, 8, f"pending: {len(app.history.pending)} awaiting confirmation", C["y"])
        draw_history(32, 12, cr_w - 34, max(6, cr_h - 16), app)
        at(2, cr_h - 2, "command: ", C["B"] + C["y"])
        cmd = (await ainput_at(12, cr_h - 2) or "").strip()
        if cmd == "1":
            await send_money_flow(app)
        elif cmd == "2":
            await app.session.refresh()
            await app.history.update(force=True)
        elif cmd == "3":
            await scan_code_flow(app)
        elif cmd == "4":
            await receive_code_flow(app)
        elif cmd == "5":
            await top_up_flow(app)
        elif cmd == "6":
            await app.session.logout()
        elif cmd in ["0", "q", ""]:
            break


# ------------------------
# Entrypoint
# ------------------------
async def run() -> None:
    cfg = ClientConfig.load_from_file(CONFIG_LOCATIONS)
    setup_logging(cfg)
    if cfg.is_insecure:
        print(f"{C['R']}⚠️  WARNING: Using insecure HTTP connection to {cfg.api}!{C['r']}")
        await asyncio.sleep(2)
    app = WalletApp(cfg)
    logger.info("starting wallet client against %s", cfg.api)
    try:
        await app.session.load()
        await app.session.refresh()
        await main_loop(app)
    finally:
        await app.close()
        _executor.shutdown(wait=False)


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    finally:
        print(C["r"])
    sys.exit(0)


if __name__ == "__main__":
    main()
