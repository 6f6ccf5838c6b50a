"""The authenticated session: who is logged in, cached across restarts."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pesawallet.api import ApiClient, Response, error_message, is_success, unwrap
from pesawallet.cache import PersistentCache
from pesawallet.config import SESSION_KEYS, TOKEN_KEY, USER_KEY, WALLET_KEY
from pesawallet.errors import AuthenticationError, SessionNotLoadedError
from pesawallet.models import Session, UserProfile, WalletSnapshot

logger = logging.getLogger(__name__)

Listener = Callable[[Optional[Session]], None]


class SessionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


def _parse_session(body: Any, token: Optional[str] = None) -> Session:
    """Session from a login/register/profile body. Raises ValueError when malformed."""
    if not isinstance(body, dict) or not isinstance(body.get("user"), dict):
        raise ValueError("response has no user")
    token = token if token is not None else body.get("token")
    if not token or not isinstance(token, str):
        raise ValueError("response has no token")
    wallet = body.get("wallet")
    return Session(
        user=UserProfile.from_dict(body["user"]),
        token=token,
        wallet=WalletSnapshot.from_dict(wallet) if isinstance(wallet, dict) else None,
    )


class SessionStore:
    """
    Single owner of the session. Construct one per process and pass it to
    consumers; they read through the accessors and `subscribe` for changes.

    `api` may be None for a store that only reads the cache.
    """

    def __init__(self, cache: PersistentCache, api: Optional[ApiClient] = None):
        self.cache = cache
        self.api = api
        self.state = SessionState.UNINITIALIZED
        self._session: Optional[Session] = None
        self._loaded = asyncio.Event()
        self._listeners: List[Listener] = []
        self._refresh_seq = 0
        self._applied_seq = 0

    # ------------------------
    # Read side
    # ------------------------
    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def user(self) -> Optional[UserProfile]:
        return self._session.user if self._session else None

    @property
    def wallet(self) -> Optional[WalletSnapshot]:
        return self._session.wallet if self._session else None

    @property
    def token(self) -> Optional[str]:
        return self._session.token if self._session else None

    @property
    def is_loaded(self) -> bool:
        return self._loaded.is_set()

    @property
    def is_authenticated(self) -> bool:
        if not self.is_loaded:
            raise SessionNotLoadedError("session is still loading")
        return self.state is SessionState.AUTHENTICATED

    async def wait_loaded(self) -> None:
        await self._loaded.wait()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, session: Optional[Session]) -> None:
        self._session = session
        self.state = SessionState.AUTHENTICATED if session else SessionState.ANONYMOUS
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("session listener %r failed", listener)

    # ------------------------
    # Lifecycle
    # ------------------------
    async def load(self) -> SessionState:
        """Restore the cached session. Any failure ends ANONYMOUS, never hangs."""
        if self.state is not SessionState.UNINITIALIZED:
            await self._loaded.wait()
            return self.state
        self.state = SessionState.LOADING
        session = None
        try:
            token = await self.cache.get(TOKEN_KEY)
            user_raw = await self.cache.get(USER_KEY)
            if token and user_raw:
                user = UserProfile.from_dict(json.loads(user_raw))
                wallet_raw = await self.cache.get(WALLET_KEY)
                wallet = WalletSnapshot.from_dict(json.loads(wallet_raw)) if wallet_raw else None
                session = Session(user=user, token=token.decode(), wallet=wallet)
        except Exception as e:
            logger.error("error loading stored auth: %s", e)
            session = None
        self._set(session)
        self._loaded.set()
        logger.info("session loaded: %s", self.state.value)
        return self.state

    async def _persist(self, session: Session, include_token: bool = True) -> None:
        if include_token:
            await self.cache.set(TOKEN_KEY, session.token.encode())
        await self.cache.set(USER_KEY, json.dumps(session.user.to_dict()).encode())
        if session.wallet is not None:
            await self.cache.set(WALLET_KEY, json.dumps(session.wallet.to_dict()).encode())
        else:
            await self.cache.remove(WALLET_KEY)

    async def _authenticate(self, action: str, call: Callable[[ApiClient], Awaitable[Response]]) -> Session:
        if self.api is None:
            raise AuthenticationError(f"{action} needs a backend connection")
        s, t, j = await call(self.api)
        if not is_success(s, j):
            raise AuthenticationError(error_message(s, t, j, f"{action} failed"), s)
        try:
            session = _parse_session(unwrap(j))
        except ValueError as e:
            logger.error("%s response malformed: %s", action, e)
            raise AuthenticationError(f"{action} failed: unexpected response", s) from e
        try:
            await self._persist(session)
        except Exception:
            # the previous session stays current; put its keys back
            await self._clear_cache()
            if self._session is not None:
                await self._persist(self._session)
            raise
        self._refresh_seq += 1
        self._applied_seq = self._refresh_seq
        self._set(session)
        self._loaded.set()
        logger.info("%s succeeded for user %s", action, session.user.id)
        return session

    async def login(self, identifier: str, password: str) -> Session:
        return await self._authenticate("login", lambda api: api.login(identifier, password))

    async def register(self, **profile_fields: Any) -> Session:
        return await self._authenticate("registration", lambda api: api.register(profile_fields))

    async def _clear_cache(self) -> None:
        try:
            await self.cache.multi_remove(SESSION_KEYS)
        except Exception as e:
            logger.error("failed to clear cached session: %s", e)

    async def logout(self, revoke: bool = True) -> None:
        """Local clearing is unconditional; the remote revoke is best effort."""
        token = self.token
        self._refresh_seq += 1
        self._applied_seq = self._refresh_seq
        self._set(None)
        self._loaded.set()
        await self._clear_cache()
        logger.info("logged out")
        if revoke and token and self.api is not None:
            s, t, j = await self.api.revoke(token)
            if not is_success(s, j):
                logger.debug("token revoke not confirmed: %s", error_message(s, t, j))

    async def handle_unauthorized(self) -> None:
        """401 hook for the transport: drop the stale token without calling the backend."""
        if self._session is None:
            return
        logger.warning("backend rejected the session token, logging out")
        await self.logout(revoke=False)

    async def refresh(self) -> None:
        """Re-fetch profile and wallet. Failures are logged, never raised."""
        if not self.token or self.api is None:
            return
        token = self.token
        self._refresh_seq += 1
        seq = self._refresh_seq
        try:
            s, t, j = await self.api.get_profile()
            if not is_success(s, j):
                logger.warning("refresh profile failed: %s", error_message(s, t, j))
                return
            fresh = _parse_session(unwrap(j), token=token)
        except ValueError as e:
            logger.error("refresh profile error: %s", e)
            return
        if self.token != token or seq < self._applied_seq:
            logger.debug("dropping stale profile refresh #%d", seq)
            return
        self._applied_seq = seq
        self._set(fresh)
        try:
            await self._persist(fresh, include_token=False)
        except Exception as e:
            logger.error("failed to cache refreshed profile: %s", e)


def session_summary(store: SessionStore) -> Dict[str, Any]:
    """Non-secret view of the session for display."""
    user, wallet = store.user, store.wallet
    return {
        "state": store.state.value,
        "user": user.name if user else None,
        "phone": user.phone_number if user else None,
        "balance": str(wallet.balance) if wallet else None,
        "currency": wallet.currency if wallet else None,
    }
