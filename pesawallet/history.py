"""
Transaction history and follow-up of pending transfers.

`update()` refetches the recent transactions at most once per `max_age`
seconds unless forced. Results the dispatcher reported as PENDING are
`track()`ed and re-checked by `follow_up()` until the backend gives a
definite answer.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from pesawallet.api import ApiClient, error_message, is_success, unwrap
from pesawallet.config import HISTORY_MAX_AGE, RECENT_HISTORY
from pesawallet.models import TransactionRecord, TransferResult, TransferStatus, status_from_backend

logger = logging.getLogger(__name__)


class TransactionHistory:
    def __init__(self, api: ApiClient, max_age: float = HISTORY_MAX_AGE, clock: Callable[[], float] = time.monotonic):
        self.api = api
        self.max_age = max_age
        self.records: List[TransactionRecord] = []
        self.pending: List[TransferResult] = []
        self._clock = clock
        self._last_update: Optional[float] = None

    async def update(self, limit: int = RECENT_HISTORY, force: bool = False) -> bool:
        """Refetch the newest `limit` transactions. False when the fetch failed; old records are kept."""
        now = self._clock()
        if not force and self._last_update is not None and now - self._last_update < self.max_age:
            return True
        s, t, j = await self.api.get_transactions(limit=limit)
        if not is_success(s, j):
            logger.warning("history fetch failed: %s", error_message(s, t, j))
            return False
        body = unwrap(j)
        rows = body.get("transactions", []) if isinstance(body, dict) else body
        records = []
        for row in rows if isinstance(rows, list) else []:
            if not isinstance(row, dict):
                continue
            try:
                records.append(TransactionRecord.from_dict(row))
            except ValueError as e:
                logger.debug("skipping malformed transaction: %s", e)
        self.records = records[:limit]
        self._last_update = now
        return True

    def invalidate(self) -> None:
        """Make the next `update()` hit the backend."""
        self._last_update = None

    def clear(self) -> None:
        self.records.clear()
        self.pending.clear()
        self._last_update = None

    # ------------------------
    # Pending follow-up
    # ------------------------
    def track(self, result: Optional[TransferResult]) -> None:
        if result is not None and result.status is TransferStatus.PENDING and result.transaction_id:
            self.pending.append(result)

    async def check_status(self, result: TransferResult) -> TransferResult:
        """Ask again about a PENDING result. Anything short of a definite answer leaves it PENDING."""
        if result.status is not TransferStatus.PENDING or not result.transaction_id:
            return result
        s, t, j = await self.api.get_transaction_status(result.transaction_id)
        if not is_success(s, j):
            logger.info("status check for %s failed: %s", result.transaction_id, error_message(s, t, j))
            return result
        body = unwrap(j)
        tx = body.get("transaction") if isinstance(body, dict) and isinstance(body.get("transaction"), dict) else body
        if not isinstance(tx, dict) or not tx.get("status"):
            return result
        reason = tx.get("resultDesc") or tx.get("message") or (body.get("message") if isinstance(body, dict) else "")
        return TransferResult(status_from_backend(tx["status"]), reason=str(reason or ""), transaction_id=result.transaction_id)

    async def follow_up(self) -> List[TransferResult]:
        """Re-check every tracked result; returns the ones that are now settled."""
        tracked = list(self.pending)
        settled = []
        for result in tracked:
            fresh = await self.check_status(result)
            if fresh.status is not TransferStatus.PENDING:
                logger.info("transaction %s settled: %s", fresh.transaction_id, fresh.status.value)
                settled.append(fresh)
        # the list may have been cleared or extended while we were waiting
        done = {r.transaction_id for r in settled}
        self.pending = [r for r in self.pending if r.transaction_id not in done]
        if settled:
            self.invalidate()
        return settled
