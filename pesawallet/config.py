"""Constants and the on-disk client configuration."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from pesawallet.errors import ConfigError

logger = logging.getLogger(__name__)

# ------------------------
# Config / Constants
# ------------------------
DEFAULT_API = "http://localhost:3000/api"
DEFAULT_CURRENCY = "KES"
DEFAULT_TIMEOUT = 10
HOME_DIR = Path.home() / ".pesawallet"
CONFIG_LOCATIONS = [HOME_DIR / "config.json", Path("pesawallet.json")]

# persisted session keys
TOKEN_KEY = "authToken"
USER_KEY = "userData"
WALLET_KEY = "walletData"
SESSION_KEYS = (TOKEN_KEY, USER_KEY, WALLET_KEY)

PIN_LENGTH = 4
MIN_SEARCH_LENGTH = 3
SEARCH_DEBOUNCE = 0.3

# top-up limits in minor units (KES 10 - KES 150,000)
MIN_TOPUP_MINOR = 10 * 100
MAX_TOPUP_MINOR = 150_000 * 100

# largest amount any code or request may carry (KES 1 billion)
MAX_AMOUNT_MINOR = 1_000_000_000 * 100

RECENT_HISTORY = 5
HISTORY_MAX_AGE = 60


@dataclass
class ClientConfig:
    api: str = DEFAULT_API
    cache_dir: Path = field(default_factory=lambda: HOME_DIR)
    timeout: int = DEFAULT_TIMEOUT
    search_debounce: float = SEARCH_DEBOUNCE
    currency: str = DEFAULT_CURRENCY
    source: Optional[Path] = None

    @property
    def is_insecure(self) -> bool:
        """Plain HTTP to anything but a local backend."""
        return not self.api.startswith("https://") and "localhost" not in self.api and "127.0.0.1" not in self.api

    @classmethod
    def from_dict(cls, d: dict, source: Optional[Path] = None) -> "ClientConfig":
        try:
            return cls(
                api=str(d.get("api", DEFAULT_API)).rstrip("/"),
                cache_dir=Path(d["cache_dir"]).expanduser() if d.get("cache_dir") else HOME_DIR,
                timeout=int(d.get("timeout", DEFAULT_TIMEOUT)),
                search_debounce=float(d.get("search_debounce", SEARCH_DEBOUNCE)),
                currency=str(d.get("currency", DEFAULT_CURRENCY)),
                source=source,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid config in {source or '<dict>'}: {e}") from e

    @classmethod
    def load_from_file(cls, paths: List[Path]) -> "ClientConfig":
        """Use the first readable config file, or defaults when there is none."""
        for p in paths:
            if not p.exists():
                continue
            try:
                with p.open("r") as f:
                    d = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("skipping unreadable config %s: %s", p, e)
                continue
            if not isinstance(d, dict):
                logger.warning("skipping config %s: expected a JSON object", p)
                continue
            return cls.from_dict(d, source=p)
        return cls()
