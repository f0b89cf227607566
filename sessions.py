import time
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from config import DEFAULT_TRADE_SETTINGS


@dataclass
class TradeSession:
    """Per-user state carried between a command and its confirmation button."""
    user_id: str
    public_key: str
    private_key: str
    mint: Optional[str] = None
    amount: Optional[float] = None
    slippage_bps: int = DEFAULT_TRADE_SETTINGS["slippage_bps"]
    priority_fee: int = DEFAULT_TRADE_SETTINGS["priority_fee"]
    use_jito: bool = DEFAULT_TRADE_SETTINGS["use_jito"]
    pending_withdraw: Optional[str] = None
    last_seen: float = field(default_factory=time.monotonic)

    def apply_settings(self, settings: Dict):
        self.slippage_bps = int(settings.get("slippage_bps", self.slippage_bps))
        self.priority_fee = int(settings.get("priority_fee", self.priority_fee))
        self.use_jito = bool(settings.get("use_jito", self.use_jito))


class SessionManager:
    """Owns TradeSession objects and drops them after `ttl` seconds of inactivity."""

    def __init__(self, ttl: float = 900.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._sessions: Dict[str, TradeSession] = {}

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, user_id) -> bool:
        return self.get(user_id) is not None

    def evict_expired(self) -> int:
        now = self.clock()
        expired = [uid for uid, s in self._sessions.items() if now - s.last_seen > self.ttl]
        for uid in expired:
            del self._sessions[uid]
        if expired:
            logging.info(f"Evicted {len(expired)} idle sessions")
        return len(expired)

    def get(self, user_id) -> Optional[TradeSession]:
        self.evict_expired()
        session = self._sessions.get(str(user_id))
        if session is not None:
            session.last_seen = self.clock()
        return session

    def get_or_create(self, user_id, factory: Callable[[], TradeSession]) -> TradeSession:
        session = self.get(user_id)
        if session is None:
            session = factory()
            session.last_seen = self.clock()
            self._sessions[str(user_id)] = session
        return session

    def drop(self, user_id):
        self._sessions.pop(str(user_id), None)
