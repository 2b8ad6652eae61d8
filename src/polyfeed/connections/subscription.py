import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from polyfeed.config.enumerations import ChannelKind, SubscriptionState
from polyfeed.messaging.models.messages import SubscriptionKey

logger = logging.getLogger(__name__)


def make_key(channel: Union[ChannelKind, str], symbol: str) -> SubscriptionKey:
    """Build a key from a channel (enum or wire prefix) and a symbol."""
    if not isinstance(channel, ChannelKind):
        channel = ChannelKind.from_prefix(channel)
    symbol = symbol.strip()
    if not symbol:
        raise ValueError("Symbol must be a non-empty string")
    return SubscriptionKey(channel, symbol)


@dataclass
class SubscriptionEntry:
    """Track the lifecycle of one subscription."""

    key: SubscriptionKey
    state: SubscriptionState = SubscriptionState.DESIRED
    subscribed_at: Optional[datetime] = None
    requested_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class SubscriptionRegistry:
    """Authoritative set of subscriptions the application wants.

    The application adds and removes entries; the stream session and router
    advance their state. Entries are removed only by :meth:`unsubscribe`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[SubscriptionKey, SubscriptionEntry] = {}

    def subscribe(self, channel: Union[ChannelKind, str], symbol: str) -> bool:
        key = make_key(channel, symbol)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = SubscriptionEntry(
                    key=key, subscribed_at=datetime.now(timezone.utc)
                )
                logger.debug("Registered subscription %s", key)
                return True

            if entry.state is SubscriptionState.FAILED:
                entry.state = SubscriptionState.DESIRED
                entry.failure_reason = None
                logger.debug("Retrying failed subscription %s", key)
                return True

            return False

    def unsubscribe(self, channel: Union[ChannelKind, str], symbol: str) -> bool:
        key = make_key(channel, symbol)
        with self._lock:
            if self._entries.pop(key, None) is None:
                return False
        logger.debug("Removed subscription %s", key)
        return True

    def desired_set(self) -> frozenset[SubscriptionKey]:
        with self._lock:
            return frozenset(self._entries)

    def mark_requested(self, keys: Iterable[SubscriptionKey]) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                entry.state = SubscriptionState.REQUESTED
                entry.requested_at = now
                entry.failure_reason = None

    def mark_confirmed(self, key: SubscriptionKey) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.state = SubscriptionState.CONFIRMED
            entry.confirmed_at = datetime.now(timezone.utc)
            return True

    def mark_failed(self, key: SubscriptionKey, reason: str = "") -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.state = SubscriptionState.FAILED
            entry.failure_reason = reason
            return True

    def connection_lost(self) -> None:
        """Confirmations belong to a connection; demote them for replay."""
        with self._lock:
            for entry in self._entries.values():
                if entry.state is SubscriptionState.CONFIRMED:
                    entry.state = SubscriptionState.REQUESTED

    def settled(self, keys: Iterable[SubscriptionKey]) -> bool:
        with self._lock:
            for key in keys:
                entry = self._entries.get(key)
                if entry is None:
                    continue
                if entry.state not in (SubscriptionState.CONFIRMED, SubscriptionState.FAILED):
                    return False
            return True

    def state(
        self, channel: Union[ChannelKind, str], symbol: str
    ) -> Optional[SubscriptionState]:
        key = make_key(channel, symbol)
        with self._lock:
            entry = self._entries.get(key)
            return entry.state if entry else None

    def entries(self) -> list[SubscriptionEntry]:
        """Copies of every entry, in wire order."""
        with self._lock:
            snapshot = [
                SubscriptionEntry(**vars(entry)) for entry in self._entries.values()
            ]
        return sorted(snapshot, key=lambda entry: entry.key.sort_key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries
