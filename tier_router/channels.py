"""
Channel Directory for cl-fee-tiers

Keeps the current set of open channels and two indexes built from it:
- channel id -> Channel
- peer public key -> channels with that peer

The node always returns the full channel set, so every refresh builds a new
immutable snapshot and swaps it in with a single assignment. Readers grab
the current snapshot once and never observe a half-built index.

Channels that disappeared since the last refresh (closed) are still
resolvable through the node's closed-channel lookup, which historical
forward events need.
"""

import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, TYPE_CHECKING

from .errors import UnknownChannelError

if TYPE_CHECKING:
    from .interfaces import ChannelSource


@dataclass(frozen=True)
class Channel:
    """
    One open channel as seen from our node.

    Attributes:
        id: Channel identifier used by forwards (short channel id when known)
        partner_public_key: Remote node id
        capacity: Channel capacity in sats
        local_balance: Our side of the channel in sats
        transaction_id: Funding transaction id
        transaction_vout: Funding output index
        sent: Sats sent over the channel's lifetime
        received: Sats received over the channel's lifetime
        past_state_count: Number of commitment updates
        short_channel_id: Identifier `setchannel` accepts
    """
    id: str
    partner_public_key: str
    capacity: int = 0
    local_balance: int = 0
    transaction_id: str = ''
    transaction_vout: int = 0
    sent: int = 0
    received: int = 0
    past_state_count: int = 0
    short_channel_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "partner_public_key": self.partner_public_key,
            "capacity": self.capacity,
            "local_balance": self.local_balance,
            "transaction_id": self.transaction_id,
            "transaction_vout": self.transaction_vout,
            "sent": self.sent,
            "received": self.received,
            "past_state_count": self.past_state_count,
            "short_channel_id": self.short_channel_id,
        }


@dataclass(frozen=True)
class ChannelSnapshot:
    """Immutable view of the channel set at one refresh."""
    channels: Mapping[str, Channel]
    by_peer: Mapping[str, Tuple[Channel, ...]]
    refreshed_at: float

    @classmethod
    def build(cls, channels: List[Channel]) -> 'ChannelSnapshot':
        by_id: Dict[str, Channel] = {}
        by_peer: Dict[str, List[Channel]] = {}
        for ch in channels:
            by_id[ch.id] = ch
            by_peer.setdefault(ch.partner_public_key, []).append(ch)
        return cls(
            channels=MappingProxyType(by_id),
            by_peer=MappingProxyType({k: tuple(v) for k, v in by_peer.items()}),
            refreshed_at=time.time(),
        )

    @classmethod
    def empty(cls) -> 'ChannelSnapshot':
        return cls(MappingProxyType({}), MappingProxyType({}), 0.0)


class ChannelDirectory:
    """
    Live channel index, refreshed from the node on a fixed interval.

    Thread Safety:
        refresh() is guarded by a non-blocking lock: if a refresh is already
        in flight the new call returns False immediately. Lookups read the
        current snapshot reference and never block.
    """

    def __init__(self, source: 'ChannelSource', plugin=None):
        """
        Args:
            source: ChannelSource collaborator (the node)
            plugin: Reference to the pyln Plugin for logging
        """
        self.source = source
        self.plugin = plugin
        self._snapshot = ChannelSnapshot.empty()
        self._refresh_lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        # Closed channels never reopen, so their peer can be cached forever
        self._closed_cache: Dict[str, str] = {}
        self._closed_lock = threading.Lock()
        self.refresh_count = 0

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def on_update(self, callback: Callable[[], None]) -> None:
        """Register a listener called after every successful refresh."""
        self._listeners.append(callback)

    @property
    def snapshot(self) -> ChannelSnapshot:
        return self._snapshot

    @property
    def last_refresh(self) -> float:
        return self._snapshot.refreshed_at

    @property
    def channel_count(self) -> int:
        return len(self._snapshot.channels)

    def is_refreshing(self) -> bool:
        return self._refresh_lock.locked()

    def refresh(self) -> bool:
        """
        Fetch the full channel list and swap in a freshly built snapshot.

        Returns:
            True if a new snapshot was installed, False if another refresh
            was already in flight.

        Raises:
            Whatever the ChannelSource raises; the previous snapshot is kept.
        """
        if not self._refresh_lock.acquire(blocking=False):
            self._log("Channel refresh already in flight, skipping", level='debug')
            return False
        try:
            channels = self.source.list_channels() or []
            self._snapshot = ChannelSnapshot.build(channels)
            self.refresh_count += 1
        finally:
            self._refresh_lock.release()

        self._notify()
        return True

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                self._log(f"Channel update listener failed: {e}", level='error')

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        return self._snapshot.channels.get(channel_id)

    def resolve_peer_of_channel(self, channel_id: str) -> str:
        """
        Resolve a channel id to the remote peer's public key.

        Checks the live index first, then falls back to the node's
        closed-channel lookup.

        Raises:
            UnknownChannelError: if neither source knows the channel
            RpcError: if the closed-channel lookup itself failed
        """
        chan = self._snapshot.channels.get(channel_id)
        if chan:
            return chan.partner_public_key

        with self._closed_lock:
            cached = self._closed_cache.get(channel_id)
        if cached:
            return cached

        peer_id = self.source.get_node_of_closed_channel(channel_id)
        if not peer_id:
            raise UnknownChannelError(channel_id)

        with self._closed_lock:
            self._closed_cache[channel_id] = peer_id
        return peer_id

    def channels_of_peer(self, peer_id: str) -> List[Channel]:
        return list(self._snapshot.by_peer.get(peer_id, ()))

    def all_peers(self) -> Set[str]:
        return set(self._snapshot.by_peer.keys())

    def get_node_channel_info(self, channel_ids: List[str]) -> Dict[str, List[Channel]]:
        """Given channel ids, return their peers mapped to all of the peer's channels."""
        snap = self._snapshot
        info: Dict[str, List[Channel]] = {}
        for channel_id in channel_ids:
            chan = snap.channels.get(channel_id)
            if not chan or chan.partner_public_key in info:
                continue
            info[chan.partner_public_key] = list(snap.by_peer.get(chan.partner_public_key, ()))
        return info
