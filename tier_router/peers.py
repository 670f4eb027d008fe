"""
Peer registry for cl-fee-tiers

Keeps a profile for every peer that has connected to us (first seen, last
connect, last disconnect) and an append-only log of what happened to it:

    CREATED           first time we saw the peer
    CONNECTED         peer connected
    DISCONNECTED      peer disconnected
    ROUTING_FEE_TIER  fee tier assigned or changed (meta: the band)
    CHANNEL_REJECT    an inbound channel open was refused (meta: reason)
"""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .fee_tier import FeeTierBand, STARTING_TIER

if TYPE_CHECKING:
    from .database import Database


class PeerEvent:
    CREATED = "CREATED"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ROUTING_FEE_TIER = "ROUTING_FEE_TIER"
    CHANNEL_REJECT = "CHANNEL_REJECT"


class PeerRegistry:
    """Peer profiles and the peer log, persisted through the Database."""

    def __init__(self, database: 'Database', plugin=None):
        self.database = database
        self.plugin = plugin

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def peer_connected(self, node_id: str) -> bool:
        """
        Record a connection.

        Returns:
            True if this created a new profile
        """
        with self.database.transaction():
            created = self.database.insert_peer(node_id)
            if created:
                self.database.add_peer_log(node_id, [
                    {"name": PeerEvent.CREATED},
                    {"name": PeerEvent.ROUTING_FEE_TIER, "meta": {"tier": STARTING_TIER.to_dict()}},
                    {"name": PeerEvent.CONNECTED},
                ])
            else:
                self.database.update_peer_connect(node_id)
                self.database.add_peer_log(node_id, [{"name": PeerEvent.CONNECTED}])

        if created:
            self._log(f"New peer profile: {node_id[:12]}...", level='debug')
        return created

    def peer_disconnected(self, node_id: str) -> None:
        with self.database.transaction():
            self.database.update_peer_disconnect(node_id)
            self.database.add_peer_log(node_id, [{"name": PeerEvent.DISCONNECTED}])

    def channel_rejected(self, node_id: str, reason: Optional[str]) -> None:
        self.database.add_peer_log(node_id, [
            {"name": PeerEvent.CHANNEL_REJECT, "meta": {"reason": reason}}
        ])

    def tier_changed(self, node_id: str, band: FeeTierBand) -> None:
        self.database.add_peer_log(node_id, [
            {"name": PeerEvent.ROUTING_FEE_TIER, "meta": {"tier": band.to_dict()}}
        ])

    def get_peer(self, node_id: str) -> Optional[Dict[str, Any]]:
        return self.database.get_peer(node_id)

    def get_peer_log(self, node_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        return self.database.get_peer_log(node_id, limit)
