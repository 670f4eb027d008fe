"""
cl-fee-tiers tier_router package

This package contains the core modules for the fee tier plugin:
- fee_tier: Volume bands, classification and percent/ppm conversion
- channels: Channel Directory (live channel index, closed-channel lookup)
- forward_events: Deduplicated forward-event store
- peer_groups: Peer group aggregates with per-group locking
- tier_manager: Sync cycle, tier classification and fee propagation
- peers: Peer profiles and peer log
- channel_acceptor: Whitelist + AML admission for channel opens
- node_api: pyln-backed node adapter
- rates: Historical BTC/USD price source
- notifier: Log + Slack alerts
- config: Configuration and constants
- database: SQLite storage layer
"""

from .fee_tier import FeeTierBand, FEE_TIERS, classify, percent_to_ppm, ppm_to_percent
from .channels import Channel, ChannelDirectory
from .forward_events import AppendResult, ForwardEvent, ForwardEventStore
from .peer_groups import GroupDelta, PeerGroup, PeerGroupManager
from .tier_manager import SyncCycleState, TierManager
from .peers import PeerRegistry
from .channel_acceptor import ChannelAcceptor, HttpAmlChecker
from .node_api import LightningNode
from .rates import HttpRateSource
from .notifier import PluginNotifier
from .config import Config, ConfigSnapshot
from .database import Database

__all__ = [
    'FeeTierBand',
    'FEE_TIERS',
    'classify',
    'percent_to_ppm',
    'ppm_to_percent',
    'Channel',
    'ChannelDirectory',
    'AppendResult',
    'ForwardEvent',
    'ForwardEventStore',
    'GroupDelta',
    'PeerGroup',
    'PeerGroupManager',
    'SyncCycleState',
    'TierManager',
    'PeerRegistry',
    'ChannelAcceptor',
    'HttpAmlChecker',
    'LightningNode',
    'HttpRateSource',
    'PluginNotifier',
    'Config',
    'ConfigSnapshot',
    'Database',
]
