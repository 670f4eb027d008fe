"""
Pytest fixtures for cl-fee-tiers tests.

Provides a temporary database, a mock plugin, and in-memory fakes for the
node, rate source and notifier so the tier engine runs end to end.
"""

import os
import sys
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pyln.client import RpcError

from tier_router.channels import Channel, ChannelDirectory
from tier_router.config import Config
from tier_router.database import Database
from tier_router.errors import RateLookupError, UnknownChannelError
from tier_router.forward_events import ForwardEventStore
from tier_router.interfaces import ForwardPage, RawForward
from tier_router.peer_groups import PeerGroupManager
from tier_router.peers import PeerRegistry
from tier_router.tier_manager import TierManager


LOCAL_NODE_ID = "02" + "0" * 64

# 1 BTC == 100_000_000 USD, so 1 sat == 1 USD and volumes read naturally
ONE_USD_PER_SAT = Decimal("100000000")


class FakeNode:
    """ChannelSource + ForwardSource + FeeUpdater backed by lists."""

    def __init__(self, channels=None, closed=None):
        self.channels = list(channels or [])
        self.closed = dict(closed or {})
        self.forwards = []
        self.fee_updates = []
        self.fail_fee_updates = False
        self.forward_calls = 0
        self.tokens = []

    def list_channels(self):
        return list(self.channels)

    def get_node_of_closed_channel(self, channel_id):
        if channel_id in self.closed:
            return self.closed[channel_id]
        raise UnknownChannelError(channel_id)

    def get_info(self):
        return {"public_key": LOCAL_NODE_ID}

    def add_forward(self, in_channel, out_channel, amount_sats, fee_sats=1, created_at_ms=None):
        if created_at_ms is None:
            created_at_ms = 1_700_000_000_000 + len(self.forwards) * 60_000
        self.forwards.append(RawForward(in_channel, out_channel, amount_sats, fee_sats, created_at_ms))

    def get_forwards(self, node_id, limit, token=None, since_ms=None):
        """Pages by position in self.forwards, which is settle order."""
        self.forward_calls += 1
        self.tokens.append(token)
        start = int(token) if token else 0
        window = list(enumerate(self.forwards))[start:start + limit]
        rows = [f for _, f in window]
        if since_ms is not None:
            rows = [f for f in rows if f.created_at_ms >= since_ms]
        cursor = str(window[-1][0] + 1) if window else token
        next_token = cursor if len(window) >= limit else None
        return ForwardPage(forwards=rows, next=next_token, cursor=cursor)

    def update_routing_fee(self, channel, fee_rate_ppm):
        if self.fail_fee_updates:
            raise RpcError("setchannel", {"id": channel.id}, {"message": "channel busy"})
        self.fee_updates.append((channel.id, fee_rate_ppm))
        return {"channel": channel.id, "fee_ppm": fee_rate_ppm}


class FakeRates:
    """RateSource with a fixed price that can be told to fail N times."""

    def __init__(self, price=ONE_USD_PER_SAT):
        self.price = price
        self.failures_left = 0
        self.calls = []

    def get_fiat_rate(self, timestamp_ms=None):
        self.calls.append(timestamp_ms)
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RateLookupError("rate service unavailable", timestamp_ms)
        return self.price


class FakeNotifier:
    def __init__(self):
        self.alerts = []

    def alert(self, level, topic, message):
        self.alerts.append((level, topic, message))

    def levels(self):
        return [a[0] for a in self.alerts]


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    for suffix in ('', '-wal', '-shm'):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Initialized database on a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close_all_connections()


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
    ]


@pytest.fixture
def sample_channels(sample_peer_ids):
    """One channel per sample peer, plus a second channel to peer c."""
    a, b, c, _ = sample_peer_ids
    return [
        Channel(id="100x1x0", partner_public_key=a, capacity=1_000_000, short_channel_id="100x1x0"),
        Channel(id="200x1x0", partner_public_key=b, capacity=2_000_000, short_channel_id="200x1x0"),
        Channel(id="300x1x0", partner_public_key=c, capacity=500_000, short_channel_id="300x1x0"),
        Channel(id="300x2x1", partner_public_key=c, capacity=500_000, short_channel_id="300x2x1"),
    ]


@pytest.fixture
def fake_node(sample_channels):
    return FakeNode(channels=sample_channels)


@pytest.fixture
def fake_rates():
    return FakeRates()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def config():
    return Config(
        sync_min_interval=0,
        sync_page_size=2,
        resume_offset_ms=0,
        max_retries=3,
        retry_delay_seconds=0,
    )


@pytest.fixture
def sleeps():
    """Records retry delays instead of sleeping."""
    return []


@pytest.fixture
def directory(fake_node, mock_plugin):
    d = ChannelDirectory(fake_node, mock_plugin)
    d.refresh()
    return d


@pytest.fixture
def groups(database, mock_plugin):
    return PeerGroupManager(database, mock_plugin)


@pytest.fixture
def events(database):
    return ForwardEventStore(database)


@pytest.fixture
def peer_registry(database, mock_plugin):
    return PeerRegistry(database, mock_plugin)


@pytest.fixture
def tier_manager(config, database, directory, fake_node, events, groups,
                 fake_rates, fake_notifier, peer_registry, mock_plugin, sleeps):
    return TierManager(
        config=config,
        database=database,
        directory=directory,
        node=fake_node,
        events=events,
        groups=groups,
        rates=fake_rates,
        notifier=fake_notifier,
        peers=peer_registry,
        plugin=mock_plugin,
        sleep=sleeps.append,
    )
