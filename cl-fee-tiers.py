#!/usr/bin/env python3
"""
cl-fee-tiers: Volume-Tiered Routing Fees for Core Lightning

This plugin prices every peer by how much volume it has routed through us.
Peers (or groups of peers run by the same operator) start at the highest
fee tier and move to cheaper tiers as their cumulative forwarded volume,
valued in USD at the time of each forward, crosses fixed thresholds.

HOW IT WORKS:
-------------
1. The Channel Directory mirrors our open channels every few seconds.
2. Each refresh (and every settled forward) triggers a sync cycle that pages
   through `listforwards`, prices each new forward in USD, stores it once,
   and adds it to the totals of the inbound and outbound peer's groups.
3. When a group's total crosses a tier boundary, the tier's fee rate is set
   on every channel of every node in the group with `setchannel`.

It also keeps a profile and event log for every peer and can gate inbound
channel opens through a whitelist and an external AML service.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import signal
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Union

from pyln.client import Plugin, RpcError

from tier_router.channel_acceptor import ChannelAcceptor, HttpAmlChecker
from tier_router.channels import ChannelDirectory
from tier_router.config import (
    CONFIG_FIELD_TYPES,
    DEFAULT_RATE_URL,
    IMMUTABLE_CONFIG_KEYS,
    RUNTIME_LIST_KEYS,
    Config,
)
from tier_router.database import Database
from tier_router.errors import DuplicateMembershipError
from tier_router.fee_tier import FEE_TIERS, STARTING_TIER, validate_table
from tier_router.forward_events import ForwardEventStore
from tier_router.node_api import LightningNode
from tier_router.notifier import PluginNotifier
from tier_router.peer_groups import PeerGroupManager
from tier_router.peers import PeerRegistry
from tier_router.rates import HttpRateSource
from tier_router.tier_manager import TierManager


plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Set by the SIGTERM handler. Background loops wait on it instead of
# time.sleep() so `lightning-cli plugin stop` returns immediately.

shutdown_event = threading.Event()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# pyln-client's RPC is not thread-safe for concurrent calls. The channel
# refresh loop, sync threads and hooks all share one connection, so every
# call is serialized by this lock.

RPC_LOCK = threading.RLock()
RPC_LOCK_TIMEOUT_SECONDS = 30


class ThreadSafeRpcProxy:
    """Thread-safe wrapper for plugin.rpc."""

    def __init__(self, rpc, lock=None):
        self._rpc = rpc
        self._lock = lock or RPC_LOCK

    def call(self, method: str, payload: dict = None) -> dict:
        """Make a thread-safe RPC call."""
        if not self._lock.acquire(timeout=RPC_LOCK_TIMEOUT_SECONDS):
            raise TimeoutError(f"RPC lock timeout for {method}")
        try:
            if payload is None:
                return self._rpc.call(method)
            return self._rpc.call(method, payload)
        finally:
            self._lock.release()

    def __getattr__(self, name: str):
        """Proxy attribute access to underlying RPC with locking."""
        attr = getattr(self._rpc, name)
        if callable(attr):
            def wrapped(*args, **kwargs):
                if not self._lock.acquire(timeout=RPC_LOCK_TIMEOUT_SECONDS):
                    raise TimeoutError(f"RPC lock timeout for {name}")
                try:
                    return attr(*args, **kwargs)
                finally:
                    self._lock.release()
            return wrapped
        return attr


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin):
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None
channel_directory: Optional[ChannelDirectory] = None
peer_groups: Optional[PeerGroupManager] = None
peer_registry: Optional[PeerRegistry] = None
tier_manager: Optional[TierManager] = None
channel_acceptor: Optional[ChannelAcceptor] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='fee-tiers-db-path',
    default='~/.lightning/fee_tiers.db',
    description='Path to the SQLite database for storing state'
)

plugin.add_option(
    name='fee-tiers-channel-refresh-interval',
    default='5',
    description='Interval in seconds between channel list refreshes (default: 5)'
)

plugin.add_option(
    name='fee-tiers-sync-min-interval',
    default='30',
    description='Minimum seconds between notification-triggered forward syncs (default: 30)'
)

plugin.add_option(
    name='fee-tiers-sync-page-size',
    default='100',
    description='Forwards fetched per listforwards page (default: 100)'
)

plugin.add_option(
    name='fee-tiers-max-retries',
    default='3',
    description='Retries for transient rate lookup / RPC failures (default: 3)'
)

plugin.add_option(
    name='fee-tiers-retry-delay',
    default='2',
    description='Seconds to wait between retries (default: 2)'
)

plugin.add_option(
    name='fee-tiers-resume-offset-ms',
    default='0',
    description='Without a stored page cursor, resume this many ms after the newest stored forward (default: 0)'
)

plugin.add_option(
    name='fee-tiers-node-whitelist',
    default='',
    description='Comma separated node ids whose tier is never changed and whose channels are always accepted'
)

plugin.add_option(
    name='fee-tiers-rate-url',
    default=DEFAULT_RATE_URL,
    description='Historical BTC price endpoint (default: mempool.space historical-price)'
)

plugin.add_option(
    name='fee-tiers-slack-webhook',
    default='',
    description='Slack incoming webhook URL for alerts (default: disabled)'
)

plugin.add_option(
    name='fee-tiers-aml-url',
    default='',
    description='AML service URL consulted for inbound channel opens (default: disabled)'
)

plugin.add_option(
    name='fee-tiers-http-timeout',
    default='10',
    description='Timeout in seconds for HTTP calls to the rate, Slack and AML services (default: 10)'
)

plugin.add_option(
    name='fee-tiers-dry-run',
    default='false',
    description='If true, log fee changes but do not execute (default: false)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the fee tier plugin.

    This is called once when the plugin starts. We:
    1. Parse and validate options
    2. Initialize the database
    3. Wire the channel directory, stores and tier manager together
    4. Start the channel refresh loop
    """
    global config, database, safe_plugin, channel_directory, peer_groups
    global peer_registry, tier_manager, channel_acceptor

    plugin.log("Initializing cl-fee-tiers plugin...")

    validate_table(FEE_TIERS)

    config = Config.from_options(options)
    config.db_path = os.path.expanduser(config.db_path)
    for problem in config.reset_invalid():
        plugin.log(f"Invalid option ignored, using default: {problem}", level='warn')

    safe_plugin = ThreadSafePluginProxy(plugin)

    database = Database(config.db_path, safe_plugin)
    database.initialize()

    applied = config.load_overrides(database)
    if applied:
        plugin.log(f"Applied runtime config overrides: {', '.join(applied)}")

    plugin.log(f"Configuration loaded: page_size={config.sync_page_size}, "
               f"whitelist={len(config.node_whitelist)} node(s), "
               f"dry_run={config.dry_run}")

    node = LightningNode(safe_plugin, config)
    notifier = PluginNotifier(safe_plugin, config.slack_webhook_url, config.http_timeout_seconds)
    rates = HttpRateSource(config.rate_url, config.http_timeout_seconds, safe_plugin)

    channel_directory = ChannelDirectory(node, safe_plugin)
    peer_groups = PeerGroupManager(database, safe_plugin)
    peer_registry = PeerRegistry(database, safe_plugin)
    tier_manager = TierManager(
        config=config,
        database=database,
        directory=channel_directory,
        node=node,
        events=ForwardEventStore(database),
        groups=peer_groups,
        rates=rates,
        notifier=notifier,
        peers=peer_registry,
        plugin=safe_plugin,
        stop_event=shutdown_event,
    )
    channel_directory.on_update(tier_manager.on_channels_updated)

    aml_checker = None
    if config.aml_url:
        aml_checker = HttpAmlChecker(config.aml_url, config.http_timeout_seconds, safe_plugin)
    channel_acceptor = ChannelAcceptor(config, notifier, aml_checker, peer_registry, safe_plugin)

    def channel_refresh_loop():
        """
        Background loop keeping the channel directory current.

        Every successful refresh notifies the tier manager, which starts a
        forward sync at most once per sync_min_interval.
        """
        while not shutdown_event.is_set():
            try:
                channel_directory.refresh()
            except (RpcError, TimeoutError, OSError) as e:
                plugin.log(f"Channel refresh failed: {e}", level='warn')
            except Exception as e:
                plugin.log(f"Error in channel refresh: {e}", level='error')

            # Interruptible sleep
            if shutdown_event.wait(config.channel_refresh_interval):
                plugin.log("Channel refresh loop stopping due to shutdown signal")
                break

    # =========================================================================
    # SIGNAL HANDLER: Clean Shutdown on `lightning-cli plugin stop`
    # =========================================================================
    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM for graceful shutdown.

        Sets shutdown_event so the refresh loop and any running sync cycle
        exit at their next check, then closes database connections.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if database:
            try:
                database.close_all_connections()
            except sqlite3.Error as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    # Start background threads (daemon=True so they don't block shutdown)
    threading.Thread(target=channel_refresh_loop, daemon=True, name="channel-refresh").start()

    plugin.log("cl-fee-tiers plugin initialized successfully!")
    return None


def _not_ready() -> Dict[str, Any]:
    return {"error": "Plugin not fully initialized"}


def _parse_nodes(nodes: Union[str, List[str], None]) -> List[str]:
    if not nodes:
        return []
    if isinstance(nodes, str):
        nodes = nodes.split(',')
    return [n.strip() for n in nodes if n and n.strip()]


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("feetier-status")
def feetier_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the fee tier plugin.

    Usage: lightning-cli feetier-status
    """
    if tier_manager is None:
        return _not_ready()

    return {
        "status": "running",
        "config": config.to_dict(),
        **tier_manager.get_status(),
    }


@plugin.method("feetier-sync")
def feetier_sync(plugin: Plugin) -> Dict[str, Any]:
    """
    Start a forward sync cycle in the background.

    The cycle's counters show up under last_result of feetier-status once
    it finishes.

    Usage: lightning-cli feetier-sync
    """
    if tier_manager is None:
        return _not_ready()
    dispatched = tier_manager.request_sync("rpc", throttle=False)
    return {
        "dispatched": dispatched,
        "running": tier_manager.state.running,
        "last_result": tier_manager.state.last_result,
    }


@plugin.method("feetier-tiers")
def feetier_tiers(plugin: Plugin) -> Dict[str, Any]:
    """
    List the fee tier table.

    Usage: lightning-cli feetier-tiers
    """
    return {
        "tiers": [dict(band.to_dict(), index=i) for i, band in enumerate(FEE_TIERS)],
        "starting_tier": STARTING_TIER.to_dict(),
    }


@plugin.method("feetier-groups")
def feetier_groups(plugin: Plugin) -> Dict[str, Any]:
    """
    List all peer groups with their totals and tiers.

    Usage: lightning-cli feetier-groups
    """
    if peer_groups is None:
        return _not_ready()
    groups = peer_groups.list_groups()
    return {"count": len(groups), "groups": [g.to_dict() for g in groups]}


@plugin.method("feetier-group")
def feetier_group(plugin: Plugin, target: str) -> Dict[str, Any]:
    """
    Show one group, by group id or by member node id.

    Usage: lightning-cli feetier-group <group_id|node_id>
    """
    if tier_manager is None:
        return _not_ready()

    target = str(target).strip()
    if target.isdigit():
        group = peer_groups.get_group(int(target))
    else:
        group = peer_groups.group_of(target)
    if group is None:
        return {"error": f"No peer group found for {target}"}
    return tier_manager.describe_group(group)


@plugin.method("feetier-group-create")
def feetier_group_create(plugin: Plugin, nodes: Union[str, List[str]]) -> Dict[str, Any]:
    """
    Group several node ids so they share one volume counter and fee tier.

    Nodes must not already belong to a group.

    Usage: lightning-cli feetier-group-create '["03abc...","02def..."]'
           lightning-cli feetier-group-create 03abc...,02def...
    """
    if peer_groups is None:
        return _not_ready()

    node_ids = _parse_nodes(nodes)
    if not node_ids:
        return {"status": "error", "error": "At least one node id is required"}
    try:
        group = peer_groups.create_group(node_ids, STARTING_TIER)
    except DuplicateMembershipError as e:
        return {"status": "error", "error": str(e), "grouped_nodes": e.peer_ids}

    plugin.log(f"Created peer group {group.id} for {len(group.nodes)} node(s)")
    return {"status": "success", "group": group.to_dict()}


@plugin.method("feetier-recalc")
def feetier_recalc(plugin: Plugin) -> Dict[str, Any]:
    """
    Replay all stored forwards and report groups whose totals disagree.

    Read-only audit; nothing is rewritten.

    Usage: lightning-cli feetier-recalc
    """
    if tier_manager is None:
        return _not_ready()
    return tier_manager.recalculate_totals()


@plugin.method("feetier-peer")
def feetier_peer(plugin: Plugin, node_id: str, limit: int = 20) -> Dict[str, Any]:
    """
    Show a peer's profile, its event log and its group.

    Usage: lightning-cli feetier-peer <node_id> [limit=20]
    """
    if peer_registry is None:
        return _not_ready()

    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return {"error": "limit must be an integer"}

    group = peer_groups.group_of(node_id)
    return {
        "node_id": node_id,
        "profile": peer_registry.get_peer(node_id),
        "log": peer_registry.get_peer_log(node_id, limit),
        "group": group.to_dict() if group else None,
        "channels": [ch.to_dict() for ch in channel_directory.channels_of_peer(node_id)],
    }


@plugin.method("feetier-refresh-channels")
def feetier_refresh_channels(plugin: Plugin) -> Dict[str, Any]:
    """
    Refresh the channel directory now.

    Usage: lightning-cli feetier-refresh-channels
    """
    if channel_directory is None:
        return _not_ready()
    try:
        refreshed = channel_directory.refresh()
    except RpcError as e:
        return {"status": "error", "error": str(e)}
    return {
        "refreshed": refreshed,
        "channels": channel_directory.channel_count,
        "peers": len(channel_directory.all_peers()),
    }


@plugin.method("feetier-config")
def feetier_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli feetier-config get           # Get all config
      lightning-cli feetier-config get <key>     # Get specific key
      lightning-cli feetier-config set <key> <value>  # Set key
      lightning-cli feetier-config reset <key>   # Reset to default
      lightning-cli feetier-config list-mutable  # List changeable keys
    """
    if config is None or database is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        config_dict = config.to_dict()
        if key:
            if key not in config_dict:
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": config_dict[key], "version": config._version}
        return {"config": config_dict, "version": config._version}

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: feetier-config set <key> <value>"}

        result = config.update_runtime(database, key, str(value))
        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )
        return result

    elif action == "reset":
        if not key:
            return {"error": "Usage: feetier-config reset <key>"}
        if database.delete_config_override(key):
            return {
                "status": "success",
                "message": f"Override for '{key}' removed. Restart plugin to apply default."
            }
        return {"error": f"No override found for '{key}'"}

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        mutable.extend(RUNTIME_LIST_KEYS)
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    else:
        return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


# =============================================================================
# HOOKS AND NOTIFICATIONS
# =============================================================================

@plugin.hook("openchannel")
def on_openchannel(openchannel: Dict, plugin: Plugin, **kwargs) -> Dict[str, str]:
    """
    Hook called when a peer proposes a channel to us.

    Whitelisted peers are always accepted; others go through the AML check
    when one is configured.
    """
    if channel_acceptor is None:
        return {"result": "continue"}
    return channel_acceptor.evaluate(openchannel)


@plugin.hook("openchannel2")
def on_openchannel2(openchannel2: Dict, plugin: Plugin, **kwargs) -> Dict[str, str]:
    """Dual-funded variant of the openchannel hook."""
    if channel_acceptor is None:
        return {"result": "continue"}
    return channel_acceptor.evaluate(openchannel2)


@plugin.subscribe("forward_event")
def on_forward_event(forward_event: Dict, plugin: Plugin, **kwargs):
    """
    Notification when a forward completes (success or failure).

    A settled forward triggers a sync cycle (throttled), which picks it up
    from listforwards together with anything else that is new.
    """
    if tier_manager is None:
        return
    if forward_event.get("status") == "settled":
        tier_manager.request_sync("forward_event")


def _extract_peer_id(kwargs: Dict[str, Any], key: str) -> Optional[str]:
    """Peer id from a connect/disconnect notification, across CLN versions."""
    nested = kwargs.get(key)
    if isinstance(nested, dict):
        peer_id = nested.get('id') or nested.get('peer_id')
        if peer_id:
            return peer_id
    return kwargs.get('id')


@plugin.subscribe("connect")
def on_peer_connect(plugin: Plugin, **kwargs):
    """
    Notification when a peer connects.

    Creates the peer's profile on first sight, otherwise records the connect.
    """
    if peer_registry is None:
        return

    peer_id = _extract_peer_id(kwargs, 'connect')
    if not peer_id:
        plugin.log(f"Connect event - could not extract peer_id from: {kwargs}", level='warn')
        return

    try:
        peer_registry.peer_connected(peer_id)
        plugin.log(f"Peer connected: {peer_id[:12]}...", level='debug')
    except sqlite3.Error as e:
        plugin.log(f"Failed to record connect for {peer_id[:12]}...: {e}", level='error')


@plugin.subscribe("disconnect")
def on_peer_disconnect(plugin: Plugin, **kwargs):
    """
    Notification when a peer disconnects.
    """
    if peer_registry is None:
        return

    peer_id = _extract_peer_id(kwargs, 'disconnect')
    if not peer_id:
        plugin.log(f"Disconnect event - could not extract peer_id from: {kwargs}", level='warn')
        return

    try:
        peer_registry.peer_disconnected(peer_id)
        plugin.log(f"Peer disconnected: {peer_id[:12]}...", level='debug')
    except sqlite3.Error as e:
        plugin.log(f"Failed to record disconnect for {peer_id[:12]}...: {e}", level='error')


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
