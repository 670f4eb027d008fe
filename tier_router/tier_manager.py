"""
Tier Manager for cl-fee-tiers

Drives the forward-event sync cycle:

1. Resume from the node's stored page cursor. Without one, start after the
   newest stored event (plus resume_offset_ms), or from the beginning on an
   empty store.
2. Page through the node's settled forwards. For every forward:
   a. resolve inbound and outbound peers via the Channel Directory
   b. price it in USD at routed_at - rate_lookup_offset_ms
   c. append it to the Forward-Event Store (duplicates are skipped)
   d. add its amounts to the outbound and the inbound peer's group
   e. reclassify each touched group and, on a tier change, push the new
      fee rate to every channel of every node in the group
   The cursor is stored only after every forward on a page is accounted
   for. A failed page is read again by the next cycle and the forwards it
   already stored come back as duplicates.
3. Reconcile: any group whose stored tier no longer matches its volume is
   re-propagated. A failed propagation leaves the old tier stored, so this
   is where it gets retried.

Steps c and d run in one storage transaction together with the
classification of the new totals, under the locks of the touched groups.
Fee propagation happens after commit, still under those locks, so two
events for one group can never interleave their read-modify-write or push
fees out of order.

Only one cycle runs at a time. A trigger that arrives while a cycle is in
progress is dropped; the running cycle or the next trigger will see the
forward anyway.
"""

import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from pyln.client import RpcError

from .errors import (
    ClassificationError,
    FeePropagationError,
    RateLookupError,
    UnknownChannelError,
)
from .fee_tier import (
    FeeTierBand,
    STARTING_TIER,
    amount_to_next_tier,
    band_fee_ppm,
    band_index,
    classify,
    same_band,
)
from .forward_events import AppendResult, ForwardEvent, compute_event_id
from .peer_groups import GroupDelta, PeerGroup
from .rates import sats_to_usd

if TYPE_CHECKING:
    from .channels import ChannelDirectory
    from .config import Config, ConfigSnapshot
    from .database import Database
    from .forward_events import ForwardEventStore
    from .interfaces import RawForward
    from .peer_groups import PeerGroupManager
    from .peers import PeerRegistry


# Failures worth another attempt: node RPC, rate API, socket level
TRANSIENT_ERRORS = (RpcError, RateLookupError, OSError)


def _tier_label(band: FeeTierBand) -> str:
    try:
        return str(band_index(band))
    except ValueError:
        return "?"


@dataclass
class CycleStats:
    """Counters for one sync cycle, returned by feetier-sync."""
    trigger: str = "manual"
    status: str = "ok"
    started_at: float = 0.0
    finished_at: float = 0.0
    since_ms: Optional[int] = None
    resumed_from: Optional[str] = None
    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped_unknown_channel: int = 0
    tier_changes: int = 0
    propagation_failures: int = 0
    reconciled: int = 0
    failed_nodes: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status,
            "started_at": int(self.started_at),
            "duration_seconds": round(self.finished_at - self.started_at, 3),
            "since_ms": self.since_ms,
            "resumed_from": self.resumed_from,
            "pages": self.pages,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "skipped_unknown_channel": self.skipped_unknown_channel,
            "tier_changes": self.tier_changes,
            "propagation_failures": self.propagation_failures,
            "reconciled": self.reconciled,
            "failed_nodes": list(self.failed_nodes),
            "error": self.error,
        }


class SyncCycleState:
    """
    Single-flight guard for sync cycles.

    try_begin() takes a non-blocking lock; it fails while a cycle is running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: float = 0.0
        self.cycles_completed = 0
        self.cycles_skipped = 0
        self.last_result: Optional[Dict[str, Any]] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def try_begin(self) -> bool:
        if not self._lock.acquire(blocking=False):
            self.cycles_skipped += 1
            return False
        self.started_at = time.time()
        return True

    def end(self, result: Optional[Dict[str, Any]]) -> None:
        self.last_result = result
        self.cycles_completed += 1
        self._lock.release()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "started_at": int(self.started_at) if self.running else None,
            "cycles_completed": self.cycles_completed,
            "cycles_skipped": self.cycles_skipped,
            "last_result": self.last_result,
        }


class _PageFailed(Exception):
    """Internal: the current node loop must stop for this cycle."""


class TierManager:
    """
    Forward ingestion, group aggregation and tier classification.

    Args:
        config: Config (snapshotted at the start of every cycle)
        database: Database providing transaction()
        directory: ChannelDirectory for peer resolution and fee targets
        node: ForwardSource + FeeUpdater (LightningNode in production)
        events: ForwardEventStore
        groups: PeerGroupManager
        rates: RateSource
        notifier: Notifier for operator alerts
        peers: PeerRegistry, receives ROUTING_FEE_TIER log entries (optional)
        plugin: Plugin for logging
        sleep: Delay function used between retries
        stop_event: Set on shutdown; page loops exit early when set
    """

    def __init__(self, config: 'Config', database: 'Database',
                 directory: 'ChannelDirectory', node, events: 'ForwardEventStore',
                 groups: 'PeerGroupManager', rates, notifier,
                 peers: Optional['PeerRegistry'] = None, plugin=None,
                 sleep: Callable[[float], None] = time.sleep,
                 stop_event: Optional[threading.Event] = None):
        self.config = config
        self.database = database
        self.directory = directory
        self.node = node
        self.events = events
        self.groups = groups
        self.rates = rates
        self.notifier = notifier
        self.peers = peers
        self.plugin = plugin
        self._sleep = sleep
        self._stop_event = stop_event

        self.state = SyncCycleState()
        self._trigger_lock = threading.Lock()
        self._last_trigger_at = 0.0

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def _stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    # =========================================================================
    # Triggers
    # =========================================================================

    def on_channels_updated(self) -> None:
        """Channel Directory listener."""
        self.request_sync("channels_updated")

    def request_sync(self, trigger: str, throttle: bool = True) -> bool:
        """
        Start a cycle on a background thread, unless one is still running
        or (when throttled) one was started less than sync_min_interval
        seconds ago.

        Returns:
            True if a cycle was dispatched
        """
        now = time.time()
        with self._trigger_lock:
            if self.state.running:
                return False
            if throttle and now - self._last_trigger_at < self.config.sync_min_interval:
                return False
            self._last_trigger_at = now

        threading.Thread(
            target=self._sync_in_background,
            args=(trigger,),
            daemon=True,
            name="forward-sync"
        ).start()
        return True

    def _sync_in_background(self, trigger: str) -> None:
        try:
            result = self.sync_forward_events(trigger)
            if result.get("inserted") or result.get("tier_changes"):
                self._log(
                    f"Forward sync ({trigger}): {result['inserted']} new event(s), "
                    f"{result['tier_changes']} tier change(s)"
                )
        except Exception as e:
            self._log(f"Error in forward sync: {e}", level='error')

    # =========================================================================
    # Sync cycle
    # =========================================================================

    def sync_forward_events(self, trigger: str = "manual") -> Dict[str, Any]:
        """
        Run one full sync cycle.

        Returns:
            CycleStats as a dict, or {"status": "skipped"} when a cycle is
            already running.
        """
        if not self.state.try_begin():
            self._log("Forward sync already running, trigger dropped", level='debug')
            return {"status": "skipped", "reason": "sync already running", "trigger": trigger}

        result = None
        try:
            cfg = self.config.snapshot()
            stats = self._run_cycle(cfg, trigger)
            result = stats.to_dict()
            return result
        finally:
            self.state.end(result)

    def _run_cycle(self, cfg: 'ConfigSnapshot', trigger: str) -> CycleStats:
        stats = CycleStats(trigger=trigger, started_at=time.time())

        try:
            info = self._with_retries(self.node.get_info, cfg, "getinfo")
        except TRANSIENT_ERRORS as e:
            stats.status = "error"
            stats.error = f"getinfo failed: {e}"
            stats.finished_at = time.time()
            self._log(f"Forward sync aborted, {stats.error}", level='error')
            return stats

        reporting_nodes = [info.get("public_key")]
        try:
            for node_id in reporting_nodes:
                if self._stopping():
                    break
                self._sync_node(node_id, cfg, stats)
        except ClassificationError as e:
            stats.status = "aborted"
            stats.error = str(e)
            stats.finished_at = time.time()
            self._log(f"Forward sync aborted: {e}", level='error')
            self.notifier.alert('error', 'channel_tier', f"Forward sync aborted: {e}")
            return stats

        if not self._stopping():
            stats.reconciled = self._reconcile_pending_tiers(cfg, stats)

        if stats.failed_nodes:
            stats.status = "partial"
        stats.finished_at = time.time()
        return stats

    def _sync_node(self, node_id: str, cfg: 'ConfigSnapshot', stats: CycleStats) -> None:
        """Follow the node's forward pages until the token runs out."""
        token = self.events.cursor(node_id)
        since_ms = None
        if token is None:
            latest = self.events.latest()
            since_ms = latest.routed_at_ms + cfg.resume_offset_ms if latest else None
        stats.resumed_from = token
        stats.since_ms = since_ms

        while not self._stopping():
            try:
                page = self._with_retries(
                    lambda: self.node.get_forwards(node_id, cfg.sync_page_size, token, since_ms),
                    cfg, "listforwards"
                )
            except TRANSIENT_ERRORS as e:
                self._page_failed(node_id, f"fetching forwards failed: {e}", stats)
                return

            stats.pages += 1
            stats.fetched += len(page.forwards)
            try:
                for forward in page.forwards:
                    self._ingest(node_id, forward, cfg, stats)
            except _PageFailed as e:
                self._page_failed(node_id, str(e), stats)
                return

            if page.cursor and page.cursor != token:
                self.events.save_cursor(node_id, page.cursor)
            if not page.next:
                return
            token = page.next

    def _page_failed(self, node_id: str, reason: str, stats: CycleStats) -> None:
        stats.failed_nodes.append(node_id)
        self._log(
            f"Forward sync for {str(node_id)[:12]}... stopped for this cycle: {reason}",
            level='warn'
        )

    def _with_retries(self, fn: Callable[[], Any], cfg: 'ConfigSnapshot', what: str) -> Any:
        """Call `fn`, retrying transient failures up to cfg.max_retries times."""
        attempts = cfg.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except TRANSIENT_ERRORS as e:
                if attempt >= attempts:
                    raise
                self._log(
                    f"{what} failed (attempt {attempt}/{attempts}): {e}, "
                    f"retrying in {cfg.retry_delay_seconds}s",
                    level='warn'
                )
                self._sleep(cfg.retry_delay_seconds)

    def _ingest(self, node_id: str, forward: 'RawForward', cfg: 'ConfigSnapshot',
                stats: CycleStats) -> None:
        """Store one forward and account it to its groups."""
        try:
            in_node = self._with_retries(
                lambda: self.directory.resolve_peer_of_channel(forward.in_channel),
                cfg, "channel lookup"
            )
            out_node = self._with_retries(
                lambda: self.directory.resolve_peer_of_channel(forward.out_channel),
                cfg, "channel lookup"
            )
        except UnknownChannelError as e:
            stats.skipped_unknown_channel += 1
            self._log(f"Skipping forward: {e}", level='warn')
            return
        except TRANSIENT_ERRORS as e:
            raise _PageFailed(f"channel lookup failed for {forward.in_channel}/{forward.out_channel}: {e}")

        routed_at_ms = int(forward.created_at_ms)
        event_id = compute_event_id(in_node, out_node, routed_at_ms, forward.amount_sats)
        if self.events.get(event_id) is not None:
            stats.duplicates += 1
            return

        try:
            price = self._with_retries(
                lambda: self.rates.get_fiat_rate(routed_at_ms - cfg.rate_lookup_offset_ms),
                cfg, "rate lookup"
            )
        except TRANSIENT_ERRORS as e:
            raise _PageFailed(f"rate lookup failed for forward at {routed_at_ms}: {e}")

        usd_amount = sats_to_usd(forward.amount_sats, price)
        usd_fee = sats_to_usd(forward.fee_sats, price)
        event = ForwardEvent.create(
            node_public_key=node_id,
            in_channel=forward.in_channel,
            in_channel_node=in_node,
            out_channel=forward.out_channel,
            out_channel_node=out_node,
            amount_sats=forward.amount_sats,
            fee_sats=forward.fee_sats,
            usd_amount=usd_amount,
            usd_fee=usd_fee,
            routed_at_ms=routed_at_ms,
        )
        delta = GroupDelta(
            sats_forwarded=event.amount_sats,
            usd_forwarded=usd_amount,
            sats_fee=event.fee_sats,
            usd_fee=usd_fee,
        )

        # Outbound side first; a group on both sides counts once
        touched: List[PeerGroup] = []
        for peer_id in (out_node, in_node):
            group = self.groups.ensure_group(peer_id, STARTING_TIER)
            if all(group.id != g.id for g in touched):
                touched.append(group)

        with self.groups.lock(*[g.id for g in touched]):
            updated: List[PeerGroup] = []
            with self.database.transaction():
                if self.events.append(event) is AppendResult.ALREADY_EXISTS:
                    stats.duplicates += 1
                    return
                for group in touched:
                    snapshot = self.groups.apply_delta(group.id, delta)
                    # Raising here rolls back the event together with its deltas
                    classify(snapshot.total_usd_forwarded)
                    updated.append(snapshot)
            stats.inserted += 1

            for snapshot in updated:
                self._reclassify(snapshot, cfg, stats)

    # =========================================================================
    # Classification and fee propagation
    # =========================================================================

    def is_exempt(self, group: PeerGroup, cfg: Optional['ConfigSnapshot'] = None) -> bool:
        """Groups containing a whitelisted node keep their tier."""
        cfg = cfg or self.config.snapshot()
        return any(cfg.is_whitelisted(node_id) for node_id in group.nodes)

    def _reclassify(self, group: PeerGroup, cfg: 'ConfigSnapshot', stats: CycleStats) -> bool:
        """
        Move `group` to the band its volume belongs in.

        Caller holds the group's lock. Returns True if the tier changed.
        """
        if self.is_exempt(group, cfg):
            return False
        new_tier = classify(group.total_usd_forwarded)
        if same_band(new_tier, group.fee_tier):
            return False

        try:
            self.propagate_fee(group, new_tier)
        except FeePropagationError as e:
            stats.propagation_failures += 1
            self.notifier.alert('error', 'channel_tier', str(e))
            return False

        self.groups.set_tier(group.id, new_tier)
        stats.tier_changes += 1
        if self.peers:
            for node_id in sorted(group.nodes):
                self.peers.tier_changed(node_id, new_tier)
        self.notifier.alert(
            'info', 'channel_tier',
            f"Channel tier changed for node {','.join(sorted(group.nodes))}: "
            f"tier {_tier_label(group.fee_tier)} -> {_tier_label(new_tier)} "
            f"({new_tier.fee_percent}%)"
        )
        return True

    def propagate_fee(self, group: PeerGroup, band: FeeTierBand) -> int:
        """
        Push the band's fee rate to every channel of every node in the group.

        Every channel is attempted even if an earlier one fails.

        Returns:
            Number of channels updated

        Raises:
            FeePropagationError: listing the channels that failed
        """
        fee_ppm = band_fee_ppm(band)
        channels = []
        for node_id in sorted(group.nodes):
            channels.extend(self.directory.channels_of_peer(node_id))

        failed = []
        for channel in channels:
            try:
                self.node.update_routing_fee(channel, fee_ppm)
            except TRANSIENT_ERRORS as e:
                self._log(f"Fee update failed for {channel.id}: {e}", level='warn')
                failed.append(channel.id)

        if failed:
            raise FeePropagationError(group.id, failed)
        self._log(
            f"Set {fee_ppm} PPM on {len(channels)} channel(s) of group {group.id}",
            level='debug'
        )
        return len(channels)

    def _reconcile_pending_tiers(self, cfg: 'ConfigSnapshot', stats: CycleStats) -> int:
        """Re-propagate every group whose stored tier lags its volume."""
        reconciled = 0
        for group in self.groups.list_groups():
            if self.is_exempt(group, cfg):
                continue
            with self.groups.lock(group.id):
                current = self.groups.get_group(group.id)
                if current is None:
                    continue
                if self._reclassify(current, cfg, stats):
                    reconciled += 1
        return reconciled

    # =========================================================================
    # Audit and status
    # =========================================================================

    def recalculate_totals(self) -> Dict[str, Any]:
        """
        Replay every stored event and compare the sums to the stored totals.

        Read-only: differences are reported, never written.
        """
        groups = self.groups.list_groups()
        membership = {node_id: group.id for group in groups for node_id in group.nodes}
        sums: Dict[int, List] = {g.id: [0, Decimal(0), 0, Decimal(0)] for g in groups}
        unattributed = [0]

        def visit(event: ForwardEvent) -> None:
            ids = {membership.get(event.out_channel_node), membership.get(event.in_channel_node)}
            ids.discard(None)
            if not ids:
                unattributed[0] += 1
            for group_id in ids:
                acc = sums[group_id]
                acc[0] += event.amount_sats
                acc[1] += event.usd_amount
                acc[2] += event.fee_sats
                acc[3] += event.usd_fee

        replayed = self.events.for_each(None, visit)

        mismatches = []
        for group in groups:
            sats_fwd, usd_fwd, sats_fee, usd_fee = sums[group.id]
            stored = (group.total_sats_forwarded, group.total_usd_forwarded,
                      group.total_sats_fee, group.total_usd_fee)
            if stored != (sats_fwd, usd_fwd, sats_fee, usd_fee):
                mismatches.append({
                    "group_id": group.id,
                    "stored": {
                        "total_sats_forwarded": group.total_sats_forwarded,
                        "total_usd_forwarded": str(group.total_usd_forwarded),
                        "total_sats_fee": group.total_sats_fee,
                        "total_usd_fee": str(group.total_usd_fee),
                    },
                    "replayed": {
                        "total_sats_forwarded": sats_fwd,
                        "total_usd_forwarded": str(usd_fwd),
                        "total_sats_fee": sats_fee,
                        "total_usd_fee": str(usd_fee),
                    },
                })

        return {
            "events_replayed": replayed,
            "events_unattributed": unattributed[0],
            "groups_checked": len(groups),
            "consistent": not mismatches,
            "mismatches": mismatches,
        }

    def describe_group(self, group: PeerGroup) -> Dict[str, Any]:
        """Group dict enriched with its channels and distance to the next tier."""
        result = group.to_dict()
        remaining = amount_to_next_tier(group.total_usd_forwarded)
        result["usd_to_next_tier"] = str(remaining) if remaining is not None else None
        result["expected_tier"] = classify(group.total_usd_forwarded).to_dict()
        result["exempt"] = self.is_exempt(group)
        result["channels"] = [
            ch.to_dict() for node_id in sorted(group.nodes)
            for ch in self.directory.channels_of_peer(node_id)
        ]
        return result

    def get_status(self) -> Dict[str, Any]:
        latest = self.events.latest()
        groups = self.groups.list_groups()
        pending = sum(
            1 for g in groups
            if not self.is_exempt(g) and not same_band(classify(g.total_usd_forwarded), g.fee_tier)
        )
        return {
            "sync": self.state.to_dict(),
            "forward_events": self.events.count(),
            "latest_routed_at_ms": latest.routed_at_ms if latest else None,
            "groups": len(groups),
            "groups_pending_fee_update": pending,
            "channels": self.directory.channel_count,
            "channels_refreshed_at": int(self.directory.last_refresh),
        }
