"""
Peer/Group Aggregate Store for cl-fee-tiers

A peer group is one or more peer public keys sharing a single volume
counter and fee tier (e.g. an operator running a cluster of nodes). Each
peer belongs to at most one group. Groups are created lazily the first time
one of their peers forwards through us and are seeded at the lowest tier.

Totals only ever grow. Updating them is a read-modify-write on exact
Decimal values, so every update for a group runs under that group's lock.
The Tier Manager holds the same lock across delta -> classify -> propagate
-> set_tier so concurrent events for one group cannot lose updates.
"""

import threading
from contextlib import contextmanager, ExitStack
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, TYPE_CHECKING

from .fee_tier import FeeTierBand, STARTING_TIER, band_from_row, band_index

if TYPE_CHECKING:
    from .database import Database


@dataclass(frozen=True)
class GroupDelta:
    """Contribution of one forward event to a group's totals."""
    sats_forwarded: int = 0
    usd_forwarded: Decimal = Decimal(0)
    sats_fee: int = 0
    usd_fee: Decimal = Decimal(0)

    def __post_init__(self):
        if (self.sats_forwarded < 0 or self.usd_forwarded < 0 or
                self.sats_fee < 0 or self.usd_fee < 0):
            raise ValueError("Group totals are monotonic; deltas must be non-negative")


@dataclass(frozen=True)
class PeerGroup:
    """
    Snapshot of a peer group.

    Attributes:
        id: Opaque group id
        nodes: Member peer public keys
        fee_tier: Band the group's channels are currently priced at
        total_sats_forwarded / total_usd_forwarded: Forwarded volume
        total_sats_fee / total_usd_fee: Fees earned
        created_at: Unix timestamp
    """
    id: int
    nodes: frozenset
    fee_tier: FeeTierBand
    total_sats_forwarded: int = 0
    total_usd_forwarded: Decimal = Decimal(0)
    total_sats_fee: int = 0
    total_usd_fee: Decimal = Decimal(0)
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'PeerGroup':
        return cls(
            id=row['id'],
            nodes=frozenset(row.get('nodes', [])),
            fee_tier=band_from_row(row['tier_min'], row['tier_max'], row['tier_fee_percent']),
            total_sats_forwarded=row['total_sats_forwarded'],
            total_usd_forwarded=Decimal(row['total_usd_forwarded']),
            total_sats_fee=row['total_sats_fee'],
            total_usd_fee=Decimal(row['total_usd_fee']),
            created_at=row['created_at'],
            updated_at=row.get('updated_at', 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        try:
            tier_index = band_index(self.fee_tier)
        except ValueError:
            tier_index = None
        return {
            "id": self.id,
            "nodes": sorted(self.nodes),
            "fee_tier": self.fee_tier.to_dict(),
            "tier_index": tier_index,
            "total_sats_forwarded": self.total_sats_forwarded,
            "total_usd_forwarded": str(self.total_usd_forwarded),
            "total_sats_fee": self.total_sats_fee,
            "total_usd_fee": str(self.total_usd_fee),
            "created_at": self.created_at,
        }


class PeerGroupManager:
    """
    Group aggregates on top of the Database, with per-group serialization.

    Thread Safety:
        - lock(group_id) returns a re-entrant per-group lock, so a caller
          holding it can call apply_delta()/set_tier() freely.
        - Group creation is serialized by a store-wide lock; ensure_group()
          checks and creates under it, so two events for a new peer never
          create two groups.
    """

    def __init__(self, database: 'Database', plugin=None):
        self.database = database
        self.plugin = plugin
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._create_lock = threading.RLock()

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def _lock_for(self, group_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(group_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[group_id] = lock
            return lock

    @contextmanager
    def lock(self, *group_ids: int) -> Iterator[None]:
        """
        Hold the locks of one or more groups.

        Locks are taken in ascending id order so two callers locking the
        same pair never deadlock.
        """
        with ExitStack() as stack:
            for group_id in sorted(set(group_ids)):
                stack.enter_context(self._lock_for(group_id))
            yield

    # =========================================================================
    # Queries
    # =========================================================================

    def group_of(self, peer_id: str) -> Optional[PeerGroup]:
        row = self.database.get_group_by_member(peer_id)
        return PeerGroup.from_row(row) if row else None

    def get_group(self, group_id: int) -> Optional[PeerGroup]:
        row = self.database.get_group(group_id)
        return PeerGroup.from_row(row) if row else None

    def list_groups(self) -> List[PeerGroup]:
        return [PeerGroup.from_row(row) for row in self.database.get_all_groups()]

    # =========================================================================
    # Mutations
    # =========================================================================

    def create_group(self, peer_ids: Iterable[str],
                     initial_tier: FeeTierBand = STARTING_TIER) -> PeerGroup:
        """
        Create a group for `peer_ids`.

        Raises:
            DuplicateMembershipError: if any key already belongs to a group
            ValueError: if no peer ids are given
        """
        nodes = sorted(set(p for p in peer_ids if p))
        if not nodes:
            raise ValueError("A peer group needs at least one node")

        with self._create_lock:
            group_id = self.database.insert_group(
                nodes, initial_tier.min, initial_tier.max, str(initial_tier.fee_percent)
            )
        self._log(f"Created peer group {group_id} for {len(nodes)} node(s)", level='debug')
        return self.get_group(group_id)

    def ensure_group(self, peer_id: str,
                     initial_tier: FeeTierBand = STARTING_TIER) -> PeerGroup:
        """Return the peer's group, creating a single-member group if needed."""
        group = self.group_of(peer_id)
        if group:
            return group
        with self._create_lock:
            group = self.group_of(peer_id)
            if group:
                return group
            return self.create_group([peer_id], initial_tier)

    def apply_delta(self, group_id: int, delta: GroupDelta) -> PeerGroup:
        """
        Add `delta` to the group's running totals.

        Returns:
            The post-update snapshot

        Raises:
            KeyError: if the group does not exist
        """
        with self._lock_for(group_id):
            current = self.get_group(group_id)
            if current is None:
                raise KeyError(f"Unknown peer group {group_id}")

            total_sats_forwarded = current.total_sats_forwarded + delta.sats_forwarded
            total_usd_forwarded = current.total_usd_forwarded + delta.usd_forwarded
            total_sats_fee = current.total_sats_fee + delta.sats_fee
            total_usd_fee = current.total_usd_fee + delta.usd_fee

            self.database.update_group_totals(
                group_id,
                total_sats_forwarded,
                str(total_usd_forwarded),
                total_sats_fee,
                str(total_usd_fee),
            )
            return PeerGroup(
                id=current.id,
                nodes=current.nodes,
                fee_tier=current.fee_tier,
                total_sats_forwarded=total_sats_forwarded,
                total_usd_forwarded=total_usd_forwarded,
                total_sats_fee=total_sats_fee,
                total_usd_fee=total_usd_fee,
                created_at=current.created_at,
                updated_at=current.updated_at,
            )

    def set_tier(self, group_id: int, new_tier: FeeTierBand) -> None:
        """Overwrite the group's current tier."""
        with self._lock_for(group_id):
            self.database.update_group_tier(
                group_id, new_tier.min, new_tier.max, str(new_tier.fee_percent)
            )
