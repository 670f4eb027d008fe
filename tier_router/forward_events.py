"""
Forward-Event Store for cl-fee-tiers

Durable, deduplicated record of every settled forward we have accounted
for. Each event is keyed by a content hash of (inbound peer, outbound peer,
routed time, amount), so ingesting an overlapping page range twice never
counts an event twice: the second insert is reported as ALREADY_EXISTS.
"""

import hashlib
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, TYPE_CHECKING

from .errors import DuplicateEventError

if TYPE_CHECKING:
    from .database import Database


class AppendResult(Enum):
    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


def compute_event_id(in_channel_node: str, out_channel_node: str,
                     routed_at_ms: int, amount_sats: int) -> str:
    """sha256 over the fields that identify one logical forward."""
    payload = f"{in_channel_node}|{out_channel_node}|{int(routed_at_ms)}|{int(amount_sats)}"
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class ForwardEvent:
    """
    A settled forward, enriched with peer identities and fiat values.

    Attributes:
        event_id: Content hash, see compute_event_id()
        node_public_key: Our node that reported the forward
        in_channel / out_channel: Channels the HTLC used
        in_channel_node / out_channel_node: Remote peers of those channels
        amount_sats: Amount forwarded
        fee_sats: Fee earned
        usd_amount / usd_fee: Fiat values at the time of the forward
        routed_at_ms: When the forward happened (epoch ms)
        created_at_ms: When we stored it (epoch ms)
    """
    event_id: str
    node_public_key: str
    in_channel: str
    in_channel_node: str
    out_channel: str
    out_channel_node: str
    amount_sats: int
    fee_sats: int
    usd_amount: Decimal
    usd_fee: Decimal
    routed_at_ms: int
    created_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def create(cls, node_public_key: str, in_channel: str, in_channel_node: str,
               out_channel: str, out_channel_node: str, amount_sats: int,
               fee_sats: int, usd_amount: Decimal, usd_fee: Decimal,
               routed_at_ms: int) -> 'ForwardEvent':
        """Build an event, deriving its id from the identifying fields."""
        return cls(
            event_id=compute_event_id(in_channel_node, out_channel_node,
                                      routed_at_ms, amount_sats),
            node_public_key=node_public_key,
            in_channel=in_channel,
            in_channel_node=in_channel_node,
            out_channel=out_channel,
            out_channel_node=out_channel_node,
            amount_sats=int(amount_sats),
            fee_sats=int(fee_sats),
            usd_amount=usd_amount,
            usd_fee=usd_fee,
            routed_at_ms=int(routed_at_ms),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ForwardEvent':
        return cls(
            event_id=row['event_id'],
            node_public_key=row['node_public_key'],
            in_channel=row['in_channel'],
            in_channel_node=row['in_channel_node'],
            out_channel=row['out_channel'],
            out_channel_node=row['out_channel_node'],
            amount_sats=row['amount_sats'],
            fee_sats=row['fee_sats'],
            usd_amount=Decimal(row['usd_amount']),
            usd_fee=Decimal(row['usd_fee']),
            routed_at_ms=row['routed_at_ms'],
            created_at_ms=row['created_at_ms'],
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "node_public_key": self.node_public_key,
            "in_channel": self.in_channel,
            "in_channel_node": self.in_channel_node,
            "out_channel": self.out_channel,
            "out_channel_node": self.out_channel_node,
            "amount_sats": self.amount_sats,
            "fee_sats": self.fee_sats,
            "usd_amount": str(self.usd_amount),
            "usd_fee": str(self.usd_fee),
            "routed_at_ms": self.routed_at_ms,
            "created_at_ms": self.created_at_ms,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.to_row()


class ForwardEventStore:
    """Append-only ledger of forward events on top of the Database."""

    def __init__(self, database: 'Database'):
        self.database = database

    def append(self, event: ForwardEvent) -> AppendResult:
        """
        Persist `event`.

        A uniqueness conflict on event_id is not an error: ingestion
        re-reads overlapping page ranges on purpose.
        """
        try:
            self.database.insert_forward_event(event.to_row())
        except DuplicateEventError:
            return AppendResult.ALREADY_EXISTS
        return AppendResult.INSERTED

    def latest(self) -> Optional[ForwardEvent]:
        row = self.database.get_latest_forward_event()
        return ForwardEvent.from_row(row) if row else None

    def get(self, event_id: str) -> Optional[ForwardEvent]:
        row = self.database.get_forward_event(event_id)
        return ForwardEvent.from_row(row) if row else None

    def iter_events(self, predicate: Optional[Callable[[ForwardEvent], bool]] = None
                    ) -> Iterator[ForwardEvent]:
        """
        Lazily yield stored events, newest first.

        Finite and restartable: every call runs a fresh query.
        """
        for row in self.database.iter_forward_events():
            event = ForwardEvent.from_row(row)
            if predicate is None or predicate(event):
                yield event

    def for_each(self, predicate: Optional[Callable[[ForwardEvent], bool]],
                 visitor: Callable[[ForwardEvent], None]) -> int:
        """Call `visitor` for every matching event. Returns how many were visited."""
        visited = 0
        for event in self.iter_events(predicate):
            visitor(event)
            visited += 1
        return visited

    def count(self) -> int:
        return self.database.count_forward_events()

    def cursor(self, node_id: str) -> Optional[str]:
        """Page token to resume `node_id`'s forwards from, None until a page was fully processed."""
        return self.database.get_sync_cursor(node_id)

    def save_cursor(self, node_id: str, token: str) -> None:
        self.database.set_sync_cursor(node_id, token)

    def reset_cursor(self, node_id: str) -> bool:
        return self.database.delete_sync_cursor(node_id)
