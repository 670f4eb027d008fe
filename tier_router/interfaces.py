"""
Capability interfaces for the collaborators the tier engine consumes.

The engine only ever talks to these narrow protocols; the pyln-backed
LightningNode, the HTTP rate source and the plugin notifier are the
production implementations, tests pass in fakes.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from .channels import Channel


@dataclass
class RawForward:
    """
    A settled forward as reported by the node, before enrichment.

    Attributes:
        in_channel: Short channel id the HTLC arrived on
        out_channel: Short channel id the HTLC left on
        amount_sats: Amount forwarded out (sats)
        fee_sats: Fee earned (sats)
        created_at_ms: When the forward was received (epoch ms)
    """
    in_channel: str
    out_channel: str
    amount_sats: int
    fee_sats: int
    created_at_ms: int


@dataclass
class ForwardPage:
    """
    One page of settled forwards.

    Attributes:
        forwards: Forwards on this page (after any since_ms filtering)
        next: Token for the following page, None on the last page
        cursor: Token that resumes right after this page, also on the last
            page; persisted once every forward on the page is accounted for
    """
    forwards: List[RawForward] = field(default_factory=list)
    next: Optional[str] = None
    cursor: Optional[str] = None


@dataclass
class AmlResult:
    passed: bool
    reason: Optional[str] = None


class ChannelSource(Protocol):
    def list_channels(self) -> List[Channel]: ...

    def get_node_of_closed_channel(self, channel_id: str) -> str: ...


class ForwardSource(Protocol):
    def get_info(self) -> Dict[str, Any]: ...

    def get_forwards(self, node_id: Optional[str], limit: int,
                     token: Optional[str] = None,
                     since_ms: Optional[int] = None) -> ForwardPage: ...


class FeeUpdater(Protocol):
    def update_routing_fee(self, channel: Channel, fee_rate_ppm: int) -> Dict[str, Any]: ...


class RateSource(Protocol):
    def get_fiat_rate(self, timestamp_ms: Optional[int] = None) -> Decimal: ...


class Notifier(Protocol):
    def alert(self, level: str, topic: str, message: str) -> None: ...


class AmlChecker(Protocol):
    def check(self, request: Dict[str, Any]) -> AmlResult: ...
