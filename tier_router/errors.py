"""
Exception types for cl-fee-tiers.

Structural errors (ClassificationError, DuplicateMembershipError) point at a
data or configuration problem and are never retried. Transient errors
(RateLookupError, node RPC failures) are retried a bounded number of times
by the Tier Manager before the page is given up for this cycle.
"""


class TierRouterError(Exception):
    """Base class for all cl-fee-tiers errors."""


class ClassificationError(TierRouterError):
    """No fee tier band covers the given amount."""

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"No fee tier band covers amount {amount}")


class UnknownChannelError(TierRouterError):
    """A channel id could not be resolved to a remote peer."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Unknown channel: {channel_id}")


class RateLookupError(TierRouterError):
    """Fiat exchange rate unavailable for a timestamp."""

    def __init__(self, message: str, timestamp_ms=None):
        self.timestamp_ms = timestamp_ms
        super().__init__(message)


class DuplicateEventError(TierRouterError):
    """A forward event with the same event_id is already stored."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Forward event already stored: {event_id}")


class DuplicateMembershipError(TierRouterError):
    """A peer already belongs to a group."""

    def __init__(self, peer_ids):
        self.peer_ids = list(peer_ids)
        super().__init__(
            f"Peer(s) already belong to a group: {', '.join(self.peer_ids)}"
        )


class FeePropagationError(TierRouterError):
    """Updating the fee rate failed for one or more channels of a group."""

    def __init__(self, group_id: int, failed_channels, message: str = ""):
        self.group_id = group_id
        self.failed_channels = list(failed_channels)
        super().__init__(
            message or
            f"Fee update failed for group {group_id} on "
            f"{len(self.failed_channels)} channel(s): {', '.join(self.failed_channels)}"
        )


class AmlCheckError(TierRouterError):
    """The compliance service could not be queried or gave no usable answer."""
