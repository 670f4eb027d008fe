"""
Lightning node adapter for cl-fee-tiers

Implements the ChannelSource, ForwardSource and FeeUpdater capabilities on
top of lightningd's JSON-RPC (via pyln-client):

- listpeerchannels   -> open channels
- listclosedchannels -> peer of a channel that is no longer open
- listforwards       -> settled forwards, paged by updated index
- setchannel         -> proportional fee of one channel
- getinfo            -> our own node id

The plugin passed in is expected to be the thread-safe proxy, so every RPC
call here is already serialized.
"""

from typing import Any, Dict, List, Optional

from .channels import Channel
from .errors import UnknownChannelError
from .interfaces import ForwardPage, RawForward


# Channel states that can carry HTLCs
ACTIVE_CHANNEL_STATES = frozenset({
    "CHANNELD_NORMAL",
    "CHANNELD_AWAITING_SPLICE",
})


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


def normalize_scid(scid: Optional[str]) -> Optional[str]:
    """Older notifications use '1:2:3'; listpeerchannels uses '1x2x3'."""
    if scid:
        return scid.replace(':', 'x')
    return scid


def channel_from_rpc(entry: Dict[str, Any]) -> Optional[Channel]:
    """Build a Channel from a listpeerchannels entry (None if unusable)."""
    scid = entry.get("short_channel_id")
    channel_id = scid or entry.get("channel_id")
    peer_id = entry.get("peer_id")
    if not channel_id or not peer_id:
        return None

    total_msat = parse_msat(entry.get("total_msat"))
    to_us_msat = parse_msat(entry.get("to_us_msat"))
    if not total_msat:
        total_msat = (parse_msat(entry.get("spendable_msat")) +
                      parse_msat(entry.get("receivable_msat")))

    return Channel(
        id=channel_id,
        partner_public_key=peer_id,
        capacity=total_msat // 1000,
        local_balance=to_us_msat // 1000,
        transaction_id=entry.get("funding_txid", ""),
        transaction_vout=int(entry.get("funding_outnum", 0) or 0),
        sent=parse_msat(entry.get("out_fulfilled_msat")) // 1000,
        received=parse_msat(entry.get("in_fulfilled_msat")) // 1000,
        past_state_count=int(entry.get("out_payments_fulfilled", 0) or 0) +
                         int(entry.get("in_payments_fulfilled", 0) or 0),
        short_channel_id=scid,
    )


class LightningNode:
    """
    pyln-backed implementation of the node capabilities.

    Args:
        plugin: Plugin (or thread-safe proxy) exposing .rpc and .log
        config: Config; only dry_run is read, at call time
    """

    def __init__(self, plugin, config=None):
        self.plugin = plugin
        self.config = config

    def list_channels(self) -> List[Channel]:
        """Return every channel in a state that can forward."""
        result = self.plugin.rpc.listpeerchannels()
        channels = []
        for entry in result.get("channels", []):
            if entry.get("state") not in ACTIVE_CHANNEL_STATES:
                continue
            channel = channel_from_rpc(entry)
            if channel:
                channels.append(channel)
        return channels

    def get_node_of_closed_channel(self, channel_id: str) -> str:
        """
        Resolve a closed channel to its peer.

        Raises:
            UnknownChannelError: if lightningd has no record of the channel
            RpcError: if the lookup itself failed
        """
        scid = normalize_scid(channel_id)
        result = self.plugin.rpc.listclosedchannels()

        for entry in result.get("closedchannels", []):
            if scid in (entry.get("short_channel_id"), entry.get("channel_id")):
                peer_id = entry.get("peer_id")
                if peer_id:
                    return peer_id
        raise UnknownChannelError(channel_id)

    def get_info(self) -> Dict[str, Any]:
        info = self.plugin.rpc.getinfo()
        return {"public_key": info.get("id"), "alias": info.get("alias", "")}

    def get_forwards(self, node_id: Optional[str], limit: int,
                     token: Optional[str] = None,
                     since_ms: Optional[int] = None) -> ForwardPage:
        """
        Fetch one page of settled forwards.

        Pages follow lightningd's updated_index, which is assigned when a
        forward settles, so a forward received early but settled late still
        shows up after everything already read. The token is the next index
        to read. Forwards that settled before `since_ms` are dropped from the
        page but still advance the token.
        """
        start = int(token) if token else 0
        result = self.plugin.rpc.listforwards(
            status="settled", index="updated", start=start, limit=limit
        )
        entries = result.get("forwards", [])

        forwards = []
        last_index = None
        for entry in entries:
            updated_index = entry.get("updated_index")
            if updated_index is not None:
                last_index = int(updated_index)

            received_ms = int(float(entry.get("received_time", 0) or 0) * 1000)
            resolved_ms = int(float(entry.get("resolved_time", 0) or 0) * 1000) or received_ms
            if since_ms is not None and resolved_ms < since_ms:
                continue

            forwards.append(RawForward(
                in_channel=normalize_scid(entry.get("in_channel")),
                out_channel=normalize_scid(entry.get("out_channel")),
                amount_sats=parse_msat(entry.get("out_msat")) // 1000,
                fee_sats=parse_msat(entry.get("fee_msat")) // 1000,
                created_at_ms=received_ms,
            ))

        cursor = str(last_index + 1) if last_index is not None else token
        next_token = cursor if len(entries) >= limit and last_index is not None else None
        return ForwardPage(forwards=forwards, next=next_token, cursor=cursor)

    def update_routing_fee(self, channel: Channel, fee_rate_ppm: int) -> Dict[str, Any]:
        """Set the proportional fee of one channel; the base fee is left as is."""
        channel_ref = channel.short_channel_id or channel.id
        if self.config is not None and self.config.dry_run:
            self.plugin.log(f"[DRY RUN] Would set fee for {channel_ref} to {fee_rate_ppm} PPM")
            return {"channel": channel_ref, "fee_ppm": fee_rate_ppm, "dry_run": True}

        self.plugin.rpc.call("setchannel", {"id": channel_ref, "feeppm": int(fee_rate_ppm)})
        return {"channel": channel_ref, "fee_ppm": fee_rate_ppm, "dry_run": False}
