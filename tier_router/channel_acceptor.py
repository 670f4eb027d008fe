"""
Channel acceptor for cl-fee-tiers

Decides whether an inbound channel open is accepted:

1. Opener on the node whitelist -> accept
2. No compliance (AML) service configured -> accept
3. Ask the AML service; accept only when it answers aml_pass == true,
   otherwise reject with its reason and record CHANNEL_REJECT for the peer.
   If the service cannot be reached the open is rejected.
"""

import json
import urllib.error
import urllib.request
from typing import Any, Dict, Optional, TYPE_CHECKING

from .errors import AmlCheckError
from .interfaces import AmlResult
from .node_api import parse_msat

if TYPE_CHECKING:
    from .config import Config
    from .interfaces import AmlChecker, Notifier
    from .peers import PeerRegistry


GENERIC_REJECT_MESSAGE = "Channel request could not be processed, please try again later"


class HttpAmlChecker:
    """AmlChecker that POSTs the request as JSON to a compliance service."""

    def __init__(self, url: str, timeout: int = 10, plugin=None):
        self.url = url
        self.timeout = timeout
        self.plugin = plugin

    def check(self, request: Dict[str, Any]) -> AmlResult:
        """
        Raises:
            AmlCheckError: on transport errors or an unusable answer
        """
        payload = json.dumps(request).encode('utf-8')
        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={
                'Content-Type': 'application/json',
                'User-Agent': 'cl-fee-tiers/1.0'
            },
            method='POST'
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode('utf-8')
        except urllib.error.HTTPError as e:
            raise AmlCheckError(f"AML service returned HTTP {e.code}")
        except (urllib.error.URLError, OSError) as e:
            raise AmlCheckError(f"AML service connection error: {e}")

        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise AmlCheckError(f"AML service returned invalid JSON: {e}")
        if not isinstance(data, dict):
            raise AmlCheckError("AML service returned an unexpected payload")

        return AmlResult(passed=data.get("aml_pass") is True, reason=data.get("reason"))


def parse_open_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize an openchannel / openchannel2 hook payload.

    Returns peer id, capacity and our starting balance in sats.
    """
    peer_id = payload.get("id", "")
    if "their_funding_msat" in payload:
        # Dual funded: both sides may contribute
        their_sats = parse_msat(payload.get("their_funding_msat")) // 1000
        our_sats = parse_msat(payload.get("our_funding_msat")) // 1000
        capacity = their_sats + our_sats
        local_balance = our_sats
    else:
        capacity = parse_msat(payload.get("funding_msat")) // 1000
        local_balance = parse_msat(payload.get("push_msat")) // 1000
    return {
        "peer_id": peer_id,
        "capacity": capacity,
        "local_balance": local_balance,
    }


class ChannelAcceptor:
    """Whitelist + AML admission for inbound channel opens."""

    def __init__(self, config: 'Config', notifier: 'Notifier',
                 aml_checker: Optional['AmlChecker'] = None,
                 peers: Optional['PeerRegistry'] = None, plugin=None):
        self.config = config
        self.notifier = notifier
        self.aml_checker = aml_checker
        self.peers = peers
        self.plugin = plugin

    def _log(self, msg: str, level: str = 'info') -> None:
        if self.plugin:
            self.plugin.log(msg, level=level)

    def evaluate(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Return the hook response for one channel open."""
        request = parse_open_request(payload)
        peer_id = request["peer_id"]
        capacity = request["capacity"]

        if self.config.is_whitelisted(peer_id):
            self.notifier.alert(
                'info', 'router',
                f"New channel from whitelisted node {peer_id} - Capacity: {capacity}"
            )
            return {"result": "continue"}

        if self.aml_checker is None:
            return {"result": "continue"}

        self._log(f"New channel request from {peer_id[:12]}... capacity={capacity}")
        aml_request = {
            "action": "channel_opening_request",
            "node_public_key": peer_id,
            "order": {
                "remote_balance": capacity - request["local_balance"],
                "local_balance": request["local_balance"],
            },
        }
        try:
            result = self.aml_checker.check(aml_request)
        except AmlCheckError as e:
            self.notifier.alert('error', 'router', f"Failed to check aml on channel request: {e}")
            return {"result": "reject", "error_message": GENERIC_REJECT_MESSAGE}

        if result.passed:
            self.notifier.alert('info', 'router', f"New channel from {peer_id} - Capacity: {capacity}")
            return {"result": "continue"}

        reason = result.reason or "Channel rejected"
        self.notifier.alert('info', 'router', f"channel rejected {reason}")
        if self.peers:
            self.peers.channel_rejected(peer_id, reason)
        return {"result": "reject", "error_message": reason}
