"""
Tests for inbound channel admission.

Tests:
- Hook payload parsing (single and dual funded)
- Whitelist bypass
- AML pass / fail / unreachable
- HTTP AML client
"""

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from tier_router.channel_acceptor import (
    GENERIC_REJECT_MESSAGE,
    ChannelAcceptor,
    HttpAmlChecker,
    parse_open_request,
)
from tier_router.errors import AmlCheckError
from tier_router.interfaces import AmlResult
from tier_router.peers import PeerEvent

from conftest import FakeNotifier


def open_payload(peer_id, funding_msat=2_000_000_000, push_msat=0):
    return {"id": peer_id, "funding_msat": funding_msat, "push_msat": push_msat}


class TestParseOpenRequest:
    def test_single_funded(self, sample_peer_ids):
        request = parse_open_request(open_payload(sample_peer_ids[0], "2000000000msat", "1000000msat"))

        assert request == {"peer_id": sample_peer_ids[0], "capacity": 2_000_000, "local_balance": 1000}

    def test_dual_funded(self, sample_peer_ids):
        request = parse_open_request({
            "id": sample_peer_ids[0],
            "their_funding_msat": 3_000_000_000,
            "our_funding_msat": 1_000_000_000,
        })

        assert request["capacity"] == 4_000_000
        assert request["local_balance"] == 1_000_000


class TestChannelAcceptor:
    def make(self, config, checker=None, peers=None):
        notifier = FakeNotifier()
        return ChannelAcceptor(config, notifier, aml_checker=checker, peers=peers), notifier

    def test_whitelisted_node_skips_aml(self, config, sample_peer_ids):
        config.node_whitelist = frozenset({sample_peer_ids[0]})
        checker = MagicMock()
        acceptor, notifier = self.make(config, checker)

        assert acceptor.evaluate(open_payload(sample_peer_ids[0])) == {"result": "continue"}

        checker.check.assert_not_called()
        assert "whitelisted" in notifier.alerts[0][2]

    def test_no_checker_accepts(self, config, sample_peer_ids):
        acceptor, notifier = self.make(config)

        assert acceptor.evaluate(open_payload(sample_peer_ids[1])) == {"result": "continue"}
        assert notifier.alerts == []

    def test_aml_pass(self, config, sample_peer_ids):
        checker = MagicMock()
        checker.check.return_value = AmlResult(passed=True)
        acceptor, notifier = self.make(config, checker)

        result = acceptor.evaluate(open_payload(sample_peer_ids[1], push_msat=5_000_000))

        assert result == {"result": "continue"}
        sent = checker.check.call_args[0][0]
        assert sent["action"] == "channel_opening_request"
        assert sent["node_public_key"] == sample_peer_ids[1]
        assert sent["order"] == {"remote_balance": 1_995_000, "local_balance": 5000}

    def test_aml_fail_rejects_with_reason(self, config, peer_registry, sample_peer_ids):
        checker = MagicMock()
        checker.check.return_value = AmlResult(passed=False, reason="high risk")
        acceptor, notifier = self.make(config, checker, peer_registry)

        result = acceptor.evaluate(open_payload(sample_peer_ids[2]))

        assert result == {"result": "reject", "error_message": "high risk"}
        entry = peer_registry.get_peer_log(sample_peer_ids[2])[0]
        assert entry["name"] == PeerEvent.CHANNEL_REJECT
        assert entry["meta"] == {"reason": "high risk"}

    def test_aml_fail_without_reason(self, config, sample_peer_ids):
        checker = MagicMock()
        checker.check.return_value = AmlResult(passed=False)
        acceptor, _ = self.make(config, checker)

        assert acceptor.evaluate(open_payload(sample_peer_ids[2]))["result"] == "reject"

    def test_aml_unreachable_rejects_generically(self, config, sample_peer_ids):
        checker = MagicMock()
        checker.check.side_effect = AmlCheckError("connection refused")
        acceptor, notifier = self.make(config, checker)

        result = acceptor.evaluate(open_payload(sample_peer_ids[3]))

        assert result == {"result": "reject", "error_message": GENERIC_REJECT_MESSAGE}
        assert notifier.levels() == ["error"]


def fake_response(body):
    response = MagicMock()
    response.read.return_value = body.encode('utf-8')
    response.__enter__.return_value = response
    return response


class TestHttpAmlChecker:
    @patch('tier_router.channel_acceptor.urllib.request.urlopen')
    def test_pass(self, mock_urlopen):
        mock_urlopen.return_value = fake_response(json.dumps({"aml_pass": True}))
        checker = HttpAmlChecker("http://aml.local/check", timeout=3)

        result = checker.check({"node_public_key": "02aa"})

        assert result.passed is True
        req = mock_urlopen.call_args[0][0]
        assert req.get_method() == 'POST'
        assert json.loads(req.data) == {"node_public_key": "02aa"}
        assert mock_urlopen.call_args[1]["timeout"] == 3

    @patch('tier_router.channel_acceptor.urllib.request.urlopen')
    def test_only_literal_true_passes(self, mock_urlopen):
        mock_urlopen.return_value = fake_response(json.dumps({"aml_pass": "yes", "reason": "odd"}))

        result = HttpAmlChecker("http://aml.local/check").check({})

        assert result.passed is False
        assert result.reason == "odd"

    @patch('tier_router.channel_acceptor.urllib.request.urlopen')
    def test_http_error(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError("http://aml.local", 503, "down", {}, None)

        with pytest.raises(AmlCheckError):
            HttpAmlChecker("http://aml.local/check").check({})

    @patch('tier_router.channel_acceptor.urllib.request.urlopen')
    def test_invalid_json(self, mock_urlopen):
        mock_urlopen.return_value = fake_response("<html>")

        with pytest.raises(AmlCheckError):
            HttpAmlChecker("http://aml.local/check").check({})
