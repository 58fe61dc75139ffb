from decimal import Decimal

import requests

from conftest import run
from pos_engine.core.errors import CardDeclined, TerminalFault, TerminalTimeout
from pos_engine.services.terminal import (
    HttpPaymentTerminal,
    SimulatedTerminal,
    TerminalApproval,
    TerminalFailure,
    TerminalFailureReason,
    failure_to_error,
)


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.exc is not None:
            raise self.exc
        return self.response


def _charge(session, amount="12.50"):
    term = HttpPaymentTerminal("http://terminal.local/", timeout=5, session=session)
    return run(term.charge(Decimal(amount), reference="tx-1"))


def test_http_terminal_approval():
    session = FakeSession(
        FakeResponse(
            200,
            {"success": True, "gateway_tx_id": "G-1", "auth_code": "A1B2", "card_last4": "1111", "card_type": "MC"},
        )
    )
    result = _charge(session)
    assert isinstance(result, TerminalApproval)
    assert result.card_meta().card_last4 == "1111"
    url, body, timeout = session.posts[0]
    assert url == "http://terminal.local/sale"
    assert body == {"amount": "12.50", "reference": "tx-1"}
    assert timeout == 5


def test_http_terminal_declined():
    session = FakeSession(FakeResponse(402, {"success": False, "reason": "declined", "message": "insufficient funds"}))
    result = _charge(session)
    assert result == TerminalFailure(TerminalFailureReason.DECLINED, "insufficient funds")


def test_http_terminal_timeout_and_connection_errors():
    assert _charge(FakeSession(exc=requests.Timeout())).reason == TerminalFailureReason.TIMEOUT
    assert _charge(FakeSession(exc=requests.ConnectionError("refused"))).reason == TerminalFailureReason.ERROR


def test_http_terminal_bad_payloads_are_errors():
    assert _charge(FakeSession(FakeResponse(500, None))).reason == TerminalFailureReason.ERROR
    unknown = _charge(FakeSession(FakeResponse(200, {"success": False, "reason": "on_fire"})))
    assert unknown.reason == TerminalFailureReason.ERROR


def test_simulated_terminal_approves_after_queue_drains():
    term = SimulatedTerminal([TerminalFailure(TerminalFailureReason.TIMEOUT)])
    first = run(term.charge(Decimal("5.00"), reference="a"))
    second = run(term.charge(Decimal("5.00"), reference="a"))
    assert isinstance(first, TerminalFailure)
    assert isinstance(second, TerminalApproval)
    assert second.gateway_tx_id.startswith("SIM-")
    assert term.calls == [(Decimal("5.00"), "a"), (Decimal("5.00"), "a")]


def test_failure_maps_to_typed_error():
    amount = Decimal("9.00")
    assert isinstance(failure_to_error(TerminalFailure(TerminalFailureReason.DECLINED), amount), CardDeclined)
    assert isinstance(failure_to_error(TerminalFailure(TerminalFailureReason.TIMEOUT), amount), TerminalTimeout)
    err = failure_to_error(TerminalFailure(TerminalFailureReason.ERROR, "boom"), amount, "SPLIT")
    assert isinstance(err, TerminalFault)
    assert err.amount == amount and err.method == "SPLIT"
    assert err.status_code == 402
