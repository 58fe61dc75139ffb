import time
import uuid

import pytest
from fastapi.testclient import TestClient

from pos_engine.core.config import Settings
from pos_engine.main import create_app
from pos_engine.services.recorder import InMemoryTransactionRecorder


def _settings(tmp_path, **overrides):
    base = dict(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        reconciliation_log=str(tmp_path / "recon" / "reconciliation.jsonl"),
        log_level="WARNING",
        location_id="loc-api",
        register_id="T1",
        tax_rate=0,
        tip_enabled=False,
        display_debounce_seconds=0,
        recorder_retry_seconds=0,
        terminal_url="",
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(_settings(tmp_path))) as c:
        yield c


def _post(c, path, body=None, *, headers=None):
    r = c.post(path, json=body or {}, headers=headers or {})
    return r.status_code, r.json()


def _open_shift(c, counts=None):
    st, js = _post(c, "/pos/shift/open", {"employee_id": "emp-1", "counts": counts or {"100": 1}})
    assert st == 200, js
    return js


def _wait_for(fetch, predicate, tries=200):
    for _ in range(tries):
        js = fetch()
        if predicate(js):
            return js
        time.sleep(0.02)
    raise AssertionError(f"condition not met, last: {js}")


def test_health_returns_200(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_open_current_close_report(client):
    opened = _open_shift(client, {"100": 1, "20": 1})
    assert opened["starting_cash"] == "120.00"

    st, js = _post(client, "/pos/shift/open", {"employee_id": "emp-2", "counts": {"100": 1}})
    assert st == 409 and js["code"] == "shift_already_open"

    current = client.get("/pos/shift/current").json()
    assert current["id"] == opened["shift_id"]
    assert "expected" not in current

    st, report = _post(client, "/pos/shift/close", {"counts": {"100": 1, "20": 1, "5": 1}})
    assert st == 200
    assert report["expected"] == "120.00"
    assert report["variance"] == "5.00"
    assert report["classification"] == "OVER"

    stored = client.get(f"/pos/shift/{opened['shift_id']}/report").json()
    assert stored == report
    assert client.get("/pos/shift/current").status_code == 404
    assert client.get("/pos/shift/nope/report").status_code == 404


def test_drawer_activity_requires_open_shift(client):
    st, js = _post(client, "/pos/shift/activity", {"type": "PAID_OUT", "amount": "5.00"})
    assert st == 409 and js["code"] == "no_open_shift"

    _open_shift(client)
    st, js = _post(client, "/pos/shift/activity", {"type": "PAID_OUT", "amount": "5.00", "note": "ice"})
    assert st == 200
    st, report = _post(client, "/pos/shift/close", {"counts": {"50": 1, "20": 2, "5": 1}})
    assert report["drawer_adjustments"] == "-5.00"
    assert report["classification"] == "BALANCED"


def test_bad_denomination_is_422(client):
    st, js = _post(client, "/pos/shift/open", {"employee_id": "emp-1", "counts": {"3": 1}})
    assert st == 422
    assert js["code"] == "unknown_denomination"


def test_cart_and_cash_checkout(client):
    _open_shift(client)
    _post(client, "/pos/register/T1/items", {"id": "A", "name": "Shampoo", "price": "8.00"})
    st, view = _post(client, "/pos/register/T1/items", {"id": "B", "name": "Cut", "price": "15.00", "kind": "SERVICE"})
    assert st == 200 and view["state"] == "ACTIVE"

    view = client.patch("/pos/register/T1/items/0", json={"quantity": 2}).json()
    assert view["cart"]["items"][0]["quantity"] == 2
    st, view = _post(client, "/pos/register/T1/discount", {"amount": "1.00", "source": "manual"})
    assert view["totals"]["discounted_subtotal"] == "30.00"

    assert client.patch("/pos/register/T1/items/9", json={"quantity": 2}).status_code == 404
    assert client.patch("/pos/register/T1/items/0", json={}).status_code == 422

    st, js = _post(client, "/pos/register/T1/checkout", {"method": "CASH", "cash_received": "10.00"})
    assert st == 422
    assert js["code"] == "insufficient_cash"
    assert js["amount"] == "30.00" and js["method"] == "CASH"

    st, js = _post(client, "/pos/register/T1/checkout", {"method": "CASH", "cash_received": "40.00"})
    assert st == 200, js
    assert js["total"] == "30.00" and js["change_due"] == "10.00"

    view = client.get("/pos/register/T1").json()
    assert view["state"] == "IDLE"
    assert view["cart"]["items"] == []
    assert client.get("/pos/shift/current").json()["status"] == "OPEN"


def test_split_checkout_over_http(client):
    _open_shift(client)
    _post(client, "/pos/register/T1/items", {"id": "BUNDLE", "name": "Bundle", "price": "50.00"})

    st, js = _post(client, "/pos/register/T1/checkout", {"method": "SPLIT", "cash_amount": "20.00", "card_amount": "25.00"})
    assert st == 422 and js["code"] == "split_mismatch"

    st, js = _post(
        client,
        "/pos/register/T1/checkout",
        {"method": "SPLIT", "cash_amount": "20.00", "card_amount": "30.00", "cash_received": "20.00"},
    )
    assert st == 200, js
    assert js["change_due"] == "0.00"
    assert js["transaction"]["card_meta"]["card_last4"] == "4242"


def test_checkout_replays_with_same_idempotency_key(client):
    _post(client, "/pos/register/T1/items", {"id": "A", "name": "A", "price": "12.00"})
    headers = {"Idempotency-Key": uuid.uuid4().hex}

    r1 = client.post("/pos/register/T1/checkout", json={"method": "CARD"}, headers=headers)
    r2 = client.post("/pos/register/T1/checkout", json={"method": "CARD"}, headers=headers)
    assert r1.status_code == r2.status_code == 200
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert r2.json()["replay"] is True
    assert r1.json()["transaction_id"] == r2.json()["transaction_id"]
    assert len(client.app.state.terminal.calls) == 1

    # sin clave no hay replay: la caja ya volvió a IDLE
    r3 = client.post("/pos/register/T1/checkout", json={"method": "CARD"})
    assert r3.status_code == 409 and r3.json()["code"] == "invalid_checkout_state"


def test_cancel_returns_to_idle(client):
    _post(client, "/pos/register/T1/items", {"id": "A", "name": "A", "price": "3.00"})
    st, view = _post(client, "/pos/register/T1/cancel")
    assert st == 200
    assert view["state"] == "IDLE"
    assert view["cart"]["items"] == []


def test_reconciliation_starts_empty(client):
    js = client.get("/pos/reconciliation").json()
    assert js == {"count": 0, "entries": []}


def test_tip_handshake_over_http(tmp_path):
    s = _settings(tmp_path, tip_enabled=True, tip_poll_interval_seconds=0.01, tip_poll_max_attempts=1000)
    with TestClient(create_app(s)) as c:
        _post(c, "/pos/register/T1/items", {"id": "A", "name": "A", "price": "40.00", "kind": "SERVICE"})

        st, js = _post(c, "/pos/register/T1/checkout", {"method": "CARD"})
        assert st == 409 and js["code"] == "invalid_checkout_state"

        st, view = _post(c, "/pos/register/T1/tip/request")
        assert st == 200 and view["state"] == "AWAITING_TIP"

        doc = _wait_for(
            lambda: c.get("/pos/display-sync", params={"location_id": "loc-api"}).json(),
            lambda js: js.get("status") == "AWAITING_TIP",
        )
        assert doc["tip_suggestions"] == ["6.00", "8.00", "10.00"]

        st, js = _post(c, "/pos/display-sync/tip", {"amount": "6.00", "version": doc["version"] + 5})
        assert st == 409 and js["code"] == "stale_display_version"

        st, js = _post(c, "/pos/display-sync/tip", {"amount": "6.00", "version": doc["version"]})
        assert st == 200 and js["status"] == "TIP_SELECTED"

        _wait_for(lambda: c.get("/pos/register/T1").json(), lambda js: js["state"] == "TIP_SELECTED")

        st, js = _post(c, "/pos/register/T1/checkout", {"method": "CARD"})
        assert st == 200, js
        assert js["transaction"]["tip"] == "6.00"
        assert js["total"] == "46.00"


def test_no_sale_and_activity_listing_over_http(client):
    _open_shift(client)
    st, js = _post(client, "/pos/shift/activity", {"type": "NO_SALE"})
    assert st == 422 and js["code"] == "invalid_drawer_activity"

    st, js = _post(client, "/pos/shift/activity", {"type": "NO_SALE", "reason": "make_change"})
    assert st == 200 and js["amount"] == "0.00"
    _post(client, "/pos/shift/activity", {"type": "CASH_DROP", "amount": "20.00"})

    listing = client.get("/pos/shift/activity").json()
    assert [a["type"] for a in listing["activities"]] == ["NO_SALE", "CASH_DROP"]
    assert listing["summary"]["no_sale_count"] == 1
    assert listing["summary"]["cash_drops"] == 1


def test_captured_payment_holds_register_until_record_retry(tmp_path):
    with TestClient(create_app(_settings(tmp_path, recorder_max_attempts=1))) as c:
        _post(c, "/pos/register/T1/items", {"id": "A", "name": "A", "price": "10.00"})
        c.app.state.hub._registers["T1"]._settlement._recorder = InMemoryTransactionRecorder(fail_times=1)

        st, js = _post(c, "/pos/register/T1/checkout", {"method": "CARD"})
        assert st == 502 and js["manual_reconciliation_required"] is True
        tx_id = js["transaction_id"]
        assert c.get("/pos/register/T1").json()["unrecorded_transaction_id"] == tx_id

        st, js = _post(c, "/pos/register/T1/checkout", {"method": "CARD"})
        assert st == 409 and js["code"] == "invalid_checkout_state"

        st, js = _post(c, "/pos/register/T1/reconciliation/retry")
        assert st == 200 and js["transaction_id"] == tx_id
        assert len(c.app.state.terminal.calls) == 1
        assert c.get("/pos/register/T1").json()["state"] == "IDLE"
