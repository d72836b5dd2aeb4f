import asyncio
import base64

from fastapi.testclient import TestClient
from sqlalchemy import event

from donation_server.payme.states import DonationState

TTL = 12 * 60 * 60 * 1000


def auth_headers(secret="s3cret"):
    token = base64.b64encode(f"Paycom:{secret}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def rpc(client, method, params, request_id=1, headers=None):
    response = client.post(
        "/payme/merchant",
        json={"id": request_id, "method": method, "params": params},
        headers=auth_headers() if headers is None else headers,
    )
    assert response.status_code == 200
    return response.json()


def create_params(external_id="tx1", donation_id="d1", amount=1000000):
    return {"id": external_id, "account": {"donation_id": donation_id}, "amount": amount}


def seed_donation(store, donation_id="d1", amount=1000000):
    asyncio.run(store.create_donation(donation_id, amount))


def test_auth_failure_short_circuits(app, store):
    seed_donation(store)
    with TestClient(app) as client:
        data = rpc(client, "CreateTransaction", create_params(), headers=auth_headers("wrong"))
        assert data["error"]["code"] == -32504
        data = rpc(client, "CheckPerformTransaction", {}, headers={})
        assert data["error"]["code"] == -32504
    assert asyncio.run(store.get_transaction("tx1")) is None


def test_unknown_method_and_bad_json(app):
    with TestClient(app) as client:
        data = rpc(client, "Refund", {}, request_id=7)
        assert data == {"id": 7, "error": data["error"]}
        assert data["error"]["code"] == -32601

        response = client.post("/api/payme", content=b"{oops", headers=auth_headers())
        assert response.json()["error"]["code"] == -32700


def test_check_perform_transaction(app, store):
    seed_donation(store)
    with TestClient(app) as client:
        assert rpc(client, "CheckPerformTransaction", {"account": {"donation_id": "d1"}, "amount": 1000000})["result"] == {"allow": True}

        data = rpc(client, "CheckPerformTransaction", {"account": {"donation_id": "nope"}, "amount": 1000000})
        assert data["error"]["code"] == -31050
        assert data["error"]["data"] == "account"

        data = rpc(client, "CheckPerformTransaction", {"account": {"donation_id": "d1"}, "amount": 5})
        assert data["error"]["code"] == -31001
        assert data["error"]["data"] == "amount"

        data = rpc(client, "CheckPerformTransaction", {"account": {"order_id": "d1"}, "amount": 1000000})
        assert data["error"]["code"] == -31050


def test_example_scenario(app, store, clock):
    seed_donation(store)
    t0 = clock.now
    with TestClient(app) as client:
        created = rpc(client, "CreateTransaction", create_params())["result"]
        assert created["state"] == 1
        assert created["create_time"] == t0
        assert created["account"] == {"donation_id": "d1"}

        clock.advance(60000)
        performed = rpc(client, "PerformTransaction", {"id": "tx1"})["result"]
        assert performed["state"] == 2
        assert performed["perform_time"] == t0 + 60000

        clock.advance(1000)
        cancelled = rpc(client, "CancelTransaction", {"id": "tx1", "reason": 5})["result"]
        assert cancelled["state"] == -2
        assert cancelled["reason"] == 5
        assert cancelled["cancel_time"] == t0 + 61000
        assert cancelled["perform_time"] == t0 + 60000

        clock.advance(1000)
        assert rpc(client, "CancelTransaction", {"id": "tx1", "reason": 5})["result"] == cancelled

    donation = asyncio.run(store.get_donation("d1"))
    assert donation.state == DonationState.CANCELLED_AFTER_PERFORM


def test_idempotent_creation_keeps_single_row(app, store):
    seed_donation(store)
    with TestClient(app) as client:
        first = rpc(client, "CreateTransaction", create_params())["result"]
        second = rpc(client, "CreateTransaction", create_params())["result"]
    assert first == second
    items = asyncio.run(store.list_transactions(0, 2**62))
    assert len(items) == 1


def test_conflicting_creation_rejected(app, store):
    seed_donation(store)
    seed_donation(store, "d2", 1000000)
    with TestClient(app) as client:
        original = rpc(client, "CreateTransaction", create_params())["result"]
        data = rpc(client, "CreateTransaction", create_params(donation_id="d2"))
        assert data["error"]["code"] == -31008
        data = rpc(client, "CreateTransaction", create_params(amount=5))
        assert data["error"]["code"] == -31001
        assert rpc(client, "CheckTransaction", {"id": "tx1"})["result"] == original


def test_second_live_transaction_for_donation_rejected(app, store, clock):
    seed_donation(store)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        data = rpc(client, "CreateTransaction", create_params(external_id="tx2"))
        assert data["error"]["code"] == -31008

        clock.advance(TTL + 1)
        created = rpc(client, "CreateTransaction", create_params(external_id="tx2"))["result"]
        assert created["state"] == 1
        old = rpc(client, "CheckTransaction", {"id": "tx1"})["result"]
        assert old["state"] == -1
        assert old["reason"] == 4


def test_paid_donation_rejects_creation(app, store):
    seed_donation(store)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        rpc(client, "PerformTransaction", {"id": "tx1"})
        data = rpc(client, "CreateTransaction", create_params())
        assert data["error"]["code"] == -31008


def test_perform_idempotent(app, store, clock):
    seed_donation(store)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        clock.advance(10)
        first = rpc(client, "PerformTransaction", {"id": "tx1"})["result"]
        clock.advance(10)
        second = rpc(client, "PerformTransaction", {"id": "tx1"})["result"]
    assert first == second
    assert asyncio.run(store.get_donation("d1")).state == DonationState.PAID


def test_cancel_before_perform(app, store, clock):
    seed_donation(store)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        clock.advance(5)
        cancelled = rpc(client, "CancelTransaction", {"id": "tx1", "reason": 3})["result"]
        assert cancelled["state"] == -1
        assert cancelled["perform_time"] == 0
        assert rpc(client, "PerformTransaction", {"id": "tx1"})["error"]["code"] == -31008


def test_ttl_expiry_via_check_then_perform_fails(app, store, clock):
    seed_donation(store)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        clock.advance(TTL + 1)
        checked = rpc(client, "CheckTransaction", {"id": "tx1"})["result"]
        assert checked["state"] == -1
        assert checked["reason"] == 4
        assert rpc(client, "PerformTransaction", {"id": "tx1"})["error"]["code"] == -31008


def test_ttl_expiry_via_perform_and_cancel(app, store, clock):
    seed_donation(store)
    seed_donation(store, "d2", 1000000)
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        rpc(client, "CreateTransaction", create_params(external_id="tx2", donation_id="d2"))
        clock.advance(TTL + 1)

        assert rpc(client, "PerformTransaction", {"id": "tx1"})["error"]["code"] == -31008
        assert rpc(client, "CheckTransaction", {"id": "tx1"})["result"]["reason"] == 4

        cancelled = rpc(client, "CancelTransaction", {"id": "tx2", "reason": 5})["result"]
        assert cancelled["state"] == -1
        assert cancelled["reason"] == 4
    assert asyncio.run(store.get_donation("d2")).state == DonationState.CANCELLED_BEFORE_PERFORM


def test_not_found(app):
    with TestClient(app) as client:
        for method in ("PerformTransaction", "CancelTransaction", "CheckTransaction"):
            data = rpc(client, method, {"id": "ghost", "reason": 1})
            assert data["error"]["code"] == -31003
            assert data["error"]["data"] == "id"


def test_get_statement(app, store, clock):
    seed_donation(store)
    seed_donation(store, "d2", 1000000)
    t0 = clock.now
    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        clock.advance(100)
        rpc(client, "CreateTransaction", create_params(external_id="tx2", donation_id="d2"))
        data = rpc(client, "GetStatement", {"from": t0, "to": t0 + 100})["result"]
        assert [tx["transaction"] for tx in data["transactions"]] == ["tx1", "tx2"]
        data = rpc(client, "GetStatement", {"from": t0 + 1, "to": t0 + 100})["result"]
        assert [tx["transaction"] for tx in data["transactions"]] == ["tx2"]


def test_internal_error_is_enveloped(app, store, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("db is down")

    monkeypatch.setattr(store, "get_transaction", broken)
    with TestClient(app) as client:
        data = rpc(client, "CheckTransaction", {"id": "tx1"}, request_id=42)
    assert data["id"] == 42
    assert data["error"]["code"] == -32400


def test_unauthenticated_bad_json_gets_auth_error(app):
    with TestClient(app) as client:
        response = client.post("/payme/merchant", content=b"{oops", headers=auth_headers("wrong"))
    assert response.json()["error"]["code"] == -32504


def test_create_without_id_checks_account_and_amount_first(app, store):
    seed_donation(store)
    with TestClient(app) as client:
        data = rpc(client, "CreateTransaction", {"account": {"donation_id": "nope"}, "amount": 1000000})
        assert data["error"]["code"] == -31050
        data = rpc(client, "CreateTransaction", {"account": {"donation_id": "d1"}, "amount": 5})
        assert data["error"]["code"] == -31001
        data = rpc(client, "CreateTransaction", {"account": {"donation_id": "d1"}, "amount": 1000000})
        assert data["error"]["code"] == -31003


def test_failed_donation_update_rolls_back_perform(app, store, clock):
    seed_donation(store)
    failures = {"left": 1}

    def fail_donation_update(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE donations") and failures["left"]:
            failures["left"] -= 1
            raise RuntimeError("donation update failed")

    with TestClient(app) as client:
        rpc(client, "CreateTransaction", create_params())
        clock.advance(10)

        event.listen(store.engine.sync_engine, "before_cursor_execute", fail_donation_update)
        try:
            data = rpc(client, "PerformTransaction", {"id": "tx1"})
        finally:
            event.remove(store.engine.sync_engine, "before_cursor_execute", fail_donation_update)
        assert data["error"]["code"] == -32400
        assert rpc(client, "CheckTransaction", {"id": "tx1"})["result"]["state"] == 1

        performed = rpc(client, "PerformTransaction", {"id": "tx1"})["result"]
        assert performed["state"] == 2
        assert rpc(client, "CreateTransaction", create_params(external_id="tx2"))["error"]["code"] == -31008

    assert asyncio.run(store.get_donation("d1")).state == DonationState.PAID
    assert asyncio.run(store.get_transaction("tx2")) is None
