import pytest
from fastapi.testclient import TestClient

from conftest import checking_account
from main import (
    app,
    get_capabilities,
    get_db,
    get_dispatch,
    get_provider_client,
    get_session_factory,
)
from resolver import detect_capabilities
from sync import inline_dispatch


@pytest.fixture
def client(engine, session_factory, provider):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    capabilities = detect_capabilities(engine)
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_provider_client] = lambda: provider
    app.dependency_overrides[get_dispatch] = lambda: inline_dispatch
    app.dependency_overrides[get_capabilities] = lambda: capabilities
    yield TestClient(app)
    app.dependency_overrides.clear()


def _seed(provider) -> None:
    provider.items["item-1"] = {
        "id": "item-1",
        "status": "UPDATED",
        "connector": {"id": 201, "name": "Banco Exemplo"},
    }
    provider.accounts["item-1"] = [checking_account("acc-1")]
    provider.transactions["acc-1"] = [
        {"id": "tx-1", "date": "2026-10-10T12:00:00Z", "description": "Padaria Real", "amount": -30},
    ]


def test_create_connection_fans_out_sync(client, provider) -> None:
    _seed(provider)

    res = client.post("/api/connections", json={"item_id": "item-1"})

    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "connected"
    assert body["institution"] == "Banco Exemplo"
    assert body["sync_dispatched"] == 3

    accounts = client.get("/api/accounts").json()
    assert accounts["total"] == 1000.0
    assert accounts["source"] == "ledger"
    assert [group["institution"] for group in accounts["institutions"]] == ["Banco Exemplo"]
    assert accounts["institutions"][0]["accounts"][0]["name"] == "Conta Corrente"

    listed = client.get("/api/connections").json()
    assert [c["item_id"] for c in listed] == ["item-1"]
    assert listed[0]["last_sync_status"] == "ok"


def test_create_connection_rejects_bad_input(client, provider) -> None:
    assert client.post("/api/connections", json={"item_id": "   "}).status_code == 400
    assert (
        client.post("/api/connections", json={"item_id": "x", "provider": "other"}).status_code
        == 422
    )
    assert provider.calls == []


def test_create_connection_provider_down_is_bad_gateway(client, provider) -> None:
    provider.failing.add("get_item")
    res = client.post("/api/connections", json={"item_id": "item-1"})
    assert res.status_code == 502


def test_manual_sync_is_rate_limited(client, provider) -> None:
    _seed(provider)
    provider.items["item-1"]["status"] = "UPDATING"
    connection_id = client.post("/api/connections", json={"item_id": "item-1"}).json()["id"]

    first = client.post(f"/api/connections/{connection_id}/sync")
    second = client.post(f"/api/connections/{connection_id}/sync")

    assert first.status_code == 200
    assert first.json()["last_sync_status"] == "ok"
    assert second.status_code == 429
    retry_after = second.json()["retry_after_secs"]
    assert 0 < retry_after <= 300
    assert second.headers["Retry-After"] == str(retry_after)


def test_unknown_connection_is_not_found(client) -> None:
    assert client.post("/api/connections/999/sync").status_code == 404
    assert client.delete("/api/connections/999").status_code == 404


def test_invalid_user_header_is_rejected(client) -> None:
    assert client.get("/api/accounts", headers={"X-User-Id": "abc"}).status_code == 400
    assert client.get("/api/accounts", headers={"X-User-Id": "0"}).status_code == 400


def test_reads_are_scoped_to_user(client, provider) -> None:
    _seed(provider)
    client.post("/api/connections", json={"item_id": "item-1"})

    other = client.get("/api/accounts", headers={"X-User-Id": "2"}).json()
    assert other["institutions"] == []
    assert client.get("/api/transactions", headers={"X-User-Id": "2"}).json()["total"] == 0


def test_webhook_for_other_events_is_ignored(client, provider) -> None:
    res = client.post("/api/webhooks/provider", json={"event": "item/created", "itemId": "item-1"})
    assert res.status_code == 200
    assert res.json()["handled"] is False
    assert provider.calls == []


def test_webhook_resyncs_known_item(client, provider) -> None:
    _seed(provider)
    provider.items["item-1"]["status"] = "WAITING_USER_ACTION"
    client.post("/api/connections", json={"item_id": "item-1"})
    provider.items["item-1"]["status"] = "UPDATED"

    res = client.post("/api/webhooks/provider", json={"event": "item/updated", "itemId": "item-1"})

    assert res.json() == {"ok": True, "handled": True, "status": "connected", "dispatched": 3}
    assert client.get("/api/transactions").json()["total"] == 1


def test_analytics_reject_bad_parameters(client) -> None:
    assert client.get("/api/analytics/net-worth?granularity=hourly").status_code == 400
    assert client.get("/api/analytics/net-worth?periods=0").status_code == 400
    assert client.get("/api/analytics/revenue-vs-expenses?granularity=fortnight").status_code == 400
    assert client.get("/api/analytics/spending-by-category?days=400").status_code == 400
    assert client.get("/api/analytics/net-worth?granularity=weekly&periods=4").status_code == 200


def test_transaction_category_update_is_canonicalized(client, provider) -> None:
    _seed(provider)
    client.post("/api/connections", json={"item_id": "item-1"})
    tx = client.get("/api/transactions").json()["items"][0]
    assert tx["category"] == "Food"

    res = client.patch(f"/api/transactions/{tx['id']}/category", json={"category": "transprt"})

    assert res.status_code == 200
    assert res.json()["category"] == "Transport"
    filtered = client.get("/api/transactions?category=transport").json()
    assert [item["id"] for item in filtered["items"]] == [tx["id"]]
    assert filtered["items"][0]["category_is_manual"] is True
    assert client.patch("/api/transactions/999/category", json={"category": "Food"}).status_code == 404


def test_transactions_reject_bad_dates(client) -> None:
    assert client.get("/api/transactions?start=not-a-date").status_code == 400


def test_unknown_card_invoices_is_not_found(client) -> None:
    assert client.get("/api/cards/42/invoices").status_code == 404
