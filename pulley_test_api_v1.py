"""
Pulley Protocol - API Test Suite
Version: 1.0.0
"""

import pytest
from fastapi.testclient import TestClient

import pulley_main_api
from pulley_config_v1 import ApiConfig
from pulley_main_api import AppState, app

ADMIN = "pulley-admin"
ASSET = "USDC"
VAULT = "nest-vault-chain"
ORDERS = "limit-order-chain"

ADMIN_KEY = {"X-API-Key": "admin-key"}
STRANGER_KEY = {"X-API-Key": "stranger-key"}
VAULT_RELAY = {"X-Relay-Key": "vault-relay-key"}
ORDERS_RELAY = {"X-Relay-Key": "orders-relay-key"}

API_CONFIG = ApiConfig(
    operator_keys={"admin-key": ADMIN, "stranger-key": "mallory"},
    relay_keys={"vault-relay-key": VAULT, "orders-relay-key": ORDERS}
)

@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(pulley_main_api, "app_state", AppState(api_config=API_CONFIG))
    with TestClient(app) as test_client:
        yield test_client

def protocol():
    return pulley_main_api.app_state.protocol

def dispatch_vault_request(amount: int = 2_000) -> str:
    p = protocol()
    p.assets.mint(ASSET, p.allocator.identity, 10_000)
    p.receive_funds_from_trading_pool(ADMIN)
    return p.deploy_to_nest_vault(ADMIN, ASSET, amount)

def message(request_id: str, message_type: int = 1, success: bool = True, pnl: int = 0):
    return {
        "message_type": message_type,
        "request_id": request_id,
        "success": success,
        "pnl": pnl
    }

class TestHealthEndpoints:

    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Pulley Protocol"

    def test_health(self, client):
        dispatch_vault_request()

        response = client.get("/health")
        body = response.json()

        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["failed_checks"] == 0
        assert body["pending_requests"] == 1
        assert body["ledger_integrity"] == True

    def test_state(self, client):
        dispatch_vault_request()

        body = client.get("/api/v1/state").json()

        assert body["token"]["insurance_funds"] == 1_000
        assert body["allocator"]["allocations"][ASSET] == {'insurance': 1_000, 'vault': 2_500, 'orders': 4_500}

    def test_metrics(self, client):
        dispatch_vault_request()

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "pulley_crosschain_requests_total" in response.text

class TestProviderEndpoints:

    def test_unknown_provider(self, client):
        assert client.get("/api/v1/providers/nobody").status_code == 404

    def test_provider_after_deposit(self, client):
        p = protocol()
        p.assets.mint(ASSET, "alice", 1_000)
        p.assets.approve(ASSET, "alice", p.engine.identity, 1_000)
        p.provide_liquidity("alice", ASSET, 1_000)

        body = client.get("/api/v1/providers/alice").json()

        assert body["assets_deposited"] == 1_000
        assert body["token_balance"] == 1_000
        assert body["active"] == True

class TestInboundMessages:

    def post_message(self, client, body, headers=VAULT_RELAY):
        return client.post("/api/v1/cross-chain/messages", json=body, headers=headers)

    def test_response_resolves_request(self, client):
        request_id = dispatch_vault_request()

        response = self.post_message(client, message(request_id, pnl=300))

        assert response.status_code == 200
        assert response.json()["status"] == "resolved"
        assert client.get(f"/api/v1/cross-chain/requests/{request_id}").json()["pnl"] == 300
        assert client.get("/api/v1/cross-chain/requests", params={"pending_only": True}).json() == []

    def test_duplicate_delivery_conflicts(self, client):
        request_id = dispatch_vault_request()
        self.post_message(client, message(request_id))

        response = self.post_message(client, message(request_id))

        assert response.status_code == 409
        assert response.json()["error"] == "RequestAlreadyProcessed"

    def test_origin_comes_from_relay_key(self, client):
        request_id = dispatch_vault_request()

        response = self.post_message(client, {**message(request_id), "origin": VAULT}, headers=ORDERS_RELAY)

        assert response.status_code == 403
        assert response.json()["error"] == "InvalidSourceChain"
        assert protocol().allocator.get_request(request_id).status.value == "dispatched"

    @pytest.mark.parametrize("headers", [{}, {"X-Relay-Key": "forged"}, ADMIN_KEY])
    def test_unauthenticated_response_refused(self, client, headers):
        request_id = dispatch_vault_request()

        response = self.post_message(client, message(request_id, pnl=10 ** 9), headers=headers)

        assert response.status_code == 401
        assert protocol().allocator.get_request(request_id).status.value == "dispatched"
        assert protocol().ledger.total_pool_value == 0

    def test_mismatched_message_type(self, client):
        request_id = dispatch_vault_request()

        response = self.post_message(client, message(request_id, message_type=2))

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidMessageType"

    def test_unknown_request(self, client):
        response = self.post_message(client, message("f" * 64))

        assert response.status_code == 404

    def test_invalid_message_type_rejected_by_schema(self, client):
        response = self.post_message(client, message("f" * 64, message_type=7))

        assert response.status_code == 422

class TestUpkeep:

    def fund_pool(self, amount: int):
        p = protocol()
        p.assets.mint(ASSET, "trader", amount)
        p.assets.approve(ASSET, "trader", p.ledger.identity, amount)
        p.deposit_asset("trader", ASSET, amount)

    def test_admin_sweeps(self, client):
        self.fund_pool(12_000)

        response = client.post("/api/v1/upkeep", headers=ADMIN_KEY)

        assert response.status_code == 200
        assert response.json() == {ASSET: 12_000}

    def test_identity_comes_from_key(self, client):
        self.fund_pool(12_000)

        response = client.post("/api/v1/upkeep", json={"caller": ADMIN}, headers=STRANGER_KEY)

        assert response.status_code == 403
        assert response.json()["error"] == "NotPermitted"
        assert protocol().ledger.get_pool_balance(ASSET) == 12_000

    @pytest.mark.parametrize("headers", [{}, {"X-API-Key": "forged"}, VAULT_RELAY])
    def test_anonymous_upkeep_refused(self, client, headers):
        self.fund_pool(12_000)

        response = client.post("/api/v1/upkeep", json={"caller": ADMIN}, headers=headers)

        assert response.status_code == 401
        assert protocol().ledger.get_pool_balance(ASSET) == 12_000

    def test_nothing_due(self, client):
        response = client.post("/api/v1/upkeep", headers=ADMIN_KEY)

        assert response.status_code == 200
        assert response.json() == {}

class TestApiConfig:

    def test_no_configured_keys_refuses_everything(self, monkeypatch):
        monkeypatch.delenv("PULLEY_API_CONFIG", raising=False)
        monkeypatch.setattr(pulley_main_api, "app_state", AppState())

        with TestClient(app) as test_client:
            assert test_client.post("/api/v1/upkeep", headers=ADMIN_KEY).status_code == 401

    def test_keys_loaded_from_environment(self, monkeypatch):
        monkeypatch.setenv("PULLEY_API_CONFIG", '{"operator_keys": {"env-key": "pulley-admin"}}')

        config = ApiConfig.from_env()

        assert config.operator_keys == {"env-key": ADMIN}
        assert config.relay_keys == {}

if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
