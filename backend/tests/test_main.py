from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from app.domain import (
    BridgeDescriptor,
    BridgeResult,
    BridgeType,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryResult,
    DiscoveryStats,
)
from app.main import _monitor_service, app
from app.services.reconciliation import ReconciliationEngine
from ingestion.errors import (
    AllSourcesFailedError,
    DiscoveryFailedError,
    DiscoveryInProgressError,
)
from ingestion.resilience import RetryState, RetryStatus


@pytest.fixture
def client():
    """Test client that cleans up dependency overrides after each test."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_service(make_claim, make_transfer):
    service = MagicMock()
    claims = [make_claim(claim_num=1), make_claim(claim_num=2, amount="1")]
    service.aggregated = ReconciliationEngine().reconcile(claims, [make_transfer()])
    service.is_refreshing = False
    service.is_busy = False
    service.load_cached_async = AsyncMock(return_value=None)
    service.default_options.return_value = DiscoveryOptions(limit=100, range_hours=24.0)
    app.dependency_overrides[_monitor_service] = lambda: service
    return service


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_bridges(client, mock_service):
    """Verify the /bridges endpoint lists configured bridge descriptors."""
    mock_service.registry.bridges = [
        BridgeDescriptor(
            key="USDC_EXPORT",
            address="0x14982dc69e62508b3e4848129a55d6B1960b4Db0",
            type=BridgeType.EXPORT,
            network_key="ETHEREUM",
            home_network="Ethereum",
            foreign_network="3DPass",
            home_token_symbol="USDC",
        )
    ]

    response = client.get("/bridges")

    assert response.status_code == 200
    payload = response.json()
    assert payload["total"] == 1
    assert payload["items"][0]["type"] == "export"
    assert payload["items"][0]["home_token_symbol"] == "USDC"


def test_get_aggregated(client, mock_service):
    """Verify /aggregated returns completed and suspicious records with mismatch labels."""
    response = client.get("/aggregated")

    assert response.status_code == 200
    payload = response.json()
    assert payload["fraud_detected"] is True
    assert payload["stats"]["completed_transfers"] == 1
    suspicious = payload["suspicious_claims"][0]
    assert suspicious["claim"]["claim_num"] == 2
    assert suspicious["reason"] == "no_matching_transfer"
    assert suspicious["duplicate_of"] == 1
    mock_service.load_cached_async.assert_not_called()


def test_get_aggregated_falls_back_to_cache(client, mock_service):
    """Verify /aggregated hydrates from the cache before the first discovery."""
    mock_service.aggregated = None

    response = client.get("/aggregated")

    assert response.status_code == 200
    assert response.json()["completed_transfers"] == []
    mock_service.load_cached_async.assert_awaited_once_with()


def test_get_aggregated_skips_cache_while_busy(client, mock_service):
    """Verify /aggregated leaves service state alone while a mutation is in flight."""
    mock_service.aggregated = None
    mock_service.is_busy = True

    response = client.get("/aggregated")

    assert response.status_code == 200
    assert response.json()["stats"]["total_claims"] == 0
    mock_service.load_cached_async.assert_not_called()


def test_get_progress_includes_retry_state(client, mock_service):
    """Verify /progress exposes counters and per-bridge retry status."""
    mock_service.progress = DiscoveryProgress(bridges_completed=2, total_bridges=5, events_found=9)
    mock_service.is_refreshing = True
    mock_service.retry_status = {
        "BUSD_EXPORT": RetryStatus(
            attempt=2,
            max_attempts=5,
            delay=2.0,
            state=RetryState.BACKOFF,
            source="https://bsc-dataseed1.binance.org",
            error="HTTP 429 Too Many Requests",
        )
    }

    response = client.get("/progress")

    assert response.status_code == 200
    payload = response.json()
    assert payload["bridges_completed"] == 2
    assert payload["is_refreshing"] is True
    assert payload["retries"]["BUSD_EXPORT"]["state"] == "backoff"
    assert payload["retries"]["BUSD_EXPORT"]["attempt"] == 2


def test_get_cache_status(client, mock_service):
    mock_service.cache_status = {
        "has_cached_data": True,
        "is_showing_cached": True,
        "is_refreshing": False,
        "last_updated": None,
        "cache_age": None,
    }

    response = client.get("/cache/status")

    assert response.status_code == 200
    assert response.json()["has_cached_data"] is True


def test_run_discovery(client, mock_service):
    """Verify POST /discovery forwards options and reports per-bridge outcomes."""
    mock_service.refresh = AsyncMock(return_value=mock_service.aggregated)
    bridge = BridgeDescriptor(
        key="USDC_EXPORT",
        address="0x14982dc69e62508b3e4848129a55d6B1960b4Db0",
        type=BridgeType.EXPORT,
        network_key="ETHEREUM",
        home_network="Ethereum",
        foreign_network="3DPass",
    )
    mock_service.last_discovery = DiscoveryResult(
        bridge_results=[BridgeResult(bridge=bridge, source="https://rpc", range_hours=6.0)],
        stats=DiscoveryStats(total_bridges=1, successful_bridges=1),
    )

    response = client.post("/discovery", json={"force": True, "range_hours": 6})

    assert response.status_code == 200
    payload = response.json()
    assert payload["stats"]["successful_bridges"] == 1
    assert payload["bridges"][0]["bridge_key"] == "USDC_EXPORT"
    assert payload["aggregated"]["stats"]["suspicious_claims"] == 1
    args, kwargs = mock_service.refresh.call_args
    assert args == (True,)
    assert kwargs["options"] == DiscoveryOptions(limit=100, range_hours=6.0)
    assert kwargs["load_claim_details"] is True


def test_run_discovery_conflict(client, mock_service):
    """Verify a second discovery while one is running returns 409."""
    mock_service.refresh = AsyncMock(side_effect=DiscoveryInProgressError("busy"))

    response = client.post("/discovery")

    assert response.status_code == 409


def test_run_discovery_all_bridges_failed(client, mock_service):
    mock_service.refresh = AsyncMock(
        side_effect=DiscoveryFailedError({"USDC_EXPORT": "All sources failed"})
    )

    response = client.post("/discovery", json={})

    assert response.status_code == 502
    assert "USDC_EXPORT" in response.json()["detail"]


def test_refresh_claim(client, mock_service, make_claim):
    """Verify a claim refresh returns the updated lifecycle fields."""
    claim = make_claim(claim_num=3)
    refreshed = make_claim(claim_num=3, finished=True)
    mock_service.find_claim.return_value = claim
    mock_service.refresh_claim = AsyncMock(return_value=refreshed)

    response = client.post(f"/claims/{claim.bridge_address}/3/refresh")

    assert response.status_code == 200
    assert response.json()["finished"] is True
    mock_service.find_claim.assert_called_once_with(claim.bridge_address, 3)


def test_refresh_claim_not_found(client, mock_service):
    mock_service.find_claim.return_value = None

    response = client.post("/claims/0xabc/9/refresh")

    assert response.status_code == 404


def test_refresh_claim_source_failure(client, mock_service, make_claim):
    mock_service.find_claim.return_value = make_claim()
    mock_service.refresh_claim = AsyncMock(side_effect=AllSourcesFailedError("claim", []))

    response = client.post(f"/claims/{make_claim().bridge_address}/1/refresh")

    assert response.status_code == 502


def test_clear_cache(client, mock_service):
    mock_service.clear_cache.return_value = 6

    response = client.delete("/cache")

    assert response.status_code == 200
    assert response.json() == {"removed": 6}
