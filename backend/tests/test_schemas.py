from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from app.domain import ReconciliationStatus
from app.schemas import AggregatedData, Bridge, Claim, DiscoveryRequest, RetryStatus, Transfer
from app.services.reconciliation import ReconciliationEngine, result_to_dict
from ingestion.resilience import RetryState
from ingestion.resilience import RetryStatus as DomainRetryStatus


def test_transfer_coerces_amount_fields_to_strings():
    """Verify that numeric amounts are serialized as decimal strings."""
    transfer = Transfer(
        event_type="NewExpatriation",
        bridge_address="0x1",
        network_key="ETHEREUM",
        from_network="Ethereum",
        to_network="3DPass",
        amount=Decimal("1000000"),
        reward=25,
        transaction_hash="0xabc",
        block_number=1,
    )
    assert transfer.amount == "1000000"
    assert transfer.reward == "25"


def test_claim_keeps_missing_stakes_as_none():
    claim = Claim(
        bridge_address="0x1",
        network_key="THREEDPASS",
        claim_num=3,
        current_outcome="yes",
        yes_stake=100,
    )
    assert claim.yes_stake == "100"
    assert claim.no_stake is None
    assert claim.finished is False


def test_bridge_reads_enum_type_from_descriptor(make_registry):
    """Verify that bridge descriptors are exposed with plain enum values."""
    bridge = Bridge.model_validate(make_registry(1).bridges[0])
    assert bridge.type == "export"
    assert bridge.key == "BRIDGE_1"


def test_retry_status_reads_domain_state():
    status = RetryStatus.model_validate(
        DomainRetryStatus(attempt=1, max_attempts=5, delay=1.0, state=RetryState.BACKOFF)
    )
    assert status.state == "backoff"


def test_aggregated_data_accepts_engine_output(make_claim, make_transfer):
    """Verify that the reconciliation output validates against the API schema."""
    claims = [make_claim(claim_num=1), make_claim(claim_num=2, reward="5000")]
    result = ReconciliationEngine().reconcile(claims, [make_transfer()])

    payload = AggregatedData.model_validate(result_to_dict(result))

    assert payload.stats.completed_transfers == 1
    assert payload.completed_transfers[0].status == ReconciliationStatus.COMPLETED.value
    assert payload.suspicious_claims[0].duplicate_of == 1
    assert payload.fraud_detected is True


@pytest.mark.parametrize("body", [{"range_hours": 0}, {"limit": 0}])
def test_discovery_request_rejects_non_positive_values(body):
    with pytest.raises(ValidationError):
        DiscoveryRequest(**body)
