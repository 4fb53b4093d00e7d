from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.domain import BridgeType, ClaimOutcome, TransferEventType
from ingestion.errors import AmountFormatError
from ingestion.normalize import (
    checksum_address,
    claim_from_dict,
    claim_to_dict,
    is_checksummed,
    normalize_amount,
    normalize_amount_for_storage,
    normalize_data,
    transfer_from_dict,
    transfer_to_dict,
)

from conftest import SENDER, TXID


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (1000, "1000"),
        ("1000", "1000"),
        (" 1000 ", "1000"),
        ("0x3e8", "1000"),
        (1000.0, "1000"),
        (Decimal("1000"), "1000"),
        ({"_hex": "0x3e8"}, "1000"),
        ({"hex": "0x3E8"}, "1000"),
        (SimpleNamespace(_hex="0x3e8"), "1000"),
        ("1e3", "1000"),
        (None, None),
        ("", None),
    ],
)
def test_normalize_amount_accepts_numeric_shapes(value, expected):
    assert normalize_amount(value) == expected


@pytest.mark.parametrize("value", ["abc", "1.5", -1, "-5", True, 1.25, {"value": 1}, [1]])
def test_normalize_amount_rejects_invalid_values(value):
    with pytest.raises(AmountFormatError):
        normalize_amount(value)


def test_normalize_amount_for_storage_keeps_raw_text():
    """Malformed amounts survive ingestion so reconciliation can flag them."""
    assert normalize_amount_for_storage("0x10") == "16"
    assert normalize_amount_for_storage("not-a-number") == "not-a-number"


def test_normalize_data_collapses_empty_payloads():
    assert normalize_data(None) is None
    assert normalize_data("") is None
    assert normalize_data("0x") is None
    assert normalize_data(b"") is None
    assert normalize_data(b"\x01\x02") == "0x0102"
    assert normalize_data("0xabcd") == "0xabcd"


def test_checksum_helpers():
    expected = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
    assert checksum_address(SENDER) == expected
    assert checksum_address("not-an-address") is None
    assert is_checksummed(expected) is True
    assert is_checksummed(SENDER) is False


def test_transfer_from_dict_accepts_camel_case():
    transfer = transfer_from_dict(
        {
            "eventType": "NewExpatriation",
            "bridgeAddress": "0xBridge",
            "networkKey": "ETHEREUM",
            "fromNetwork": "Ethereum",
            "toNetwork": "3DPass",
            "senderAddress": SENDER,
            "recipientAddress": SENDER,
            "amount": {"_hex": "0x64"},
            "reward": "0",
            "data": "0x",
            "transactionHash": TXID,
            "blockNumber": "0x10",
            "logIndex": 3,
            "timestamp": "1700000000",
            "bridgeType": "export",
        }
    )

    assert transfer.event_type == TransferEventType.EXPATRIATION
    assert transfer.amount == "100"
    assert transfer.data is None
    assert transfer.block_number == 16
    assert transfer.log_index == 3
    assert transfer.timestamp == 1_700_000_000
    assert transfer.bridge_type == BridgeType.EXPORT


def test_transfer_dict_round_trip(make_transfer):
    transfer = make_transfer(amount="0x0f4240")

    restored = transfer_from_dict(transfer_to_dict(transfer))

    assert restored == make_transfer(amount="1000000")


def test_claim_dict_round_trip(make_claim):
    claim = make_claim(current_outcome=ClaimOutcome.NO, finished=True, yes_stake="5")

    restored = claim_from_dict(claim_to_dict(claim))

    assert restored == claim


def test_claim_from_dict_requires_identity():
    with pytest.raises(ValueError):
        claim_from_dict({"bridge_address": "0xBridge"})
    with pytest.raises(ValueError):
        transfer_from_dict({"bridge_address": "0xBridge", "event_type": "NewExpatriation"})


def test_claim_from_dict_maps_outcome_codes():
    claim = claim_from_dict({"bridgeAddress": "0xBridge", "claimNum": "4", "currentOutcome": 0})

    assert claim.claim_num == 4
    assert claim.current_outcome == ClaimOutcome.NO
