"""Matching of claims against the transfers they reference.

The engine is a pure function of its inputs: it never performs I/O, never
mutates the records it receives and returns the same classification for the
same input. Malformed fields downgrade a claim to suspicious instead of
raising.
"""

from __future__ import annotations

from dataclasses import fields
from typing import Any, Iterable, Mapping, Sequence

from eth_utils import is_hex_address
from loguru import logger

from app.domain import (
    BridgeType,
    Claim,
    ParameterMismatch,
    ReconciledRecord,
    ReconciliationResult,
    ReconciliationStats,
    ReconciliationStatus,
    SuggestedClaim,
    TransferEvent,
    TransferEventType,
)
from ingestion.errors import AmountFormatError
from ingestion.normalize import (
    claim_from_dict,
    checksum_address,
    claim_to_dict,
    is_checksummed,
    normalize_amount,
    normalize_data,
    transfer_from_dict,
    transfer_to_dict,
)

NO_MATCHING_TRANSFER = "no_matching_transfer"
PARAMETER_MISMATCH = "txid_match_but_parameter_mismatch"

Comparison = tuple[bool, str]


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _raw_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return repr(value)


def compare_amounts(claim_amount: Any, transfer_amount: Any) -> Comparison:
    if _is_missing(claim_amount) or _is_missing(transfer_amount):
        return False, "missing_amount"
    try:
        claimed = normalize_amount(claim_amount)
        transferred = normalize_amount(transfer_amount)
    except AmountFormatError:
        return False, "conversion_error"
    if claimed != transferred:
        return False, "different_values"
    if _raw_text(claim_amount) != _raw_text(transfer_amount):
        return True, "format_mismatch_but_equal"
    return True, "exact_match"


def _has_bad_checksum(address: str) -> bool:
    body = address[2:] if address.lower().startswith("0x") else address
    mixed_case = body != body.lower() and body != body.upper()
    return is_hex_address(address) and mixed_case and not is_checksummed(address)


def compare_addresses(claim_address: Any, transfer_address: Any) -> Comparison:
    """Case-insensitive comparison that reports how the spellings differ."""
    if _is_missing(claim_address) or _is_missing(transfer_address):
        return False, "missing_address"
    claimed = str(claim_address).strip()
    transferred = str(transfer_address).strip()
    if claimed == transferred:
        return True, "exact_match"
    claimed_key = checksum_address(claimed) or claimed.lower()
    transferred_key = checksum_address(transferred) or transferred.lower()
    if claimed_key != transferred_key:
        return False, "different_addresses"
    if _has_bad_checksum(claimed) or _has_bad_checksum(transferred):
        return True, "checksummed_format_mismatch"
    if is_checksummed(claimed) or is_checksummed(transferred):
        return True, "mixed_checksum_format"
    return True, "both_non_checksummed"


def compare_rewards(claim_reward: Any, transfer_reward: Any) -> Comparison:
    """A claim may ask for less reward than the transfer offered, never more."""
    if _is_missing(transfer_reward):
        return False, "transfer_reward_missing"
    claim_value = "0" if _is_missing(claim_reward) else claim_reward
    try:
        claimed = int(normalize_amount(claim_value) or "0")
        offered = int(normalize_amount(transfer_reward) or "0")
    except AmountFormatError:
        return False, "conversion_error"
    if claimed > offered:
        return False, "claim_reward_exceeds_transfer_reward"
    if claimed == offered:
        if _raw_text(claim_value) != _raw_text(transfer_reward):
            return True, "format_mismatch_but_equal"
        return True, "exact_match"
    return True, "claim_reward_below_transfer_reward"


def compare_data(claim_data: Any, transfer_data: Any) -> Comparison:
    claimed = normalize_data(claim_data)
    transferred = normalize_data(transfer_data)
    if claimed is None and transferred is None:
        return True, "both_empty"
    if claimed == transferred:
        return True, "exact_match"
    return False, "data_mismatch"


def compare_timestamps(claim_txts: Any, transfer_timestamp: Any) -> Comparison:
    if claim_txts is None or transfer_timestamp is None:
        return True, "not_available"
    try:
        if int(claim_txts) == int(transfer_timestamp):
            return True, "exact_match"
    except (TypeError, ValueError):
        pass
    return False, "timestamp_mismatch"


def _expected_event_type(claim: Claim) -> TransferEventType | None:
    if claim.bridge_type == BridgeType.EXPORT:
        return TransferEventType.REPATRIATION
    if claim.bridge_type in (BridgeType.IMPORT, BridgeType.IMPORT_WRAPPER):
        return TransferEventType.EXPATRIATION
    return None


def _origin_network(claim: Claim) -> str | None:
    if claim.bridge_type == BridgeType.EXPORT:
        return claim.foreign_network
    if claim.bridge_type in (BridgeType.IMPORT, BridgeType.IMPORT_WRAPPER):
        return claim.home_network
    return None


def check_flow(claim: Claim, transfer: TransferEvent) -> Comparison:
    """The transfer must travel from the claim's counterpart network into the claim's network."""
    if transfer.from_network and transfer.from_network == transfer.to_network:
        return False, "invalid_flow"
    expected_type = _expected_event_type(claim)
    if expected_type is not None and transfer.event_type != expected_type:
        return False, "invalid_flow"
    destination = claim.destination_network
    if destination and transfer.to_network != destination:
        return False, "invalid_flow"
    origin = _origin_network(claim)
    if origin and transfer.from_network != origin:
        return False, "invalid_flow"
    return True, "valid_flow"


def compare_parameters(claim: Claim, transfer: TransferEvent) -> ParameterMismatch:
    amount_match, amount_reason = compare_amounts(claim.amount, transfer.amount)
    sender_match, sender_reason = compare_addresses(claim.sender_address, transfer.sender_address)
    recipient_match, recipient_reason = compare_addresses(
        claim.recipient_address, transfer.recipient_address
    )
    reward_valid, reward_reason = compare_rewards(claim.reward, transfer.reward)
    data_valid, data_reason = compare_data(claim.data, transfer.data)
    timestamp_match, timestamp_reason = compare_timestamps(claim.txts, transfer.timestamp)
    flow_valid, flow_reason = check_flow(claim, transfer)
    return ParameterMismatch(
        amount_match=amount_match,
        amount_match_reason=amount_reason,
        sender_match=sender_match,
        sender_match_reason=sender_reason,
        recipient_match=recipient_match,
        recipient_match_reason=recipient_reason,
        reward_valid=reward_valid,
        reward_validation_reason=reward_reason,
        data_valid=data_valid,
        data_validation_reason=data_reason,
        timestamp_match=timestamp_match,
        timestamp_match_reason=timestamp_reason,
        is_valid_flow=flow_valid,
        flow_reason=flow_reason,
    )


def suggest_claim(transfer: TransferEvent) -> SuggestedClaim:
    return SuggestedClaim(
        txid=transfer.transaction_hash,
        txts=transfer.timestamp,
        sender_address=transfer.sender_address,
        recipient_address=transfer.recipient_address,
        amount=transfer.amount,
        reward=transfer.reward,
        data=transfer.data,
        to_network=transfer.to_network,
    )


def _claim_order(claim: Claim) -> tuple[int, str, str]:
    return (claim.claim_num, claim.network_key, claim.bridge_address.lower())


def _transfer_order(transfer: TransferEvent) -> tuple[int, int, str, str]:
    return (
        transfer.block_number,
        transfer.log_index,
        transfer.bridge_address.lower(),
        transfer.transaction_hash.lower(),
    )


def _txid_key(value: Any) -> str:
    return str(value or "").strip().lower()


class ReconciliationEngine:
    """Classifies claims and transfers into completed, suspicious and pending sets.

    Claims are visited in ascending ``(claim_num, network_key, bridge_address)``
    order. A transfer is consumed by the first claim that matches it on every
    dimension; later claims pointing at the same transfer are reported as
    suspicious with ``duplicate_of`` set to the winning claim number.
    """

    def reconcile(
        self, claims: Sequence[Claim], transfers: Sequence[TransferEvent]
    ) -> ReconciliationResult:
        unique_transfers: dict[tuple[str, str], TransferEvent] = {}
        for transfer in sorted(transfers, key=_transfer_order):
            unique_transfers.setdefault(transfer.identity, transfer)

        by_txid: dict[str, list[TransferEvent]] = {}
        for transfer in unique_transfers.values():
            by_txid.setdefault(_txid_key(transfer.transaction_hash), []).append(transfer)

        consumed: dict[tuple[str, str], int] = {}
        referenced: set[tuple[str, str]] = set()
        completed: list[ReconciledRecord] = []
        suspicious: list[ReconciledRecord] = []

        for claim in sorted(claims, key=_claim_order):
            record = self._classify(claim, by_txid, consumed, referenced)
            if record.status == ReconciliationStatus.COMPLETED:
                completed.append(record)
            else:
                suspicious.append(record)

        pending = [
            ReconciledRecord(
                status=ReconciliationStatus.PENDING,
                transfer=transfer,
                claim=None,
                suggested_claim=suggest_claim(transfer),
            )
            for identity, transfer in unique_transfers.items()
            if identity not in referenced
        ]

        stats = ReconciliationStats(
            total_claims=len(claims),
            total_transfers=len(unique_transfers),
            completed_transfers=len(completed),
            suspicious_claims=len(suspicious),
            pending_transfers=len(pending),
        )
        if suspicious:
            logger.info(
                "Reconciliation flagged {} suspicious claims out of {}",
                len(suspicious),
                len(claims),
            )
        return ReconciliationResult(
            completed_transfers=tuple(completed),
            suspicious_claims=tuple(suspicious),
            pending_transfers=tuple(pending),
            fraud_detected=any(record.is_fraudulent for record in suspicious),
            stats=stats,
        )

    def _candidates(
        self, claim: Claim, by_txid: dict[str, list[TransferEvent]]
    ) -> list[TransferEvent]:
        candidates = by_txid.get(_txid_key(claim.txid), []) if claim.txid else []
        destination = claim.destination_network
        if destination:
            candidates = [transfer for transfer in candidates if transfer.to_network == destination]
        return candidates

    def _classify(
        self,
        claim: Claim,
        by_txid: dict[str, list[TransferEvent]],
        consumed: dict[tuple[str, str], int],
        referenced: set[tuple[str, str]],
    ) -> ReconciledRecord:
        candidates = self._candidates(claim, by_txid)
        if not candidates:
            return ReconciledRecord(
                status=ReconciliationStatus.SUSPICIOUS,
                transfer=None,
                claim=claim,
                reason=NO_MATCHING_TRANSFER,
            )

        available = [transfer for transfer in candidates if transfer.identity not in consumed]
        if not available:
            winner = candidates[0]
            return ReconciledRecord(
                status=ReconciliationStatus.SUSPICIOUS,
                transfer=None,
                claim=claim,
                reason=NO_MATCHING_TRANSFER,
                duplicate_of=consumed[winner.identity],
            )

        compared = [(transfer, compare_parameters(claim, transfer)) for transfer in available]
        transfer, mismatch = next(
            ((item, result) for item, result in compared if not result.has_mismatches),
            compared[0],
        )
        referenced.add(transfer.identity)
        if mismatch.has_mismatches:
            return ReconciledRecord(
                status=ReconciliationStatus.SUSPICIOUS,
                transfer=transfer,
                claim=claim,
                reason=PARAMETER_MISMATCH,
                parameter_mismatch=mismatch,
            )

        consumed[transfer.identity] = claim.claim_num
        return ReconciledRecord(
            status=ReconciliationStatus.COMPLETED,
            transfer=transfer,
            claim=claim,
            parameter_mismatch=mismatch,
        )


def reconcile(
    claims: Iterable[Claim], transfers: Iterable[TransferEvent]
) -> ReconciliationResult:
    return ReconciliationEngine().reconcile(list(claims), list(transfers))


def record_to_dict(record: ReconciledRecord) -> dict[str, Any]:
    suggested = record.suggested_claim
    return {
        "status": record.status.value,
        "reason": record.reason,
        "duplicate_of": record.duplicate_of,
        "transfer": transfer_to_dict(record.transfer) if record.transfer else None,
        "claim": claim_to_dict(record.claim) if record.claim else None,
        "parameter_mismatch": (
            record.parameter_mismatch.to_dict() if record.parameter_mismatch else None
        ),
        "mismatches": [
            {"field": entry.field, "reason": entry.reason} for entry in record.mismatches()
        ],
        "suggested_claim": (
            {
                "txid": suggested.txid,
                "txts": suggested.txts,
                "sender_address": suggested.sender_address,
                "recipient_address": suggested.recipient_address,
                "amount": suggested.amount,
                "reward": suggested.reward,
                "data": suggested.data,
                "to_network": suggested.to_network,
            }
            if suggested
            else None
        ),
    }


def _mismatch_from_dict(payload: Mapping[str, Any]) -> ParameterMismatch:
    names = {item.name for item in fields(ParameterMismatch)}
    return ParameterMismatch(**{key: value for key, value in payload.items() if key in names})


def record_from_dict(payload: Mapping[str, Any]) -> ReconciledRecord:
    """Rebuild a record written by :func:`record_to_dict`."""
    transfer = payload.get("transfer")
    claim = payload.get("claim")
    mismatch = payload.get("parameter_mismatch")
    suggested = payload.get("suggested_claim")
    return ReconciledRecord(
        status=ReconciliationStatus(payload["status"]),
        transfer=transfer_from_dict(transfer) if transfer else None,
        claim=claim_from_dict(claim) if claim else None,
        reason=payload.get("reason"),
        parameter_mismatch=_mismatch_from_dict(mismatch) if mismatch else None,
        duplicate_of=payload.get("duplicate_of"),
        suggested_claim=SuggestedClaim(**suggested) if suggested else None,
    )


def result_to_dict(result: ReconciliationResult) -> dict[str, Any]:
    return {
        "completed_transfers": [record_to_dict(item) for item in result.completed_transfers],
        "suspicious_claims": [record_to_dict(item) for item in result.suspicious_claims],
        "pending_transfers": [record_to_dict(item) for item in result.pending_transfers],
        "fraud_detected": result.fraud_detected,
        "stats": result.stats.to_dict(),
    }
