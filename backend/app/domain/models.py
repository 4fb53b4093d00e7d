"""Typed domain representations shared by discovery, reconciliation, and caching."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BridgeType(str, Enum):
    EXPORT = "export"
    IMPORT = "import"
    IMPORT_WRAPPER = "import_wrapper"


class TransferEventType(str, Enum):
    EXPATRIATION = "NewExpatriation"
    REPATRIATION = "NewRepatriation"


class ClaimOutcome(str, Enum):
    NO = "NO"
    YES = "YES"


class ReconciliationStatus(str, Enum):
    COMPLETED = "completed"
    SUSPICIOUS = "suspicious"
    PENDING = "pending"


@dataclass(slots=True, frozen=True)
class NetworkConfig:
    """Connection details for one chain."""

    key: str
    name: str
    chain_id: int
    rpc_urls: tuple[str, ...]
    explorer_url: str | None = None
    native_currency: str | None = None
    block_time_seconds: float = 12.0


@dataclass(slots=True, frozen=True)
class BridgeDescriptor:
    """One bridge contract deployed on ``network_key``.

    Export bridges live on their home network and emit expatriations; import
    bridges live on their foreign network and emit repatriations. Both kinds
    accept claims for transfers arriving on the network they live on.
    """

    key: str
    address: str
    type: BridgeType
    network_key: str
    home_network: str
    foreign_network: str
    home_token_symbol: str | None = None
    foreign_token_symbol: str | None = None

    @property
    def is_export(self) -> bool:
        return self.type == BridgeType.EXPORT

    @property
    def network_name(self) -> str:
        """Human network name of the chain hosting the contract."""

        return self.home_network if self.is_export else self.foreign_network

    @property
    def transfer_event_type(self) -> TransferEventType:
        if self.is_export:
            return TransferEventType.EXPATRIATION
        return TransferEventType.REPATRIATION


@dataclass(slots=True, frozen=True)
class TransferEvent:
    """A deposit on the source chain that waits to be claimed on the other side."""

    event_type: TransferEventType
    bridge_address: str
    network_key: str
    from_network: str
    to_network: str
    sender_address: str | None
    recipient_address: str | None
    amount: str | None
    reward: str | None
    data: str | None
    transaction_hash: str
    block_number: int
    timestamp: int | None = None
    log_index: int = 0
    bridge_type: BridgeType | None = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.bridge_address.lower(), self.transaction_hash.lower())


@dataclass(slots=True)
class Claim:
    """A claim submitted on the destination chain, evolving over its challenge period."""

    bridge_address: str
    network_key: str
    claim_num: int
    txid: str | None
    sender_address: str | None
    recipient_address: str | None
    amount: Any
    reward: Any
    data: str | None
    claimant_address: str | None = None
    current_outcome: ClaimOutcome = ClaimOutcome.YES
    yes_stake: str | None = None
    no_stake: str | None = None
    expiry_timestamp: int | None = None
    finished: bool = False
    withdrawn: bool = False
    period_number: int = 0
    txts: int | None = None
    bridge_type: BridgeType | None = None
    home_network: str | None = None
    foreign_network: str | None = None
    transaction_hash: str | None = None
    block_number: int | None = None
    log_index: int = 0

    @property
    def identity(self) -> tuple[str, int]:
        return (self.bridge_address.lower(), self.claim_num)

    @property
    def cache_key(self) -> str:
        return f"{self.bridge_address.lower()}-{self.claim_num}"

    @property
    def destination_network(self) -> str | None:
        """Network the claimed transfer must arrive on."""

        if self.bridge_type == BridgeType.EXPORT:
            return self.home_network
        if self.bridge_type in (BridgeType.IMPORT, BridgeType.IMPORT_WRAPPER):
            return self.foreign_network
        return None


@dataclass(slots=True, frozen=True)
class FieldMismatch:
    field: str
    reason: str


_AMOUNT_LABELS = {
    "different_values": "different values",
    "format_mismatch_but_equal": "format mismatch",
    "missing_amount": "missing amount",
    "conversion_error": "conversion error",
}

_ADDRESS_LABELS = {
    "mixed_checksum_format": "format mismatch",
    "both_non_checksummed": "non-checksummed",
    "checksummed_format_mismatch": "checksum mismatch",
    "different_addresses": "different address",
    "missing_address": "missing address",
}

_REWARD_LABELS = {
    "claim_reward_exceeds_transfer_reward": "exceeds transfer reward",
    "format_mismatch_but_equal": "format mismatch",
    "transfer_reward_missing": "transfer reward missing",
    "conversion_error": "conversion error",
}


@dataclass(slots=True, frozen=True)
class ParameterMismatch:
    """Field-by-field comparison between a claim and the transfer its txid points at."""

    amount_match: bool
    amount_match_reason: str
    sender_match: bool
    sender_match_reason: str
    recipient_match: bool
    recipient_match_reason: str
    reward_valid: bool
    reward_validation_reason: str
    data_valid: bool
    data_validation_reason: str
    timestamp_match: bool
    timestamp_match_reason: str
    is_valid_flow: bool
    flow_reason: str = ""

    @property
    def has_mismatches(self) -> bool:
        return not (
            self.amount_match
            and self.sender_match
            and self.recipient_match
            and self.reward_valid
            and self.data_valid
            and self.timestamp_match
            and self.is_valid_flow
        )

    def mismatches(self) -> list[FieldMismatch]:
        """Return display entries for every failing dimension."""

        entries: list[FieldMismatch] = []
        if not self.amount_match:
            entries.append(
                FieldMismatch("amount", _AMOUNT_LABELS.get(self.amount_match_reason, "mismatch"))
            )
        if not self.sender_match:
            entries.append(
                FieldMismatch("sender", _ADDRESS_LABELS.get(self.sender_match_reason, "mismatch"))
            )
        if not self.recipient_match:
            entries.append(
                FieldMismatch(
                    "recipient", _ADDRESS_LABELS.get(self.recipient_match_reason, "mismatch")
                )
            )
        if not self.reward_valid:
            entries.append(
                FieldMismatch(
                    "reward", _REWARD_LABELS.get(self.reward_validation_reason, "mismatch")
                )
            )
        if not self.data_valid:
            label = "data mismatch" if self.data_validation_reason == "data_mismatch" else "mismatch"
            entries.append(FieldMismatch("data", label))
        if not self.is_valid_flow:
            entries.append(FieldMismatch("flow", "invalid flow"))
        if not self.timestamp_match:
            label = (
                "timestamp mismatch"
                if self.timestamp_match_reason == "timestamp_mismatch"
                else "mismatch"
            )
            entries.append(FieldMismatch("timestamp", label))
        return entries

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount_match": self.amount_match,
            "amount_match_reason": self.amount_match_reason,
            "sender_match": self.sender_match,
            "sender_match_reason": self.sender_match_reason,
            "recipient_match": self.recipient_match,
            "recipient_match_reason": self.recipient_match_reason,
            "reward_valid": self.reward_valid,
            "reward_validation_reason": self.reward_validation_reason,
            "data_valid": self.data_valid,
            "data_validation_reason": self.data_validation_reason,
            "timestamp_match": self.timestamp_match,
            "timestamp_match_reason": self.timestamp_match_reason,
            "is_valid_flow": self.is_valid_flow,
            "flow_reason": self.flow_reason,
            "mismatches": [
                {"field": entry.field, "reason": entry.reason} for entry in self.mismatches()
            ],
        }


@dataclass(slots=True, frozen=True)
class SuggestedClaim:
    """Parameters a claimant would submit to claim a pending transfer."""

    txid: str
    txts: int | None
    sender_address: str | None
    recipient_address: str | None
    amount: str | None
    reward: str | None
    data: str | None
    to_network: str


@dataclass(slots=True, frozen=True)
class ReconciledRecord:
    """A transfer and/or claim tagged with its reconciliation status."""

    status: ReconciliationStatus
    transfer: TransferEvent | None
    claim: Claim | None
    reason: str | None = None
    parameter_mismatch: ParameterMismatch | None = None
    duplicate_of: int | None = None
    suggested_claim: SuggestedClaim | None = None

    @property
    def is_fraudulent(self) -> bool:
        return self.status == ReconciliationStatus.SUSPICIOUS

    def mismatches(self) -> list[FieldMismatch]:
        if self.parameter_mismatch is None:
            return []
        return self.parameter_mismatch.mismatches()


@dataclass(slots=True, frozen=True)
class ReconciliationStats:
    total_claims: int = 0
    total_transfers: int = 0
    completed_transfers: int = 0
    suspicious_claims: int = 0
    pending_transfers: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_claims": self.total_claims,
            "total_transfers": self.total_transfers,
            "completed_transfers": self.completed_transfers,
            "suspicious_claims": self.suspicious_claims,
            "pending_transfers": self.pending_transfers,
        }


@dataclass(slots=True, frozen=True)
class ReconciliationResult:
    completed_transfers: tuple[ReconciledRecord, ...] = ()
    suspicious_claims: tuple[ReconciledRecord, ...] = ()
    pending_transfers: tuple[ReconciledRecord, ...] = ()
    fraud_detected: bool = False
    stats: ReconciliationStats = field(default_factory=ReconciliationStats)


@dataclass(slots=True)
class DiscoveryOptions:
    limit: int = 100
    range_hours: float = 24.0


@dataclass(slots=True)
class RawEventBatch:
    """Events returned by one EventSource call for one bridge."""

    transfers: list[TransferEvent] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.transfers) + len(self.claims)


@dataclass(slots=True)
class BridgeResult:
    bridge: BridgeDescriptor
    transfers: list[TransferEvent] = field(default_factory=list)
    claims: list[Claim] = field(default_factory=list)
    error: str | None = None
    source: str | None = None
    range_hours: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def event_count(self) -> int:
        return len(self.transfers) + len(self.claims)


@dataclass(slots=True)
class DiscoveryStats:
    total_bridges: int = 0
    successful_bridges: int = 0
    total_events: int = 0
    total_transfers: int = 0
    total_claims: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_bridges": self.total_bridges,
            "successful_bridges": self.successful_bridges,
            "total_events": self.total_events,
            "total_transfers": self.total_transfers,
            "total_claims": self.total_claims,
        }


@dataclass(slots=True)
class DiscoveryResult:
    bridge_results: list[BridgeResult] = field(default_factory=list)
    all_transfers: list[TransferEvent] = field(default_factory=list)
    all_claims: list[Claim] = field(default_factory=list)
    stats: DiscoveryStats = field(default_factory=DiscoveryStats)


@dataclass(slots=True)
class DiscoveryProgress:
    bridges_completed: int = 0
    total_bridges: int = 0
    events_found: int = 0
    claim_data_loaded: int = 0
    total_claims: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "bridges_completed": self.bridges_completed,
            "total_bridges": self.total_bridges,
            "events_found": self.events_found,
            "claim_data_loaded": self.claim_data_loaded,
            "total_claims": self.total_claims,
        }


@dataclass(slots=True, frozen=True)
class ClaimDetails:
    """Lifecycle fields read from the bridge's ``getClaim`` view."""

    current_outcome: ClaimOutcome
    yes_stake: str
    no_stake: str
    expiry_timestamp: int
    finished: bool
    withdrawn: bool
    period_number: int
    claimant_address: str | None = None
