from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _as_decimal_string(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


class Bridge(BaseModel):
    key: str
    address: str
    type: str
    network_key: str
    home_network: str
    foreign_network: str
    home_token_symbol: str | None = None
    foreign_token_symbol: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("type", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> str:
        return getattr(value, "value", value)


class BridgeList(BaseModel):
    total: int
    items: list[Bridge]


class Transfer(BaseModel):
    event_type: str
    bridge_address: str
    network_key: str
    from_network: str
    to_network: str
    sender_address: str | None = None
    recipient_address: str | None = None
    amount: str | None = None
    reward: str | None = None
    data: str | None = None
    transaction_hash: str
    block_number: int
    timestamp: int | None = None
    log_index: int = 0
    bridge_type: str | None = None

    @field_validator("amount", "reward", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str | None:
        return _as_decimal_string(value)


class Claim(BaseModel):
    bridge_address: str
    network_key: str
    claim_num: int
    txid: str | None = None
    sender_address: str | None = None
    recipient_address: str | None = None
    amount: str | None = None
    reward: str | None = None
    data: str | None = None
    claimant_address: str | None = None
    current_outcome: str
    yes_stake: str | None = None
    no_stake: str | None = None
    expiry_timestamp: int | None = None
    finished: bool = False
    withdrawn: bool = False
    period_number: int = 0
    txts: int | None = None
    bridge_type: str | None = None
    home_network: str | None = None
    foreign_network: str | None = None
    transaction_hash: str | None = None
    block_number: int | None = None
    log_index: int = 0

    @field_validator("amount", "reward", "yes_stake", "no_stake", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> str | None:
        return _as_decimal_string(value)


class FieldMismatch(BaseModel):
    field: str
    reason: str


class ParameterMismatch(BaseModel):
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
    mismatches: list[FieldMismatch] = Field(default_factory=list)


class SuggestedClaim(BaseModel):
    txid: str
    txts: int | None = None
    sender_address: str | None = None
    recipient_address: str | None = None
    amount: str | None = None
    reward: str | None = None
    data: str | None = None
    to_network: str


class ReconciledRecord(BaseModel):
    status: str
    reason: str | None = None
    duplicate_of: int | None = None
    transfer: Transfer | None = None
    claim: Claim | None = None
    parameter_mismatch: ParameterMismatch | None = None
    mismatches: list[FieldMismatch] = Field(default_factory=list)
    suggested_claim: SuggestedClaim | None = None


class ReconciliationStats(BaseModel):
    total_claims: int = 0
    total_transfers: int = 0
    completed_transfers: int = 0
    suspicious_claims: int = 0
    pending_transfers: int = 0


class AggregatedData(BaseModel):
    completed_transfers: list[ReconciledRecord] = Field(default_factory=list)
    suspicious_claims: list[ReconciledRecord] = Field(default_factory=list)
    pending_transfers: list[ReconciledRecord] = Field(default_factory=list)
    fraud_detected: bool = False
    stats: ReconciliationStats = Field(default_factory=ReconciliationStats)


class RetryStatus(BaseModel):
    attempt: int
    max_attempts: int
    delay: float
    state: str
    source: str | None = None
    range_hours: float | None = None
    error: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("state", mode="before")
    @classmethod
    def _enum_value(cls, value: Any) -> str:
        return getattr(value, "value", value)


class DiscoveryProgress(BaseModel):
    bridges_completed: int = 0
    total_bridges: int = 0
    events_found: int = 0
    claim_data_loaded: int = 0
    total_claims: int = 0
    is_refreshing: bool = False
    retries: dict[str, RetryStatus] = Field(default_factory=dict)


class CacheStatus(BaseModel):
    has_cached_data: bool
    is_showing_cached: bool
    is_refreshing: bool
    last_updated: datetime | None = None
    cache_age: float | None = Field(default=None, description="Seconds since the last cache write")


class DiscoveryRequest(BaseModel):
    force: bool = False
    range_hours: float | None = Field(default=None, gt=0)
    limit: int | None = Field(default=None, ge=1)
    load_claim_details: bool = True


class BridgeOutcome(BaseModel):
    bridge_key: str
    succeeded: bool
    error: str | None = None
    source: str | None = None
    range_hours: float | None = None
    event_count: int = 0


class DiscoveryStats(BaseModel):
    total_bridges: int = 0
    successful_bridges: int = 0
    total_events: int = 0
    total_transfers: int = 0
    total_claims: int = 0


class DiscoveryResponse(BaseModel):
    stats: DiscoveryStats
    bridges: list[BridgeOutcome] = Field(default_factory=list)
    aggregated: AggregatedData


class ClearCacheResponse(BaseModel):
    removed: int
