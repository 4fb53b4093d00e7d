"""Domain models representing bridge transfers, claims, and reconciliation output."""

from .models import (
    BridgeDescriptor,
    BridgeResult,
    BridgeType,
    Claim,
    ClaimDetails,
    ClaimOutcome,
    DiscoveryOptions,
    DiscoveryProgress,
    DiscoveryResult,
    DiscoveryStats,
    FieldMismatch,
    NetworkConfig,
    ParameterMismatch,
    RawEventBatch,
    ReconciledRecord,
    ReconciliationResult,
    ReconciliationStats,
    ReconciliationStatus,
    SuggestedClaim,
    TransferEvent,
    TransferEventType,
)

__all__ = [
    "BridgeDescriptor",
    "BridgeResult",
    "BridgeType",
    "Claim",
    "ClaimDetails",
    "ClaimOutcome",
    "DiscoveryOptions",
    "DiscoveryProgress",
    "DiscoveryResult",
    "DiscoveryStats",
    "FieldMismatch",
    "NetworkConfig",
    "ParameterMismatch",
    "RawEventBatch",
    "ReconciledRecord",
    "ReconciliationResult",
    "ReconciliationStats",
    "ReconciliationStatus",
    "SuggestedClaim",
    "TransferEvent",
    "TransferEventType",
]
