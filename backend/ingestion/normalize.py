from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from eth_utils import is_checksum_address, is_hex_address, to_checksum_address
from loguru import logger

from app.domain import (
    BridgeType,
    Claim,
    ClaimOutcome,
    TransferEvent,
    TransferEventType,
)
from ingestion.errors import AmountFormatError


_HEX_KEYS = ("_hex", "hex")


def _pick(payload: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-null value stored under any of ``keys``."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lower().startswith("0x"):
        try:
            return int(value.strip(), 16)
        except ValueError:
            return None
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(Decimal(str(value)))
        except (InvalidOperation, ValueError):
            return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def normalize_amount(value: Any) -> str | None:
    """Convert any supported numeric shape to a canonical decimal integer string.

    Accepted shapes are ints, decimal strings, ``0x`` hex strings, integral
    floats, and big-number objects or mappings carrying a ``_hex``/``hex``
    field. ``None`` and blank strings mean "absent" and return ``None``.
    Anything else raises :class:`AmountFormatError`.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise AmountFormatError(f"Boolean is not an amount: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise AmountFormatError(f"Negative amount: {value}")
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer() or value < 0:
            raise AmountFormatError(f"Amount is not a non-negative integer: {value!r}")
        return str(int(Decimal(repr(value))))
    if isinstance(value, Decimal):
        return normalize_amount(str(value))
    if isinstance(value, Mapping):
        hex_value = _pick(value, *_HEX_KEYS)
        if hex_value is None:
            raise AmountFormatError(f"Mapping without hex field: {value!r}")
        return normalize_amount(str(hex_value))
    for key in _HEX_KEYS:
        hex_value = getattr(value, key, None)
        if isinstance(hex_value, str):
            return normalize_amount(hex_value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.lower().startswith("0x"):
            try:
                return str(int(text, 16))
            except ValueError as exc:
                raise AmountFormatError(f"Invalid hex amount: {value!r}") from exc
        try:
            parsed = Decimal(text)
        except InvalidOperation as exc:
            raise AmountFormatError(f"Invalid decimal amount: {value!r}") from exc
        if not parsed.is_finite() or parsed != parsed.to_integral_value() or parsed < 0:
            raise AmountFormatError(f"Amount is not a non-negative integer: {value!r}")
        return str(int(parsed))
    raise AmountFormatError(f"Unsupported amount type {type(value).__name__}")


def normalize_amount_for_storage(value: Any) -> str | None:
    """Lenient variant used at the ingestion boundary.

    Malformed values are kept as their string form so reconciliation can
    classify them later instead of losing the record here.
    """
    try:
        return normalize_amount(value)
    except AmountFormatError as exc:
        logger.debug("Keeping unparseable amount {!r} verbatim: {}", value, exc)
        return str(value)


def normalize_address(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def checksum_address(value: Any) -> str | None:
    """Return the EIP-55 form of ``value`` or ``None`` when it is not an address."""
    address = normalize_address(value)
    if address is None or not is_hex_address(address):
        return None
    return to_checksum_address(address)


def is_checksummed(address: str) -> bool:
    """True when ``address`` carries a valid EIP-55 mixed-case checksum."""
    try:
        return is_checksum_address(address)
    except (TypeError, ValueError):
        return False


def normalize_data(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex() if value else None
    text = str(value)
    return text if text not in ("", "0x") else None


def _bridge_type(value: Any) -> BridgeType | None:
    if value is None or value == "":
        return None
    if isinstance(value, BridgeType):
        return value
    try:
        return BridgeType(str(value).lower())
    except ValueError:
        logger.warning("Unknown bridge type {!r}", value)
        return None


def _event_type(value: Any) -> TransferEventType:
    if isinstance(value, TransferEventType):
        return value
    text = str(value or "")
    for candidate in TransferEventType:
        if text in (candidate.value, candidate.name) or text.lower() == candidate.name.lower():
            return candidate
    raise ValueError(f"Unknown transfer event type {value!r}")


def _outcome(value: Any) -> ClaimOutcome:
    if isinstance(value, ClaimOutcome):
        return value
    if value in (0, "0"):
        return ClaimOutcome.NO
    if value in (1, "1"):
        return ClaimOutcome.YES
    text = str(value or "YES").upper()
    return ClaimOutcome.NO if text == "NO" else ClaimOutcome.YES


def transfer_from_dict(payload: Mapping[str, Any]) -> TransferEvent:
    """Build a :class:`TransferEvent` from a cached or decoded record."""
    transaction_hash = _pick(payload, "transaction_hash", "transactionHash")
    bridge_address = _pick(payload, "bridge_address", "bridgeAddress")
    if not transaction_hash or not bridge_address:
        raise ValueError("Transfer record requires bridge_address and transaction_hash")
    return TransferEvent(
        event_type=_event_type(_pick(payload, "event_type", "eventType")),
        bridge_address=str(bridge_address),
        network_key=str(_pick(payload, "network_key", "networkKey") or ""),
        from_network=str(_pick(payload, "from_network", "fromNetwork") or ""),
        to_network=str(_pick(payload, "to_network", "toNetwork") or ""),
        sender_address=normalize_address(_pick(payload, "sender_address", "senderAddress")),
        recipient_address=normalize_address(
            _pick(payload, "recipient_address", "recipientAddress")
        ),
        amount=normalize_amount_for_storage(payload.get("amount")),
        reward=normalize_amount_for_storage(payload.get("reward")),
        data=normalize_data(payload.get("data")),
        transaction_hash=str(transaction_hash),
        block_number=_parse_int(_pick(payload, "block_number", "blockNumber")) or 0,
        timestamp=_parse_int(payload.get("timestamp")),
        log_index=_parse_int(_pick(payload, "log_index", "logIndex")) or 0,
        bridge_type=_bridge_type(_pick(payload, "bridge_type", "bridgeType")),
    )


def transfer_to_dict(transfer: TransferEvent) -> dict[str, Any]:
    return {
        "event_type": transfer.event_type.value,
        "bridge_address": transfer.bridge_address,
        "network_key": transfer.network_key,
        "from_network": transfer.from_network,
        "to_network": transfer.to_network,
        "sender_address": transfer.sender_address,
        "recipient_address": transfer.recipient_address,
        "amount": normalize_amount_for_storage(transfer.amount),
        "reward": normalize_amount_for_storage(transfer.reward),
        "data": transfer.data,
        "transaction_hash": transfer.transaction_hash,
        "block_number": transfer.block_number,
        "timestamp": transfer.timestamp,
        "log_index": transfer.log_index,
        "bridge_type": transfer.bridge_type.value if transfer.bridge_type else None,
    }


def claim_from_dict(payload: Mapping[str, Any]) -> Claim:
    """Build a :class:`Claim` from a cached or decoded record."""
    bridge_address = _pick(payload, "bridge_address", "bridgeAddress")
    claim_num = _parse_int(_pick(payload, "claim_num", "claimNum"))
    if not bridge_address or claim_num is None:
        raise ValueError("Claim record requires bridge_address and claim_num")
    return Claim(
        bridge_address=str(bridge_address),
        network_key=str(_pick(payload, "network_key", "networkKey") or ""),
        claim_num=claim_num,
        txid=_pick(payload, "txid"),
        sender_address=normalize_address(_pick(payload, "sender_address", "senderAddress")),
        recipient_address=normalize_address(
            _pick(payload, "recipient_address", "recipientAddress")
        ),
        amount=normalize_amount_for_storage(payload.get("amount")),
        reward=normalize_amount_for_storage(payload.get("reward")),
        data=normalize_data(payload.get("data")),
        claimant_address=normalize_address(
            _pick(payload, "claimant_address", "claimantAddress")
        ),
        current_outcome=_outcome(_pick(payload, "current_outcome", "currentOutcome")),
        yes_stake=normalize_amount_for_storage(_pick(payload, "yes_stake", "yesStake")),
        no_stake=normalize_amount_for_storage(_pick(payload, "no_stake", "noStake")),
        expiry_timestamp=_parse_int(_pick(payload, "expiry_timestamp", "expiryTs")),
        finished=_parse_bool(payload.get("finished", False)),
        withdrawn=_parse_bool(payload.get("withdrawn", False)),
        period_number=_parse_int(_pick(payload, "period_number", "periodNumber")) or 0,
        txts=_parse_int(payload.get("txts")),
        bridge_type=_bridge_type(_pick(payload, "bridge_type", "bridgeType")),
        home_network=_pick(payload, "home_network", "homeNetwork"),
        foreign_network=_pick(payload, "foreign_network", "foreignNetwork"),
        transaction_hash=_pick(payload, "transaction_hash", "transactionHash"),
        block_number=_parse_int(_pick(payload, "block_number", "blockNumber")),
        log_index=_parse_int(_pick(payload, "log_index", "logIndex")) or 0,
    )


def claim_to_dict(claim: Claim) -> dict[str, Any]:
    return {
        "bridge_address": claim.bridge_address,
        "network_key": claim.network_key,
        "claim_num": claim.claim_num,
        "txid": claim.txid,
        "sender_address": claim.sender_address,
        "recipient_address": claim.recipient_address,
        "amount": normalize_amount_for_storage(claim.amount),
        "reward": normalize_amount_for_storage(claim.reward),
        "data": claim.data,
        "claimant_address": claim.claimant_address,
        "current_outcome": claim.current_outcome.value,
        "yes_stake": normalize_amount_for_storage(claim.yes_stake),
        "no_stake": normalize_amount_for_storage(claim.no_stake),
        "expiry_timestamp": claim.expiry_timestamp,
        "finished": claim.finished,
        "withdrawn": claim.withdrawn,
        "period_number": claim.period_number,
        "txts": claim.txts,
        "bridge_type": claim.bridge_type.value if claim.bridge_type else None,
        "home_network": claim.home_network,
        "foreign_network": claim.foreign_network,
        "transaction_hash": claim.transaction_hash,
        "block_number": claim.block_number,
        "log_index": claim.log_index,
    }
