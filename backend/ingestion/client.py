from __future__ import annotations

import asyncio
import itertools
import math
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, Sequence

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
)
from loguru import logger

from app.core.config import Settings, settings as default_settings
from app.domain import (
    BridgeDescriptor,
    Claim,
    ClaimDetails,
    ClaimOutcome,
    DiscoveryOptions,
    NetworkConfig,
    RawEventBatch,
    TransferEvent,
    TransferEventType,
)
from ingestion.errors import (
    EventSourceError,
    RateLimitError,
    SearchDepthExceededError,
    TransientSourceError,
)
from ingestion.normalize import normalize_amount_for_storage, normalize_data


NEW_EXPATRIATION_SIGNATURE = "NewExpatriation(address,uint256,int256,string,string)"
NEW_REPATRIATION_SIGNATURE = "NewRepatriation(address,uint256,uint256,string,string)"
NEW_CLAIM_SIGNATURE = (
    "NewClaim(uint256,address,string,address,string,uint32,uint256,int256,uint256,string,uint32)"
)
GET_CLAIM_SIGNATURE = "getClaim(uint256)"

NEW_EXPATRIATION_TOPIC = encode_hex(event_signature_to_log_topic(NEW_EXPATRIATION_SIGNATURE))
NEW_REPATRIATION_TOPIC = encode_hex(event_signature_to_log_topic(NEW_REPATRIATION_SIGNATURE))
NEW_CLAIM_TOPIC = encode_hex(event_signature_to_log_topic(NEW_CLAIM_SIGNATURE))
GET_CLAIM_SELECTOR = function_signature_to_4byte_selector(GET_CLAIM_SIGNATURE)

_TRANSFER_DATA_TYPES = {
    TransferEventType.EXPATRIATION: ["address", "uint256", "int256", "string", "string"],
    TransferEventType.REPATRIATION: ["address", "uint256", "uint256", "string", "string"],
}
_NEW_CLAIM_DATA_TYPES = [
    "address",
    "string",
    "address",
    "string",
    "uint32",
    "uint256",
    "int256",
    "uint256",
    "string",
    "uint32",
]
_GET_CLAIM_RETURN_TYPE = (
    "(uint256,address,uint32,uint32,address,uint32,uint16,uint8,bool,bool,bool,string,string,uint256,uint256)"
)

_RATE_LIMIT_CODES = {429, -32005}
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "request limit")
_SEARCH_DEPTH_MARKERS = (
    "block range",
    "more than 10000 results",
    "query returned more than",
    "range too large",
    "exceed maximum block range",
)


class EventSource(Protocol):
    """Reads bridge events from one endpoint."""

    name: str

    async def fetch_events(
        self, bridge: BridgeDescriptor, options: DiscoveryOptions
    ) -> RawEventBatch:
        ...

    async def fetch_claim_details(self, bridge: BridgeDescriptor, claim_num: int) -> ClaimDetails:
        ...


def classify_rpc_error(
    error: Mapping[str, Any] | str,
    *,
    source: str | None = None,
    range_hours: float | None = None,
) -> EventSourceError:
    """Map a JSON-RPC error object onto the source error taxonomy."""
    if isinstance(error, Mapping):
        code = error.get("code")
        message = str(error.get("message") or error)
    else:
        code = None
        message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in _SEARCH_DEPTH_MARKERS):
        return SearchDepthExceededError(message, source=source, range_hours=range_hours)
    if code in _RATE_LIMIT_CODES or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RateLimitError(message, source=source)
    if "timeout" in lowered or "timed out" in lowered:
        return TransientSourceError(message, source=source)
    return EventSourceError(message, source=source)


class RpcEventSource:
    """EVM JSON-RPC backed event source bound to a single endpoint."""

    def __init__(
        self,
        network: NetworkConfig,
        rpc_url: str,
        *,
        timeout: float = 15.0,
        max_timestamp_blocks: int = 20,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.network = network
        self.rpc_url = rpc_url
        self.name = rpc_url
        self.max_timestamp_blocks = max_timestamp_blocks
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def _rpc(
        self, method: str, params: list[Any], *, range_hours: float | None = None
    ) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        logger.debug("RPC {} {} on {}", method, params, self.rpc_url)
        try:
            response = await self.client.post(self.rpc_url, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientSourceError(f"Timeout calling {method}", source=self.name) from exc
        except httpx.TransportError as exc:
            raise TransientSourceError(
                f"Transport error calling {method}: {exc}", source=self.name
            ) from exc

        status = response.status_code
        if status == 429:
            raise RateLimitError("HTTP 429 Too Many Requests", source=self.name, status_code=status)
        if status >= 500:
            raise TransientSourceError(
                f"HTTP {status} from {self.rpc_url}", source=self.name, status_code=status
            )
        if status >= 400:
            body = response.text
            error = classify_rpc_error(
                body or f"HTTP {status}", source=self.name, range_hours=range_hours
            )
            error.status_code = status
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise EventSourceError(
                f"Invalid JSON-RPC response for {method}", source=self.name
            ) from exc
        if not isinstance(body, dict):
            raise EventSourceError(f"Unexpected JSON-RPC payload for {method}", source=self.name)
        if body.get("error"):
            raise classify_rpc_error(body["error"], source=self.name, range_hours=range_hours)
        return body.get("result")

    def blocks_for_range(self, range_hours: float) -> int:
        block_time = self.network.block_time_seconds or 12.0
        return max(1, math.ceil(range_hours * 3600 / block_time))

    async def latest_block(self) -> int:
        return int(await self._rpc("eth_blockNumber", []), 16)

    async def block_timestamp(self, block_number: int) -> int | None:
        block = await self._rpc("eth_getBlockByNumber", [hex(block_number), False])
        if not isinstance(block, dict) or block.get("timestamp") is None:
            return None
        return int(block["timestamp"], 16)

    async def fetch_events(
        self, bridge: BridgeDescriptor, options: DiscoveryOptions
    ) -> RawEventBatch:
        latest = await self.latest_block()
        from_block = max(0, latest - self.blocks_for_range(options.range_hours))
        transfer_topic = (
            NEW_EXPATRIATION_TOPIC if bridge.is_export else NEW_REPATRIATION_TOPIC
        )
        logs = await self._rpc(
            "eth_getLogs",
            [
                {
                    "address": bridge.address,
                    "fromBlock": hex(from_block),
                    "toBlock": hex(latest),
                    "topics": [[transfer_topic, NEW_CLAIM_TOPIC]],
                }
            ],
            range_hours=options.range_hours,
        )
        logs = sorted(logs or [], key=_log_position)

        transfers: list[TransferEvent] = []
        claims: list[Claim] = []
        for entry in logs:
            topics = [str(topic).lower() for topic in entry.get("topics") or []]
            if not topics:
                continue
            try:
                if topics[0] == NEW_CLAIM_TOPIC:
                    claims.append(decode_claim_log(bridge, entry))
                elif topics[0] == transfer_topic:
                    transfers.append(decode_transfer_log(bridge, entry))
            except (DecodingError, ValueError, TypeError, KeyError) as exc:
                logger.warning(
                    "Skipping undecodable log {} on {}: {}",
                    entry.get("transactionHash"),
                    bridge.key,
                    exc,
                )

        transfers = transfers[-options.limit :]
        claims = claims[-options.limit :]
        transfers = await self._attach_timestamps(transfers)
        logger.info(
            "Fetched {} transfers and {} claims for {} from {} (blocks {}-{})",
            len(transfers),
            len(claims),
            bridge.key,
            self.rpc_url,
            from_block,
            latest,
        )
        return RawEventBatch(transfers=transfers, claims=claims)

    async def _attach_timestamps(self, transfers: list[TransferEvent]) -> list[TransferEvent]:
        """Resolve exact block timestamps for the most recent transfer blocks."""
        blocks = sorted({transfer.block_number for transfer in transfers}, reverse=True)
        blocks = blocks[: self.max_timestamp_blocks]
        if not blocks:
            return transfers
        timestamps = await asyncio.gather(*(self.block_timestamp(block) for block in blocks))
        by_block = dict(zip(blocks, timestamps))
        return [
            _with_timestamp(transfer, by_block.get(transfer.block_number))
            for transfer in transfers
        ]

    async def fetch_claim_details(self, bridge: BridgeDescriptor, claim_num: int) -> ClaimDetails:
        call_data = encode_hex(GET_CLAIM_SELECTOR + encode(["uint256"], [claim_num]))
        result = await self._rpc("eth_call", [{"to": bridge.address, "data": call_data}, "latest"])
        if not result or result == "0x":
            raise EventSourceError(
                f"Empty getClaim result for claim {claim_num} on {bridge.key}", source=self.name
            )
        return decode_claim_details(decode_hex(result))

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "RpcEventSource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def _with_timestamp(transfer: TransferEvent, timestamp: int | None) -> TransferEvent:
    if timestamp is None:
        return transfer
    return replace(transfer, timestamp=timestamp)


def _log_position(entry: Mapping[str, Any]) -> tuple[int, int]:
    return int(entry["blockNumber"], 16), int(entry.get("logIndex") or "0x0", 16)


def decode_transfer_log(bridge: BridgeDescriptor, entry: Mapping[str, Any]) -> TransferEvent:
    event_type = bridge.transfer_event_type
    sender, amount, reward, recipient, data = decode(
        _TRANSFER_DATA_TYPES[event_type], decode_hex(entry["data"])
    )
    if bridge.is_export:
        from_network, to_network = bridge.home_network, bridge.foreign_network
    else:
        from_network, to_network = bridge.foreign_network, bridge.home_network
    block_number, log_index = _log_position(entry)
    return TransferEvent(
        event_type=event_type,
        bridge_address=bridge.address,
        network_key=bridge.network_key,
        from_network=from_network,
        to_network=to_network,
        sender_address=sender,
        recipient_address=recipient or None,
        amount=normalize_amount_for_storage(amount),
        reward=normalize_amount_for_storage(reward),
        data=normalize_data(data),
        transaction_hash=entry["transactionHash"],
        block_number=block_number,
        log_index=log_index,
        bridge_type=bridge.type,
    )


def decode_claim_log(bridge: BridgeDescriptor, entry: Mapping[str, Any]) -> Claim:
    topics = entry["topics"]
    claim_num = int(topics[1], 16)
    (
        author,
        sender,
        recipient,
        txid,
        txts,
        amount,
        reward,
        stake,
        data,
        expiry_ts,
    ) = decode(_NEW_CLAIM_DATA_TYPES, decode_hex(entry["data"]))
    block_number, log_index = _log_position(entry)
    return Claim(
        bridge_address=bridge.address,
        network_key=bridge.network_key,
        claim_num=claim_num,
        txid=txid or None,
        sender_address=sender or None,
        recipient_address=recipient,
        amount=normalize_amount_for_storage(amount),
        reward=normalize_amount_for_storage(reward),
        data=normalize_data(data),
        claimant_address=author,
        current_outcome=ClaimOutcome.YES,
        yes_stake=normalize_amount_for_storage(stake),
        no_stake="0",
        expiry_timestamp=expiry_ts,
        txts=txts,
        bridge_type=bridge.type,
        home_network=bridge.home_network,
        foreign_network=bridge.foreign_network,
        transaction_hash=entry.get("transactionHash"),
        block_number=block_number,
        log_index=log_index,
    )


def decode_claim_details(raw: bytes) -> ClaimDetails:
    (result,) = decode([_GET_CLAIM_RETURN_TYPE], raw)
    (
        _amount,
        _recipient,
        _txts,
        _ts,
        claimant,
        expiry_ts,
        period_number,
        current_outcome,
        _is_large,
        withdrawn,
        finished,
        _sender,
        _data,
        yes_stake,
        no_stake,
    ) = result
    return ClaimDetails(
        current_outcome=ClaimOutcome.YES if current_outcome == 1 else ClaimOutcome.NO,
        yes_stake=str(yes_stake),
        no_stake=str(no_stake),
        expiry_timestamp=int(expiry_ts),
        finished=bool(finished),
        withdrawn=bool(withdrawn),
        period_number=int(period_number),
        claimant_address=claimant,
    )


def build_event_sources(
    network: NetworkConfig,
    *,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[RpcEventSource]:
    """One source per configured RPC URL, primary first."""
    active = settings or default_settings
    return [
        RpcEventSource(
            network,
            url,
            timeout=active.rpc_timeout_seconds,
            max_timestamp_blocks=active.rpc_max_log_blocks,
            client=client,
        )
        for url in network.rpc_urls
    ]


async def close_sources(sources: Sequence[RpcEventSource]) -> None:
    for source in sources:
        await source.close()


@asynccontextmanager
async def rpc_source_factory(
    settings: Settings | None = None,
) -> AsyncIterator[Callable[[NetworkConfig], list[RpcEventSource]]]:
    """Yield a factory whose sources share one HTTP client for the block's lifetime."""
    active = settings or default_settings
    async with httpx.AsyncClient(timeout=active.rpc_timeout_seconds) as client:
        yield lambda network: build_event_sources(network, settings=active, client=client)
