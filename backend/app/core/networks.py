"""Built-in network and bridge tables plus the registry assembled from settings."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from loguru import logger

from app.core.config import Settings
from app.domain import BridgeDescriptor, BridgeType, NetworkConfig


MAINNET_NETWORKS: dict[str, dict[str, Any]] = {
    "ETHEREUM": {
        "name": "Ethereum",
        "chain_id": 1,
        "rpc_urls": [
            "https://ethereum-rpc.publicnode.com",
            "https://eth.llamarpc.com",
            "https://rpc.ankr.com/eth",
        ],
        "explorer_url": "https://etherscan.io",
        "native_currency": "ETH",
        "block_time_seconds": 12.0,
    },
    "BSC": {
        "name": "Binance Smart Chain",
        "chain_id": 56,
        "rpc_urls": [
            "https://bsc-dataseed1.binance.org",
            "https://bsc-dataseed2.binance.org",
            "https://bsc-rpc.publicnode.com",
        ],
        "explorer_url": "https://bscscan.com",
        "native_currency": "BNB",
        "block_time_seconds": 3.0,
    },
    "THREEDPASS": {
        "name": "3DPass",
        "chain_id": 1333,
        "rpc_urls": [
            "https://rpc-http.3dpass.org",
            "https://rpc2.3dpass.org",
        ],
        "explorer_url": "https://3dpscan.xyz",
        "native_currency": "P3D",
        "block_time_seconds": 60.0,
    },
}

TESTNET_NETWORKS: dict[str, dict[str, Any]] = {
    "ETHEREUM": {
        "name": "Ethereum",
        "chain_id": 11155111,
        "rpc_urls": ["https://ethereum-sepolia-rpc.publicnode.com"],
        "explorer_url": "https://sepolia.etherscan.io",
        "native_currency": "ETH",
        "block_time_seconds": 12.0,
    },
    "BSC": {
        "name": "Binance Smart Chain",
        "chain_id": 97,
        "rpc_urls": ["https://data-seed-prebsc-1-s1.binance.org:8545"],
        "explorer_url": "https://testnet.bscscan.com",
        "native_currency": "BNB",
        "block_time_seconds": 3.0,
    },
    "THREEDPASS": {
        "name": "3DPass",
        "chain_id": 1334,
        "rpc_urls": ["https://test-rpc-http.3dpass.org"],
        "explorer_url": "https://test-explorer.3dpass.org",
        "native_currency": "P3D",
        "block_time_seconds": 60.0,
    },
}

DEFAULT_BRIDGES: dict[str, dict[str, Any]] = {
    "USDC_EXPORT": {
        "address": "0x14982dc69e62508b3e4848129a55d6B1960b4Db0",
        "type": "export",
        "network_key": "ETHEREUM",
        "home_network": "Ethereum",
        "home_token_symbol": "USDC",
        "foreign_network": "3DPass",
        "foreign_token_symbol": "wUSDC",
    },
    "BUSD_EXPORT": {
        "address": "0xAd913348E7B63f44185D5f6BACBD18d7189B2F1B",
        "type": "export",
        "network_key": "BSC",
        "home_network": "Binance Smart Chain",
        "home_token_symbol": "BUSD",
        "foreign_network": "3DPass",
        "foreign_token_symbol": "wBUSD",
    },
    "P3D_EXPORT": {
        "address": "0x696CD5949EA4baBB3eB76D5231595C7e8eFa9206",
        "type": "export",
        "network_key": "THREEDPASS",
        "home_network": "3DPass",
        "home_token_symbol": "P3D",
        "foreign_network": "Ethereum",
        "foreign_token_symbol": "wP3D",
    },
    "FIRE_EXPORT": {
        "address": "0x418Fbe90f5fD7095Fd4cde851c8375Df085ed61A",
        "type": "export",
        "network_key": "THREEDPASS",
        "home_network": "3DPass",
        "home_token_symbol": "FIRE",
        "foreign_network": "Ethereum",
        "foreign_token_symbol": "wFIRE",
    },
    "WATER_EXPORT": {
        "address": "0xF79be90A608c26CA1f995a40BE57DB28de8e5DB4",
        "type": "export",
        "network_key": "THREEDPASS",
        "home_network": "3DPass",
        "home_token_symbol": "WATER",
        "foreign_network": "Ethereum",
        "foreign_token_symbol": "wWATER",
    },
    "USDT_IMPORT": {
        "address": "0x8Ec164093319EAD78f6E289bb688Bef3c8ce9B0F",
        "type": "import_wrapper",
        "network_key": "THREEDPASS",
        "home_network": "Ethereum",
        "home_token_symbol": "USDT",
        "foreign_network": "3DPass",
        "foreign_token_symbol": "wUSDT",
    },
    "USDC_IMPORT": {
        "address": "0x1A85BD09E186b6EDc30D08Abb43c673A9636Cc4E",
        "type": "import_wrapper",
        "network_key": "THREEDPASS",
        "home_network": "Ethereum",
        "home_token_symbol": "USDC",
        "foreign_network": "3DPass",
        "foreign_token_symbol": "wUSDC",
    },
    "BUSD_IMPORT": {
        "address": "0xccDdB081d48D7F312846ea4ECF18A963455c3C71",
        "type": "import_wrapper",
        "network_key": "THREEDPASS",
        "home_network": "Binance Smart Chain",
        "home_token_symbol": "BUSD",
        "foreign_network": "3DPass",
        "foreign_token_symbol": "wBUSD",
    },
}


class RegistryError(ValueError):
    """Raised when a network or bridge definition cannot be used."""


def _build_network(key: str, payload: Mapping[str, Any]) -> NetworkConfig:
    rpc_urls = payload.get("rpc_urls") or []
    if isinstance(rpc_urls, str):
        rpc_urls = [url.strip() for url in rpc_urls.split(",") if url.strip()]
    if not rpc_urls:
        raise RegistryError(f"Network {key} does not define any rpc_urls")
    try:
        return NetworkConfig(
            key=key,
            name=str(payload.get("name") or key),
            chain_id=int(payload["chain_id"]),
            rpc_urls=tuple(str(url) for url in rpc_urls),
            explorer_url=payload.get("explorer_url"),
            native_currency=payload.get("native_currency"),
            block_time_seconds=float(payload.get("block_time_seconds") or 12.0),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RegistryError(f"Invalid network definition for {key}: {exc}") from exc


def _build_bridge(key: str, payload: Mapping[str, Any]) -> BridgeDescriptor:
    try:
        bridge_type = BridgeType(str(payload["type"]).lower())
        return BridgeDescriptor(
            key=key,
            address=str(payload["address"]),
            type=bridge_type,
            network_key=str(payload["network_key"]).upper(),
            home_network=str(payload["home_network"]),
            foreign_network=str(payload["foreign_network"]),
            home_token_symbol=payload.get("home_token_symbol"),
            foreign_token_symbol=payload.get("foreign_token_symbol"),
        )
    except (KeyError, ValueError) as exc:
        raise RegistryError(f"Invalid bridge definition for {key}: {exc}") from exc


class BridgeRegistry:
    """Networks and bridges the discovery layer is allowed to scan."""

    def __init__(
        self,
        networks: Iterable[NetworkConfig],
        bridges: Iterable[BridgeDescriptor],
    ) -> None:
        self._networks = {network.key: network for network in networks}
        self._bridges: dict[str, BridgeDescriptor] = {}
        for bridge in bridges:
            if bridge.network_key not in self._networks:
                raise RegistryError(
                    f"Bridge {bridge.key} references unknown network {bridge.network_key}"
                )
            self._bridges[bridge.key] = bridge

    @classmethod
    def from_settings(cls, settings: Settings) -> "BridgeRegistry":
        base_networks = TESTNET_NETWORKS if settings.use_testnet else MAINNET_NETWORKS
        network_payloads = {key: dict(value) for key, value in base_networks.items()}
        for key, override in settings.network_overrides.items():
            network_payloads.setdefault(key.upper(), {}).update(override)

        bridge_payloads = {key: dict(value) for key, value in DEFAULT_BRIDGES.items()}
        for key, override in settings.bridge_overrides.items():
            bridge_payloads.setdefault(key, {}).update(override)

        disabled = set(settings.disabled_bridges)
        unknown_disabled = sorted(disabled - set(bridge_payloads))
        if unknown_disabled:
            logger.warning(
                "Ignoring unknown bridge keys in DISABLED_BRIDGES: {}",
                ", ".join(unknown_disabled),
            )

        networks = [_build_network(key, payload) for key, payload in network_payloads.items()]
        bridges = [
            _build_bridge(key, payload)
            for key, payload in bridge_payloads.items()
            if key not in disabled
        ]
        return cls(networks, bridges)

    @property
    def networks(self) -> dict[str, NetworkConfig]:
        return dict(self._networks)

    @property
    def bridges(self) -> list[BridgeDescriptor]:
        return list(self._bridges.values())

    def network(self, key: str) -> NetworkConfig:
        try:
            return self._networks[key]
        except KeyError as exc:
            raise RegistryError(f"Unknown network {key}") from exc

    def bridge(self, key: str) -> BridgeDescriptor:
        try:
            return self._bridges[key]
        except KeyError as exc:
            raise RegistryError(f"Unknown bridge {key}") from exc

    def bridge_by_address(self, address: str) -> BridgeDescriptor | None:
        lowered = address.lower()
        for bridge in self._bridges.values():
            if bridge.address.lower() == lowered:
                return bridge
        return None
