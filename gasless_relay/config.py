"""
Relayer configuration and known networks.
"""
import importlib.resources
import json
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from .builder import DEFAULT_GAS_LIMIT
from .exceptions import ConfigurationError
from .models import Address, Domain

DEFAULT_RPC_URL = "http://localhost:8545"
DEFAULT_CHAIN_ID = 31337
DEFAULT_RECEIPT_TIMEOUT = 120


class NetworkConfig:
    """Network configuration manager for the packaged networks.json"""

    _networks_cache = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        """
        Load network configurations from the packaged networks.json.

        Returns:
            Dictionary of network name to network configuration
        """
        if cls._networks_cache is None:
            resource = importlib.resources.files("gasless_relay").joinpath("networks.json")
            with resource.open("r", encoding="utf-8") as f:
                cls._networks_cache = json.load(f)
        return cls._networks_cache

    @classmethod
    def get_network(cls, network_name: str) -> Dict[str, Any]:
        """
        Get configuration for a specific network.

        Args:
            network_name: Name of the network (e.g. "polygonAmoy")

        Returns:
            Network configuration

        Raises:
            ValueError: If the network is not found
        """
        networks = cls.load_networks()
        if network_name not in networks:
            available = ", ".join(sorted(networks))
            raise ValueError(f"Network '{network_name}' not found. Available networks: {available}")
        return networks[network_name]

    @classmethod
    def get_rpc_url(cls, network_name: str, override: Optional[str] = None) -> str:
        """
        Get the RPC URL for a network.

        Precedence: ``override``, then the ``{NETWORK}_RPC_URL`` environment
        variable, then networks.json.

        Args:
            network_name: Name of the network
            override: Optional explicit RPC URL

        Returns:
            RPC URL
        """
        if override:
            return override
        env_var = f"{network_name.upper().replace('-', '_')}_RPC_URL"
        if os.environ.get(env_var):
            return os.environ[env_var]
        return cls.get_network(network_name)["rpc"]

    @classmethod
    def get_chain_id(cls, network_name: str) -> int:
        return int(cls.get_network(network_name)["chainId"])

    @classmethod
    def get_forwarder_address(cls, network_name: str) -> str:
        """
        Get the MinimalForwarder address deployed on a network.

        Raises:
            ValueError: If no forwarder is recorded for the network
        """
        network = cls.get_network(network_name)
        if not network.get("forwarder"):
            raise ValueError(f"No forwarder deployment recorded for network '{network_name}'")
        return network["forwarder"]


class RelayerConfig(BaseModel):
    """
    Settings for a relayer process.

    ``relayer_private_key`` is only needed to relay; nonce, status and
    request building work without it.
    """
    model_config = ConfigDict(frozen=True)

    rpc_url: str = DEFAULT_RPC_URL
    forwarder_address: Address
    nft_address: Optional[Address] = None
    relayer_private_key: Optional[SecretStr] = None
    chain_id: int = DEFAULT_CHAIN_ID
    forwarder_name: str = "MinimalForwarder"
    forwarder_version: str = "0.0.1"
    gas_limit: int = Field(DEFAULT_GAS_LIMIT, gt=0)
    receipt_timeout: int = Field(DEFAULT_RECEIPT_TIMEOUT, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, network: Optional[str] = None) -> "RelayerConfig":
        """
        Load configuration from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            network: Optional networks.json entry supplying RPC URL, chain ID
                and forwarder address defaults

        Returns:
            RelayerConfig

        Raises:
            ConfigurationError: If a required value is missing or invalid
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        if network:
            try:
                values["rpc_url"] = NetworkConfig.get_rpc_url(network)
                values["chain_id"] = NetworkConfig.get_chain_id(network)
                forwarder = NetworkConfig.get_network(network).get("forwarder")
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            if forwarder:
                values["forwarder_address"] = forwarder

        mapping = {
            "RPC_URL": "rpc_url",
            "FORWARDER_ADDRESS": "forwarder_address",
            "NFT_ADDRESS": "nft_address",
            "RELAYER_PRIVATE_KEY": "relayer_private_key",
            "CHAIN_ID": "chain_id",
            "FORWARDER_NAME": "forwarder_name",
            "FORWARDER_VERSION": "forwarder_version",
            "RELAY_GAS_LIMIT": "gas_limit",
            "RELAY_RECEIPT_TIMEOUT": "receipt_timeout",
        }
        for var, field_name in mapping.items():
            if env.get(var):
                values[field_name] = env[var]

        if "forwarder_address" not in values:
            raise ConfigurationError("FORWARDER_ADDRESS is not set")

        try:
            return cls(**values)
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
            raise ConfigurationError(f"Invalid relayer configuration: {fields}", detail=str(e)) from e

    def domain(self) -> Domain:
        """EIP-712 domain for this forwarder deployment"""
        return Domain(
            name=self.forwarder_name,
            version=self.forwarder_version,
            chain_id=self.chain_id,
            verifying_contract=self.forwarder_address
        )

    def private_key(self) -> Optional[str]:
        return self.relayer_private_key.get_secret_value() if self.relayer_private_key else None
