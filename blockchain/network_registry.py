"""
Network Registry
Catalog of supported networks, loaded once from config/networks.json
"""

import os
import json
from typing import Dict, Iterable, List, Optional
from loguru import logger
from dotenv import load_dotenv

from .errors import ConfigurationError, NetworkNotFound
from .models import ChainFamily, Network

load_dotenv()

DEFAULT_CONFIG_PATH = "config/networks.json"

# Fields that may be given literally, via "<field>_env", or via "default_<field>"
_RESOLVABLE_FIELDS = ('rpc_url', 'factory_address')
_NUMERIC_FIELDS = {
    'chain_id': int,
    'confirmation_depth': int,
    'confirmation_timeout': float,
    'poll_interval': float,
    'max_attempts': int,
    'backoff_base': float,
    'backoff_cap': float,
    'ss58_format': int,
}


class NetworkRegistry:
    """
    Read-only registry of Network entries

    Fails fast at construction if any network is missing an RPC endpoint
    or factory address.
    """

    def __init__(self, networks: Iterable[Network]):
        self._networks: Dict[str, Network] = {}

        for network in networks:
            self._validate(network)
            if network.id in self._networks:
                raise ConfigurationError(f"Duplicate network id: {network.id}")
            self._networks[network.id] = network

        logger.info(f"Network Registry initialized with {len(self._networks)} networks")

    @classmethod
    def from_file(cls, config_path: str = DEFAULT_CONFIG_PATH) -> "NetworkRegistry":
        """
        Load networks from a JSON config file

        Args:
            config_path: Path to networks config

        Returns:
            NetworkRegistry
        """
        with open(config_path, 'r') as f:
            config = json.load(f)

        return cls.from_config(config)

    @classmethod
    def from_config(cls, config: Dict) -> "NetworkRegistry":
        return cls(
            cls._parse_network(entry)
            for entry in config['networks']
            if entry.get('enabled', True)
        )

    @staticmethod
    def _parse_network(entry: Dict) -> Network:
        """Build a Network from one config entry, resolving env variables"""
        data = {}

        for key in ('id', 'name', 'explorer_url', 'is_testnet'):
            if key in entry:
                data[key] = entry[key]

        network_id = entry.get('id', '<unnamed>')

        try:
            data['family'] = ChainFamily(entry.get('family', ''))
        except ValueError:
            raise ConfigurationError(
                f"Unknown chain family '{entry.get('family')}'", network_id=network_id
            )

        for key in _RESOLVABLE_FIELDS:
            value = entry.get(key)
            env_var = entry.get(f"{key}_env")
            if env_var:
                value = os.getenv(env_var) or value
            if not value:
                value = entry.get(f"default_{key}")
            data[key] = value or ""

        for key, cast in _NUMERIC_FIELDS.items():
            if entry.get(key) is not None:
                data[key] = cast(entry[key])

        data.setdefault('name', network_id)

        try:
            return Network(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid network entry: {e}", network_id=network_id)

    @staticmethod
    def _validate(network: Network):
        if not network.rpc_url:
            raise ConfigurationError("Missing RPC endpoint", network_id=network.id)
        if not network.factory_address:
            raise ConfigurationError("Missing factory address", network_id=network.id)
        if network.family == ChainFamily.EVM and network.chain_id is None:
            raise ConfigurationError("EVM network requires chain_id", network_id=network.id)
        if network.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1", network_id=network.id)

    def list_networks(self) -> List[Network]:
        """All networks in configuration order"""
        return list(self._networks.values())

    def get(self, network_id: str) -> Network:
        try:
            return self._networks[network_id]
        except KeyError:
            raise NetworkNotFound(f"Unknown network: {network_id}", network_id=network_id)

    def find(self, network_id: str) -> Optional[Network]:
        return self._networks.get(network_id)

    def evm_networks(self) -> List[Network]:
        return [n for n in self._networks.values() if n.is_evm]

    def mainnet_networks(self) -> List[Network]:
        return [n for n in self._networks.values() if not n.is_testnet]

    def testnet_networks(self) -> List[Network]:
        return [n for n in self._networks.values() if n.is_testnet]

    def __contains__(self, network_id: str) -> bool:
        return network_id in self._networks

    def __len__(self) -> int:
        return len(self._networks)
