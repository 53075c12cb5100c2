"""
Network Check Script
Verifies configuration, key variables and RPC reachability of every
configured network

Usage: python scripts/check_networks.py
"""

import asyncio
import os
import sys

from loguru import logger
from dotenv import load_dotenv

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from blockchain.errors import BlockchainError  # noqa: E402
from blockchain.network_registry import NetworkRegistry  # noqa: E402
from chains import create_client  # noqa: E402

load_dotenv()

KEY_VARIABLES = {
    'evm': 'EVM_PRIVATE_KEY',
    'solana': 'SOLANA_SECRET_KEY',
    'polkadot': 'POLKADOT_SEED',
}


def check_configuration(config_path: str = "config/networks.json"):
    """Load and validate the network catalog"""
    logger.info("Checking network configuration...")

    try:
        registry = NetworkRegistry.from_file(config_path)
    except BlockchainError as e:
        logger.error(f"  ✗ {e}")
        return None

    for network in registry.list_networks():
        logger.success(f"  ✓ {network.id}: {network.family.value} via {network.rpc_url}")
    return registry


def check_key_variables(registry: NetworkRegistry) -> bool:
    """Check signing key variables for the configured families"""
    logger.info("Checking signing keys...")

    families = {network.family.value for network in registry.list_networks()}
    ok = True
    for family in sorted(families):
        var = KEY_VARIABLES[family]
        if os.getenv(var):
            logger.success(f"  ✓ {var} set")
        else:
            logger.warning(f"  {var} not set - {family} sessions cannot sign")
            ok = False
    return ok


async def check_endpoints(registry: NetworkRegistry) -> bool:
    """Ping every RPC endpoint and look up the factory"""
    logger.info("Checking RPC endpoints...")

    reachable = 0
    for network in registry.list_networks():
        client = create_client(network)
        try:
            await client.ping()
            logger.success(f"  ✓ {network.id}: reachable")
            reachable += 1
        except BlockchainError as e:
            logger.error(f"  ✗ {network.id}: {e}")
        finally:
            await client.close()

    logger.info(f"  {reachable}/{len(registry)} endpoints reachable")
    return reachable == len(registry)


def main() -> int:
    logger.info("=" * 70)
    logger.info("Todo Chain Network Check")
    logger.info("=" * 70)

    registry = check_configuration()
    if registry is None:
        return 1

    results = [
        ("Signing Keys", check_key_variables(registry)),
        ("RPC Endpoints", asyncio.run(check_endpoints(registry))),
    ]

    logger.info("")
    for name, result in results:
        status = "✓ PASS" if result else "✗ FAIL"
        logger.info(f"  {status}: {name}")

    return 0 if all(result for _, result in results) else 1


if __name__ == "__main__":
    sys.exit(main())
