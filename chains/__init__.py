"""
Chain family clients
"""

from blockchain.models import ChainFamily, Network

from .base import ChainClient, UnsignedTx


def create_client(network: Network) -> ChainClient:
    """Instantiate the client for a network's chain family"""
    if network.family == ChainFamily.EVM:
        from .evm import EvmClient
        return EvmClient(network)
    if network.family == ChainFamily.SOLANA:
        from .solana import SolanaClient
        return SolanaClient(network)
    if network.family == ChainFamily.POLKADOT:
        from .polkadot import PolkadotClient
        return PolkadotClient(network)
    raise ValueError(f"Unsupported chain family: {network.family}")


__all__ = ['ChainClient', 'UnsignedTx', 'create_client']
