"""
Chain Client Base
Common contract every chain-family client implements
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import aiohttp
from loguru import logger

from blockchain.errors import (
    AlreadySubmitted,
    BlockchainError,
    FeeUnderpriced,
    InsufficientFunds,
    NetworkUnavailable,
    NonceConflict,
    NonceGap,
    TransactionReverted,
    WalletRejected,
)
from blockchain.models import ContractCall, Network, Receipt

# (substring of lowercased error text, error class); first match wins
COMMON_ERROR_PATTERNS: Sequence[Tuple[str, type]] = (
    ('nonce too low', NonceConflict),
    ('nonce too high', NonceGap),
    ('already known', AlreadySubmitted),
    ('underpriced', FeeUnderpriced),
    ('insufficient funds', InsufficientFunds),
    ('user rejected', WalletRejected),
    ('user denied', WalletRejected),
    ('revert', TransactionReverted),
    ('429', NetworkUnavailable),
    ('rate limit', NetworkUnavailable),
    ('too many requests', NetworkUnavailable),
    ('timed out', NetworkUnavailable),
    ('timeout', NetworkUnavailable),
    ('connection', NetworkUnavailable),
)

ItemRow = Tuple[str, str, bool]


@dataclass
class UnsignedTx:
    """
    Transaction ready for signing

    payload goes to the signer; context carries whatever the client needs
    to assemble the signed form (compiled message, composed call...).
    """

    payload: Any
    sequence: Optional[int] = None
    context: Any = None


class ChainClient(ABC):
    """
    RPC and encoding for one network

    All methods are coroutines and raise BlockchainError subclasses only.
    """

    error_patterns: Sequence[Tuple[str, type]] = ()
    # False where get_receipt only knows inclusions this client watched
    finds_receipts_by_hash = True

    def __init__(self, network: Network):
        self.network = network

    @abstractmethod
    async def ping(self):
        """Raise NetworkUnavailable unless the endpoint answers"""

    @abstractmethod
    async def lookup_contract(self, owner: str) -> Optional[str]:
        """Factory lookup; None when the owner has no instance yet"""

    def deploy_call(self, owner: str) -> ContractCall:
        return ContractCall('deploy', self.network.factory_address, (owner,))

    @abstractmethod
    async def get_sequence(self, address: str) -> Optional[int]:
        """Next account sequence number, None for non account-sequenced chains"""

    @abstractmethod
    async def build(self, call: ContractCall, sender: str, sequence: Optional[int], attempt: int = 1,
                    crypto_type: Optional[str] = None) -> UnsignedTx:
        """Encode a contract call for signing"""

    @abstractmethod
    async def broadcast(self, unsigned: UnsignedTx, signature: bytes) -> str:
        """Submit the signed transaction, returns the network-native hash"""

    @abstractmethod
    async def transaction_hash(self, unsigned: UnsignedTx, signature: bytes) -> str:
        """Hash the signed transaction will have once broadcast"""

    @abstractmethod
    async def get_receipt(self, tx_hash: str, call: Optional[ContractCall] = None) -> Optional[Receipt]:
        """Inclusion status, confirmation count and decoded effect; None if unseen"""

    def release_receipt(self, tx_hash: str):
        """Drop anything kept about a transaction that reached a terminal state"""

    @abstractmethod
    async def read_items(self, contract_address: str, owner: str) -> List[ItemRow]:
        """Decoded getAll() of the owner's todo contract"""

    async def close(self):
        pass

    def classify_error(self, exc: BaseException) -> BlockchainError:
        """
        Map a library exception onto the error taxonomy

        Args:
            exc: Exception raised by the RPC library

        Returns:
            BlockchainError instance (unknown errors become NetworkUnavailable
            only for transport-level failures, TransactionReverted never guessed)
        """
        if isinstance(exc, BlockchainError):
            return exc

        message = str(exc) or exc.__class__.__name__
        lowered = message.lower()

        for pattern, error_class in tuple(self.error_patterns) + tuple(COMMON_ERROR_PATTERNS):
            if pattern in lowered:
                if error_class is TransactionReverted:
                    return TransactionReverted(message, reason=message, network_id=self.network.id)
                return error_class(message, network_id=self.network.id)

        if isinstance(exc, (asyncio.TimeoutError, ConnectionError, aiohttp.ClientError, OSError)):
            return NetworkUnavailable(message, network_id=self.network.id)

        return BlockchainError(message, network_id=self.network.id)

    @asynccontextmanager
    async def rpc_errors(self, action: str):
        """Re-raise anything from the block as a classified BlockchainError"""
        try:
            yield
        except BlockchainError:
            raise
        except Exception as e:
            error = self.classify_error(e)
            logger.debug(f"{self.network.id}: {action} failed ({error.category}): {e}")
            raise error from e
