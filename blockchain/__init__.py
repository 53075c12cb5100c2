"""
Blockchain Interaction Package
Networks, transaction lifecycle, nonce sequencing and contract provisioning
"""

from .errors import BlockchainError
from .models import ChainFamily, ContractCall, ContractRef, Network, Transaction, TxStatus
from .network_registry import NetworkRegistry
from .nonce_manager import NonceManager
from .transaction_manager import TransactionManager
from .contract_factory import ContractFactoryClient

__all__ = [
    'BlockchainError',
    'ChainFamily',
    'ContractCall',
    'ContractRef',
    'Network',
    'Transaction',
    'TxStatus',
    'NetworkRegistry',
    'NonceManager',
    'TransactionManager',
    'ContractFactoryClient',
]
