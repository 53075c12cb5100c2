"""
Wallet Package
Signing sessions and signer capabilities per chain family
"""

from .signers import EnvKeyAuth, Signer, SignerAuth, derive_address
from .wallet_connector import WalletConnector, WalletSession

__all__ = ['EnvKeyAuth', 'Signer', 'SignerAuth', 'derive_address', 'WalletConnector', 'WalletSession']
