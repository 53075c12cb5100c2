"""
Blockchain Errors
Error taxonomy shared by wallet, transaction and contract layers
"""

from typing import Optional


class BlockchainError(Exception):
    """
    Base error for all chain interactions

    Carries enough structured detail (category, network, attempt count)
    for a caller to render a precise message.
    """

    category = "unknown_error"
    retryable = False

    def __init__(
        self,
        message: str = "",
        network_id: Optional[str] = None,
        attempts: int = 0,
        transaction=None,
    ):
        super().__init__(message or self.category)
        self.network_id = network_id
        self.attempts = attempts
        self.transaction = transaction

    def __str__(self):
        base = super().__str__()
        if self.network_id:
            return f"[{self.category}@{self.network_id}] {base}"
        return f"[{self.category}] {base}"


class ConfigurationError(BlockchainError):
    category = "configuration_error"


class NetworkNotFound(BlockchainError):
    category = "network_not_found"


class NetworkUnavailable(BlockchainError):
    """RPC endpoint unreachable or timed out"""
    category = "network_unavailable"
    retryable = True


class WalletRejected(BlockchainError):
    """User or signing authority declined"""
    category = "wallet_rejected"


class InsufficientFunds(BlockchainError):
    category = "insufficient_funds"


class NonceConflict(BlockchainError):
    """Sequence number already used or out of order"""
    category = "nonce_conflict"
    retryable = True


class NonceGap(NonceConflict):
    """Sequence number ahead of the chain ("nonce too high")"""


class AlreadySubmitted(NonceConflict):
    """The network already holds this exact signed transaction"""


class FeeUnderpriced(BlockchainError):
    category = "fee_underpriced"
    retryable = True


class TransactionReverted(BlockchainError):
    category = "transaction_reverted"

    def __init__(self, message: str = "", reason: Optional[str] = None, **kwargs):
        super().__init__(message or (reason or "execution reverted"), **kwargs)
        self.reason = reason


class ConfirmationTimeout(BlockchainError):
    """Confirmation not observed within the wait window; status left as-is"""
    category = "timeout"


class SessionClosed(BlockchainError):
    category = "session_closed"


class DuplicateProvisioning(BlockchainError):
    """Second contract instance detected for one (owner, network) pair"""
    category = "duplicate_provisioning"


class RetriesExhausted(BlockchainError):
    """Transient failure repeated until the attempt cap; now terminal"""
    category = "retries_exhausted"

    def __init__(self, last_error: BlockchainError, **kwargs):
        super().__init__(f"gave up after {kwargs.get('attempts', 0)} attempts: {last_error}", **kwargs)
        self.last_error = last_error
        self.last_category = last_error.category


class InvalidTransition(BlockchainError):
    category = "invalid_transition"


class ItemNotFound(BlockchainError):
    category = "item_not_found"
