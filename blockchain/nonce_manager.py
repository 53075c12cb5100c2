"""
Nonce Manager
Sequence number allocation for account-sequenced chains (EVM, Polkadot)
"""

from typing import Dict, Optional, Tuple

from loguru import logger

AccountKey = Tuple[str, str]


class NonceManager:
    """
    Tracks sequence numbers per (account, network)

    The chain is always asked first; the local record only covers what the
    endpoint may not show yet (broadcasts still propagating, a conflict
    floor after "nonce too low"). Callers hold the account's submission
    lock, so allocation itself needs no locking.
    """

    def __init__(self):
        self.last_broadcast: Dict[AccountKey, int] = {}

    async def next_nonce(self, client, address: str, floor: Optional[int] = None) -> Optional[int]:
        """
        Sequence number for the next attempt

        Args:
            client: Chain client of the target network
            address: Sending account
            floor: Lowest acceptable value (one past a conflicting nonce)

        Returns:
            Nonce to use, None for chains without account sequencing
        """
        chain_nonce = await client.get_sequence(address)
        if chain_nonce is None:
            return None

        key = (address, client.network.id)
        nonce = chain_nonce

        last = self.last_broadcast.get(key)
        if last is not None and last + 1 > nonce:
            nonce = last + 1
        if floor is not None and floor > nonce:
            nonce = floor

        logger.debug(f"Allocated nonce {nonce} for {address} on {client.network.id} (chain: {chain_nonce})")
        return nonce

    def mark_broadcast(self, address: str, network_id: str, nonce: int):
        """Record a nonce the network accepted"""
        key = (address, network_id)
        if nonce > self.last_broadcast.get(key, -1):
            self.last_broadcast[key] = nonce

    def confirm_nonce(self, address: str, network_id: str, nonce: int):
        """The chain included `nonce`; local state below it is redundant"""
        key = (address, network_id)
        last = self.last_broadcast.get(key)
        if last is not None and last <= nonce:
            del self.last_broadcast[key]
            logger.debug(f"Chain caught up with nonce {nonce} for {address} on {network_id}")

    def reset_nonce(self, address: str, network_id: str):
        """Forget local state, next allocation trusts the chain alone"""
        if self.last_broadcast.pop((address, network_id), None) is not None:
            logger.warning(f"Nonce state reset for {address} on {network_id}")
