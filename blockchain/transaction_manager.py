"""
Transaction Manager
Builds, signs, submits and confirms contract calls on every chain family
"""

import asyncio
from typing import Dict, Optional

from loguru import logger

from utils.keyed_lock import KeyedLock
from .errors import (
    AlreadySubmitted,
    BlockchainError,
    ConfirmationTimeout,
    FeeUnderpriced,
    InvalidTransition,
    NetworkUnavailable,
    NonceConflict,
    NonceGap,
    RetriesExhausted,
    SessionClosed,
    TransactionReverted,
)
from .models import ContractCall, Transaction, TxStatus
from .nonce_manager import NonceManager


class TransactionManager:
    """
    Drives transactions to a terminal state

    Submissions for one (account, network) run strictly one at a time;
    different accounts or networks proceed concurrently. Transient
    failures are retried with exponential backoff up to the network's
    max_attempts, recomputing the nonce before every fresh build. A
    broadcast that failed in transit is resent byte for byte instead, so
    a copy the node did accept cannot be joined by a second transaction.
    """

    def __init__(self, connector, nonce_manager: Optional[NonceManager] = None):
        """
        Initialize Transaction Manager

        Args:
            connector: WalletConnector providing signing and chain clients
            nonce_manager: Shared nonce tracker (one is created if omitted)
        """
        self.connector = connector
        self.registry = connector.registry
        self.nonce_manager = nonce_manager or NonceManager()

        self._account_locks = KeyedLock()
        self.transactions: Dict[str, Transaction] = {}

        self.stats = {
            'submitted': 0,
            'confirmed': 0,
            'failed': 0,
            'retries': 0,
        }

    async def submit(self, session, call: ContractCall) -> Transaction:
        """
        Sign and broadcast a contract call

        Args:
            session: Connected WalletSession
            call: Contract call to execute

        Returns:
            Transaction in SUBMITTED state with its hash

        Raises:
            SessionClosed: Session disconnected before the call was queued
            RetriesExhausted: Transient failures hit the attempt cap
            BlockchainError: Terminal failure (revert, funds, rejection)
        """
        if not session.connected:
            raise SessionClosed(f"Session {session.id} is closed", network_id=session.network_id)

        tx = Transaction(network_id=session.network_id, sender=session.address, call=call)
        self.transactions[tx.id] = tx

        logger.info(f"{tx.network_id}: queued {call.method} {tx.id[:8]} from {tx.sender}")

        await self._send(session, tx)
        return tx

    async def retry(self, session, tx: Transaction) -> Transaction:
        """
        Resubmit a SUBMITTED transaction the network has not included

        The replacement reuses the original nonce, so on account-sequenced
        chains it supersedes the stuck broadcast instead of adding another.
        """
        if tx.status != TxStatus.SUBMITTED:
            raise InvalidTransition(
                f"only submitted transactions can be retried ({tx.status.value})",
                network_id=tx.network_id,
                transaction=tx,
            )

        client = self.connector.client_for(tx.network_id)
        receipt = await self._find_receipt(client, tx)
        if receipt is not None:
            raise InvalidTransition(
                f"transaction {tx.hash} is already included",
                network_id=tx.network_id,
                transaction=tx,
            )

        tx.transition(TxStatus.QUEUED)
        logger.warning(f"{tx.network_id}: retrying {tx.hash} with nonce {tx.sequence}")

        await self._send(session, tx, replace_sequence=tx.sequence)
        return tx

    async def _send(self, session, tx: Transaction, replace_sequence: Optional[int] = None):
        network = self.registry.get(tx.network_id)
        client = self.connector.client_for(network.id)
        max_attempt = tx.attempts + network.max_attempts
        floor = None
        # (unsigned, signature, hash) of a broadcast that may have been accepted
        in_doubt = None

        async with self._account_locks.hold((tx.sender, network.id)):
            while True:
                tx.attempts += 1
                sequence = None
                sent = False

                try:
                    if in_doubt is not None:
                        # Same bytes again, so they land at most once
                        unsigned, signature, expected = in_doubt
                        sequence = unsigned.sequence
                    else:
                        if replace_sequence is not None:
                            sequence, replace_sequence = replace_sequence, None
                        elif network.account_sequenced:
                            sequence = await self.nonce_manager.next_nonce(client, tx.sender, floor)

                        unsigned = await client.build(
                            tx.call, tx.sender, sequence, tx.attempts,
                            crypto_type=session.signer.crypto_type
                        )
                        signature = self.connector.sign(session, unsigned.payload)
                        expected = await client.transaction_hash(unsigned, signature)

                        tx.sequence = sequence
                        if sequence is not None:
                            tx.sequences_used.append(sequence)

                    if expected not in tx.hashes:
                        tx.hashes.append(expected)
                    sent = True
                    tx_hash = await client.broadcast(unsigned, signature)

                except BlockchainError as e:
                    error = e
                    error.network_id = error.network_id or network.id
                    tx_hash = None

                    if sent and isinstance(error, AlreadySubmitted):
                        # The earlier copy of these bytes reached the network
                        tx_hash = expected
                    elif in_doubt is not None and isinstance(error, NonceConflict):
                        try:
                            tx_hash = await self._landed_hash(client, tx)
                        except NetworkUnavailable as lookup_error:
                            error = lookup_error

                    if tx_hash is None:
                        tx.last_error = error
                        if not error.retryable:
                            self._fail(tx, error)
                            raise error

                        if sent and isinstance(error, NetworkUnavailable):
                            # Lost in transit, or accepted with the answer lost
                            in_doubt = (unsigned, signature, expected)
                        else:
                            if sent and (in_doubt is None or isinstance(error, NonceConflict)) \
                                    and expected in tx.hashes:
                                tx.hashes.remove(expected)
                            if in_doubt is not None and isinstance(error, FeeUnderpriced):
                                # Supersede the copy in doubt at the same nonce
                                replace_sequence = sequence
                            in_doubt = None

                        if isinstance(error, NonceGap):
                            self.nonce_manager.reset_nonce(tx.sender, network.id)
                            floor = None
                        elif isinstance(error, NonceConflict) and sequence is not None:
                            floor = sequence + 1

                        if tx.attempts >= max_attempt:
                            exhausted = RetriesExhausted(
                                error, network_id=network.id, attempts=tx.attempts, transaction=tx
                            )
                            self._fail(tx, exhausted)
                            raise exhausted from error

                        delay = network.backoff_delay(tx.attempts)
                        self.stats['retries'] += 1
                        logger.warning(
                            f"{network.id}: attempt {tx.attempts}/{network.max_attempts} for {tx.id[:8]} "
                            f"failed ({error.category}), retrying in {delay:.1f}s"
                        )
                        await asyncio.sleep(delay)
                        continue

                tx.hash = tx_hash
                if tx_hash not in tx.hashes:
                    tx.hashes.append(tx_hash)
                tx.transition(TxStatus.SUBMITTED)
                if tx.sequence is not None:
                    self.nonce_manager.mark_broadcast(tx.sender, network.id, tx.sequence)

                self.stats['submitted'] += 1
                logger.info(f"{network.id}: submitted {tx.call.method} {tx_hash} (attempt {tx.attempts})")
                return

    async def _landed_hash(self, client, tx: Transaction) -> Optional[str]:
        """Our hash that took the contested nonce, None if another transaction did"""
        try:
            receipt = await self._find_receipt(client, tx)
        except TransactionReverted:
            # Included, the effect just failed to decode
            return tx.hash or tx.hashes[-1]
        if receipt is None:
            if client.finds_receipts_by_hash:
                return None
            # No way to tell our copy from another; never send twice
            logger.warning(f"{tx.network_id}: cannot verify {tx.hashes[-1]}, assuming it was included")
            return tx.hashes[-1]
        logger.info(f"{tx.network_id}: earlier broadcast {tx.hash} of {tx.id[:8]} was included")
        return tx.hash

    async def _find_receipt(self, client, tx: Transaction):
        """Receipt of whichever broadcast form got included, latest first"""
        for tx_hash in reversed(tx.hashes or [tx.hash]):
            receipt = await client.get_receipt(tx_hash, tx.call)
            if receipt is not None:
                if tx.hash is not None and tx_hash != tx.hash:
                    logger.info(f"{tx.network_id}: {tx_hash} was included in place of {tx.hash}")
                tx.hash = tx_hash
                return receipt
        return None

    def _fail(self, tx: Transaction, error: BlockchainError):
        tx.last_error = error
        tx.transition(TxStatus.FAILED)
        error.transaction = tx
        error.attempts = tx.attempts

        self.stats['failed'] += 1
        logger.error(f"{tx.network_id}: {tx.call.method} {tx.id[:8]} failed after {tx.attempts} attempt(s): {error}")
        self._finish(tx)

    def _finish(self, tx: Transaction):
        """Stop holding a terminal transaction; its owner keeps the object"""
        self.transactions.pop(tx.id, None)
        client = self.connector.client_for(tx.network_id)
        for tx_hash in tx.hashes:
            client.release_receipt(tx_hash)

    async def wait_for_confirmation(self, tx: Transaction, timeout: Optional[float] = None, session=None) -> Transaction:
        """
        Poll until the transaction is CONFIRMED or FAILED

        Args:
            tx: Submitted transaction
            timeout: Seconds to wait (network confirmation_timeout if None)
            session: Session whose closing cancels the wait

        Returns:
            The transaction in a terminal state

        Raises:
            ConfirmationTimeout: Deadline passed, status left untouched
            SessionClosed: Session closed while waiting, status left untouched
        """
        if tx.is_terminal:
            return tx
        if tx.status != TxStatus.SUBMITTED:
            raise InvalidTransition(
                f"transaction {tx.id} has not been submitted",
                network_id=tx.network_id,
                transaction=tx,
            )

        network = self.registry.get(tx.network_id)
        client = self.connector.client_for(network.id)

        loop = asyncio.get_running_loop()
        wait_for = network.confirmation_timeout if timeout is None else timeout
        deadline = loop.time() + wait_for

        while True:
            if session is not None and session.closed.is_set():
                raise SessionClosed(
                    f"Session closed while waiting for {tx.hash}",
                    network_id=network.id,
                    transaction=tx,
                )

            try:
                receipt = await self._find_receipt(client, tx)
            except NetworkUnavailable as e:
                logger.warning(f"{network.id}: receipt poll for {tx.hash} failed: {e}")
                receipt = None
            except TransactionReverted as e:
                # Included but the expected event is missing
                self._fail(tx, e)
                return tx

            if receipt is not None:
                tx.confirmations = receipt.confirmations

                if not receipt.success:
                    error = TransactionReverted(reason=receipt.revert_reason, network_id=network.id)
                    self._fail(tx, error)
                    return tx

                if receipt.confirmations >= network.confirmation_depth:
                    tx.effect = dict(receipt.effect)
                    tx.transition(TxStatus.CONFIRMED)
                    if tx.sequence is not None:
                        self.nonce_manager.confirm_nonce(tx.sender, network.id, tx.sequence)
                    self._finish(tx)

                    self.stats['confirmed'] += 1
                    logger.success(
                        f"{network.id}: {tx.call.method} {tx.hash} confirmed "
                        f"({receipt.confirmations}/{network.confirmation_depth})"
                    )
                    return tx

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConfirmationTimeout(
                    f"{tx.hash} not confirmed within {wait_for:.0f}s",
                    network_id=network.id,
                    attempts=tx.attempts,
                    transaction=tx,
                )

            delay = min(network.poll_interval, remaining)
            if session is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(session.closed.wait(), delay)
                except asyncio.TimeoutError:
                    continue

    async def execute(self, session, call: ContractCall, timeout: Optional[float] = None) -> Transaction:
        """
        Submit and wait for a terminal state

        Raises:
            BlockchainError: The transaction ended FAILED (the recorded
                error, with .transaction set)
        """
        tx = await self.submit(session, call)
        await self.wait_for_confirmation(tx, timeout=timeout, session=session)

        if tx.status == TxStatus.FAILED:
            raise tx.last_error
        return tx

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'in_flight': len(self.transactions),
        }
