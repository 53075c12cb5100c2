"""
Todo Contract Client
Todo CRUD on top of the owner's on-chain contract
"""

import asyncio
import time
from typing import Dict, List, Optional, Set

from loguru import logger

from blockchain.errors import BlockchainError, ConfirmationTimeout, InvalidTransition, ItemNotFound, SessionClosed
from blockchain.models import ContractCall, ContractRef, ItemState, TodoItem, Transaction, TxStatus
from .reconciler import Reconciler
from .todo_cache import TodoCache


class TodoContractClient:
    """
    Maps todo operations onto contract calls

    Mutations return as soon as the transaction is broadcast; the item is
    cached as PENDING and a background tracker hands the outcome to the
    Reconciler. Reads never touch the chain except for sync().
    """

    def __init__(self, connector, tx_manager, factory, cache: TodoCache, reconciler: Optional[Reconciler] = None):
        """
        Initialize Todo Contract Client

        Args:
            connector: WalletConnector for chain clients
            tx_manager: TransactionManager executing writes
            factory: ContractFactoryClient resolving the owner's contract
            cache: Off-chain todo cache
            reconciler: Applies confirmations (one is created if omitted)
        """
        self.connector = connector
        self.tx_manager = tx_manager
        self.factory = factory
        self.cache = cache
        self.reconciler = reconciler or Reconciler(cache)

        self._trackers: Dict[str, asyncio.Task] = {}
        self._session_trackers: Dict[str, Set[str]] = {}

    @staticmethod
    def _require(session):
        if not session.connected:
            raise SessionClosed(f"Session {session.id} is closed", network_id=session.network_id)

    async def create(self, session, text: str) -> TodoItem:
        """
        Create an item; returns it PENDING under a provisional id

        The provisional id is replaced by the contract's id once the
        create confirms.
        """
        self._require(session)
        ref = await self.factory.resolve_or_deploy(session)

        tx = await self.tx_manager.submit(session, ContractCall('create', ref.contract_address, (text,)))

        item = TodoItem(id=tx.id, text=text, tx_hash=tx.hash, pending_tx=tx.id)
        self.cache.put(session.network_id, session.address, item)
        self._track(session, tx, item.id)
        return item

    async def update(self, session, item_id: str, text: Optional[str] = None, done: Optional[bool] = None) -> TodoItem:
        """
        Change an item's text and/or done flag

        Args:
            session: Connected WalletSession
            item_id: On-chain or provisional item id
            text: New text, unchanged if None
            done: New done flag, unchanged if None

        Returns:
            The item with the optimistic values, PENDING
        """
        self._require(session)
        item = await self._settled_item(session, item_id)
        ref = await self.factory.resolve_or_deploy(session)

        new_text = item.text if text is None else text
        new_done = item.done if done is None else bool(done)

        tx = await self.tx_manager.submit(
            session, ContractCall('update', ref.contract_address, (item.id, new_text, new_done))
        )

        item.text = new_text
        item.done = new_done
        self._mark_pending(item, tx)
        self.cache.put(session.network_id, session.address, item)
        self._track(session, tx, item.id)
        return item

    async def remove(self, session, item_id: str):
        """Remove an item; it disappears from list() immediately"""
        self._require(session)

        item = self._cached(session, item_id)
        if item is not None and item.confirmed is None and item.state == ItemState.FAILED:
            # Its create never landed, nothing to remove on chain
            self.cache.delete(session.network_id, session.address, item.id, archive=True)
            logger.info(f"{session.network_id}: dismissed failed item {item.id}")
            return

        item = await self._settled_item(session, item_id)
        ref = await self.factory.resolve_or_deploy(session)

        tx = await self.tx_manager.submit(session, ContractCall('remove', ref.contract_address, (item.id,)))

        item.removed = True
        self._mark_pending(item, tx)
        self.cache.put(session.network_id, session.address, item)
        self._track(session, tx, item.id)

    def list(self, session) -> List[TodoItem]:
        """Cached items for the session's account and network"""
        return [
            item for item in self.cache.list(session.network_id, session.address)
            if not item.removed
        ]

    def get(self, session, item_id: str) -> TodoItem:
        item = self._cached(session, item_id)
        if item is None or item.removed:
            raise ItemNotFound(f"No todo item {item_id}", network_id=session.network_id)
        return item

    async def refresh(self, session, item_id: str, timeout: Optional[float] = None) -> Optional[TodoItem]:
        """
        Wait again for an item's pending write and apply the outcome

        Args:
            session: Connected WalletSession
            item_id: On-chain or provisional item id
            timeout: Seconds to wait (network default if None)

        Returns:
            The item as now cached, None if its removal confirmed

        Raises:
            ItemNotFound: Unknown item
            ConfirmationTimeout: The write is still pending
        """
        self._require(session)
        item = self._cached(session, item_id)
        if item is None:
            raise ItemNotFound(f"No todo item {item_id}", network_id=session.network_id)

        tx = self.reconciler.tracked(item.pending_tx) if item.pending_tx else None
        if tx is not None and item.pending_tx not in self._trackers:
            await self.tx_manager.wait_for_confirmation(tx, timeout=timeout, session=session)
            self._reconcile(tx)
        else:
            await self._settle(session, item)

        return self._cached(session, item_id)

    async def sync(self, session) -> List[TodoItem]:
        """
        Rebuild durable cache entries from the contract's getAll()

        Pending writes are polled once first; items with a write still in
        flight are left alone.
        """
        self._require(session)
        network_id, owner = session.network_id, session.address
        client = self.connector.client_for(network_id)

        for cached in self.cache.list(network_id, owner):
            if cached.pending_tx:
                await self._settle(session, cached, timeout=0)

        ref = self.factory.get(owner, network_id)
        if ref is None:
            address = await client.lookup_contract(owner)
            if not address:
                logger.info(f"{network_id}: {owner} has no todo contract yet")
                return self.list(session)
            ref = ContractRef(owner, network_id, address)

        rows = await client.read_items(ref.contract_address, owner)
        on_chain = {item_id: (text, done) for item_id, text, done in rows}

        in_flight = {
            cached.id for cached in self.cache.list(network_id, owner)
            if cached.pending_tx and self.reconciler.tracked(cached.pending_tx) is not None
        }

        for cached in self.cache.list(network_id, owner):
            if cached.id not in in_flight and cached.id not in on_chain:
                self.cache.delete(network_id, owner, cached.id, archive=True)

        now = time.time()
        for item_id, (text, done) in on_chain.items():
            if item_id in in_flight:
                continue

            item = self.cache.get(network_id, owner, item_id) or TodoItem(id=item_id, text=text)
            item.text = text
            item.done = done
            item.removed = False
            item.state = ItemState.DURABLE
            item.pending_tx = None
            item.failed_tx_hash = None
            item.confirmed = {'text': text, 'done': done, 'updated_at': now, 'confirmed_at': now}
            self.cache.put(network_id, owner, item)

        logger.info(f"{network_id}: synced {len(on_chain)} items for {owner}")
        return self.list(session)

    async def wait_until_settled(self, session):
        """Wait for every tracker started from this session"""
        tx_ids = list(self._session_trackers.get(session.id, ()))
        tasks = [self._trackers[tx_id] for tx_id in tx_ids if tx_id in self._trackers]
        if tasks:
            await asyncio.gather(*tasks)

    async def close(self):
        """Cancel outstanding trackers; transactions stay as last observed"""
        tasks = list(self._trackers.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _cached(self, session, item_id: str) -> Optional[TodoItem]:
        network_id, owner = session.network_id, session.address
        item = self.cache.get(network_id, owner, item_id)
        if item is None:
            item = self.cache.get(network_id, owner, self.reconciler.resolve_id(network_id, owner, str(item_id)))
        return item

    async def _settle(self, session, item: TodoItem, timeout: Optional[float] = None):
        """
        Bring the item's pending write to a conclusion if one is known

        A running tracker is awaited; otherwise the transaction is polled
        for up to `timeout` seconds and reconciled if it ended.
        """
        tracker = self._trackers.get(item.pending_tx)
        if tracker is not None:
            if timeout != 0:
                await asyncio.shield(tracker)
            return

        tx = self.reconciler.tracked(item.pending_tx)
        if tx is None:
            return

        if not tx.is_terminal:
            try:
                await self.tx_manager.wait_for_confirmation(tx, timeout=timeout, session=session)
            except ConfirmationTimeout:
                logger.debug(f"{tx.network_id}: {tx.hash} still pending")
                return
        self._reconcile(tx)

    async def _settled_item(self, session, item_id: str) -> TodoItem:
        """Cached item, after its create has confirmed"""
        item = self._cached(session, item_id)
        if item is None or item.removed:
            raise ItemNotFound(f"No todo item {item_id}", network_id=session.network_id)

        if item.confirmed is None:
            if item.pending_tx:
                await self._settle(session, item)
            item = self._cached(session, item_id)

            if item is None or item.confirmed is None:
                raise InvalidTransition(
                    f"Todo item {item_id} has no confirmed create",
                    network_id=session.network_id
                )
        return item

    @staticmethod
    def _mark_pending(item: TodoItem, tx: Transaction):
        item.updated_at = time.time()
        item.state = ItemState.PENDING
        item.pending_tx = tx.id
        item.tx_hash = tx.hash

    def _track(self, session, tx: Transaction, item_id: str):
        self.reconciler.track(tx, item_id)

        task = asyncio.create_task(self._follow(session, tx))
        self._trackers[tx.id] = task
        self._session_trackers.setdefault(session.id, set()).add(tx.id)

        def _done(_task):
            self._trackers.pop(tx.id, None)
            self._session_trackers.get(session.id, set()).discard(tx.id)

        task.add_done_callback(_done)

    def _reconcile(self, tx: Transaction):
        if tx.status == TxStatus.CONFIRMED:
            self.reconciler.on_transaction_confirmed(tx)
        elif tx.status == TxStatus.FAILED:
            self.reconciler.on_transaction_failed(tx)

    async def _follow(self, session, tx: Transaction):
        try:
            await self.tx_manager.wait_for_confirmation(tx, session=session)
        except SessionClosed:
            logger.info(f"{tx.network_id}: session closed, {tx.hash} left {tx.status.value}")
            self.reconciler.forget(tx)
            return
        except ConfirmationTimeout as e:
            # Still tracked: refresh() or sync() pick it up later
            logger.warning(f"{tx.network_id}: {e}")
            return
        except BlockchainError as e:
            logger.error(f"{tx.network_id}: lost track of {tx.hash}: {e}")
            self.reconciler.forget(tx)
            return

        self._reconcile(tx)
