"""
Reconciler
Folds terminal transactions back into the todo cache
"""

import time
from typing import Dict, Optional, Tuple

from loguru import logger

from blockchain.models import ItemState, TodoItem, Transaction
from .todo_cache import TodoCache


class Reconciler:
    """
    Applies on-chain outcomes to cached items

    A confirmed write overwrites the item with what the chain now holds;
    a failed write rolls the item back to its last confirmed snapshot.
    Confirmations are applied in the order they arrive, so the last
    confirmed write wins and nothing is merged.
    """

    def __init__(self, cache: TodoCache):
        self.cache = cache
        # tx id -> (transaction, cached item id it affects)
        self._tracked: Dict[str, Tuple[Transaction, str]] = {}

    def track(self, tx: Transaction, item_id: str):
        self._tracked[tx.id] = (tx, str(item_id))

    def forget(self, tx: Transaction):
        """Stop following a transaction; its item keeps the last observed state"""
        if self._tracked.pop(tx.id, None) is not None:
            logger.debug(f"{tx.network_id}: no longer tracking {tx.hash or tx.id}")

    def tracked(self, tx_id: str) -> Optional[Transaction]:
        """Transaction still awaiting reconciliation, None once applied or forgotten"""
        entry = self._tracked.get(tx_id)
        return entry[0] if entry else None

    def resolve_id(self, network_id: str, owner: str, item_id: str) -> str:
        return self.cache.resolve(network_id, owner, item_id)

    def tracked_count(self) -> int:
        return len(self._tracked)

    def _item_id(self, tx: Transaction) -> Optional[str]:
        entry = self._tracked.pop(tx.id, None)
        return entry[1] if entry else None

    def on_transaction_confirmed(self, tx: Transaction) -> Optional[TodoItem]:
        item_id = self._item_id(tx)
        if item_id is None:
            return None

        network_id, owner = tx.network_id, tx.sender
        method = tx.call.method
        item = self.cache.get(network_id, owner, item_id)

        if method == 'remove':
            if item is not None:
                item.history.append(tx.summary())
                self.cache.put(network_id, owner, item)
                self.cache.delete(network_id, owner, item_id, archive=True)
            logger.info(f"{network_id}: item {item_id} removed ({tx.hash})")
            return None

        snapshot = {'updated_at': tx.updated_at, 'confirmed_at': time.time()}
        if method == 'create':
            text, = tx.call.args
            snapshot.update(text=text, done=False)
        else:
            _item, text, done = tx.call.args
            snapshot.update(text=text, done=bool(done))

        if method == 'create':
            chain_id = str(tx.effect['item_id'])
            history = item.history if item is not None else []
            if item is not None:
                self.cache.delete(network_id, owner, item_id)
            self.cache.set_alias(network_id, owner, item_id, chain_id)

            item = TodoItem(id=chain_id, text=snapshot['text'], history=history)
            item_id = chain_id

        if item is None:
            item = TodoItem(id=item_id, text=snapshot['text'])

        item.confirmed = snapshot

        # A newer write still pending keeps its optimistic values on display
        if item.pending_tx in (None, tx.id):
            item.text = snapshot['text']
            item.done = snapshot['done']
            item.updated_at = snapshot['updated_at']
            item.tx_hash = tx.hash
            item.state = ItemState.DURABLE
            item.pending_tx = None
            item.failed_tx_hash = None
            item.removed = False

        item.history.append(tx.summary())
        self.cache.put(network_id, owner, item)

        logger.info(f"{network_id}: item {item_id} durable after {method} ({tx.hash})")
        return item

    def on_transaction_failed(self, tx: Transaction) -> Optional[TodoItem]:
        item_id = self._item_id(tx)
        if item_id is None:
            return None

        network_id, owner = tx.network_id, tx.sender
        item = self.cache.get(network_id, owner, item_id)
        if item is None:
            return None

        item.history.append(tx.summary())

        if item.pending_tx in (None, tx.id):
            if item.confirmed is not None:
                item.text = item.confirmed['text']
                item.done = item.confirmed['done']
                item.updated_at = item.confirmed['updated_at']
            # A create that never confirmed stays listed as failed until dismissed
            item.removed = False
            item.pending_tx = None
            item.state = ItemState.FAILED
            item.failed_tx_hash = tx.hash

        self.cache.put(network_id, owner, item)

        logger.warning(f"{network_id}: {tx.call.method} of item {item_id} failed: {tx.last_error}")
        return item
