"""
Todo Cache
Off-chain view of each owner's todo list, one namespace per network
"""

from typing import Dict, List, Optional

from blockchain.models import TodoItem
from utils.data_cache import DataCache


class TodoCache:
    """
    TodoItems stored in the DataCache under todo:<network>:<owner>:<id>

    Networks never share entries, so the same owner on two networks has
    two independent lists.
    """

    def __init__(self, store: DataCache):
        self.store = store

    @staticmethod
    def _prefix(network_id: str, owner: str) -> str:
        return f"todo:{network_id}:{owner}:"

    def _key(self, network_id: str, owner: str, item_id: str) -> str:
        return self._prefix(network_id, owner) + str(item_id)

    @staticmethod
    def _history_key(network_id: str, owner: str, item_id: str) -> str:
        return f"history:{network_id}:{owner}:{item_id}"

    def get(self, network_id: str, owner: str, item_id: str) -> Optional[TodoItem]:
        data = self.store.get(self._key(network_id, owner, item_id))
        return TodoItem.from_dict(data) if data else None

    def put(self, network_id: str, owner: str, item: TodoItem):
        self.store.set(self._key(network_id, owner, item.id), item.to_dict())

    def delete(self, network_id: str, owner: str, item_id: str, archive: bool = False):
        """Drop an item; with archive=True its history outlives it"""
        item = self.get(network_id, owner, item_id)
        if item is None:
            return

        if archive and item.history:
            key = self._history_key(network_id, owner, item_id)
            self.store.set(key, (self.store.get(key) or []) + item.history)

        self.store.delete(self._key(network_id, owner, item_id))

    def list(self, network_id: str, owner: str) -> List[TodoItem]:
        """Cached items in insertion order, pending removals included"""
        entries = self.store.scan(self._prefix(network_id, owner))
        return [TodoItem.from_dict(data) for data in entries.values()]

    def history(self, network_id: str, owner: str, item_id: str) -> List[Dict]:
        """Archived transaction summaries for an item, live or removed"""
        archived = self.store.get(self._history_key(network_id, owner, item_id)) or []
        item = self.get(network_id, owner, item_id)
        return archived + (item.history if item else [])

    def clear(self, network_id: str, owner: str) -> int:
        return self.store.clear_prefix(self._prefix(network_id, owner))

    @staticmethod
    def _alias_key(network_id: str, owner: str, item_id: str) -> str:
        return f"alias:{network_id}:{owner}:{item_id}"

    def set_alias(self, network_id: str, owner: str, provisional_id: str, item_id: str):
        """Remember the contract's id for an item created under a provisional one"""
        self.store.set(self._alias_key(network_id, owner, provisional_id), str(item_id))

    def resolve(self, network_id: str, owner: str, item_id: str) -> str:
        return self.store.get(self._alias_key(network_id, owner, item_id)) or str(item_id)
