"""
Todo Package
Todo operations, off-chain cache and reconciliation
"""

from .todo_cache import TodoCache
from .reconciler import Reconciler
from .todo_client import TodoContractClient

__all__ = ['TodoCache', 'Reconciler', 'TodoContractClient']
