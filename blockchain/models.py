"""
Data Models
Networks, contract references, transactions and todo items
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidTransition


class ChainFamily(str, Enum):
    """Networks sharing one account/transaction model"""

    EVM = "evm"
    SOLANA = "solana"
    POLKADOT = "polkadot"


@dataclass(frozen=True)
class Network:
    """Configured network, immutable once loaded"""

    id: str
    name: str
    family: ChainFamily
    rpc_url: str
    factory_address: str
    chain_id: Optional[int] = None
    confirmation_depth: int = 1
    confirmation_timeout: float = 120.0
    poll_interval: float = 2.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    explorer_url: str = ""
    is_testnet: bool = False
    ss58_format: int = 0

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM

    @property
    def account_sequenced(self) -> bool:
        """Solana orders by recent blockhash, the others by per-account nonce"""
        return self.family != ChainFamily.SOLANA

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)"""
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))

    def tx_explorer_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url}/tx/{tx_hash}"

    def address_explorer_url(self, address: str) -> str:
        return f"{self.explorer_url}/address/{address}"


@dataclass
class ContractRef:
    """Owner's contract instance on one network"""

    owner: str
    network_id: str
    contract_address: str
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.owner, self.network_id)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> "ContractRef":
        return cls(**data)


@dataclass(frozen=True)
class ContractCall:
    """
    Chain-agnostic contract invocation

    method is one of deploy/create/update/remove; deploy targets the
    factory, the others target the owner's todo contract.
    """

    method: str
    contract_address: str
    args: Tuple = ()

    def to_dict(self) -> Dict:
        return {'method': self.method, 'contract_address': self.contract_address, 'args': list(self.args)}


@dataclass
class Receipt:
    """What a chain client reports about a broadcast transaction"""

    success: bool
    confirmations: int = 0
    effect: Dict[str, Any] = field(default_factory=dict)
    revert_reason: Optional[str] = None


class TxStatus(str, Enum):
    QUEUED = "queued"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    TxStatus.QUEUED: {TxStatus.SUBMITTED, TxStatus.FAILED},
    TxStatus.SUBMITTED: {TxStatus.CONFIRMED, TxStatus.FAILED, TxStatus.QUEUED},
    TxStatus.CONFIRMED: set(),
    TxStatus.FAILED: set(),
}


@dataclass
class Transaction:
    """
    One contract call's lifecycle

    Status moves Queued -> Submitted -> Confirmed|Failed. Submitted falls
    back to Queued only on an explicit retry.
    """

    network_id: str
    sender: str
    call: ContractCall
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TxStatus = TxStatus.QUEUED
    hash: Optional[str] = None
    # every signed form that may have reached the network, latest last
    hashes: List[str] = field(default_factory=list)
    attempts: int = 0
    last_error: Optional[Exception] = None
    sequence: Optional[int] = None
    sequences_used: List[int] = field(default_factory=list)
    confirmations: int = 0
    effect: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in (TxStatus.CONFIRMED, TxStatus.FAILED)

    def transition(self, new_status: TxStatus):
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"transaction {self.id}: {self.status.value} -> {new_status.value}",
                network_id=self.network_id,
                transaction=self,
            )
        self.status = new_status
        self.updated_at = time.time()

    def summary(self) -> Dict:
        """Archive form kept in item history"""
        return {
            'id': self.id,
            'hash': self.hash,
            'hashes': list(self.hashes),
            'method': self.call.method,
            'status': self.status.value,
            'attempts': self.attempts,
            'error': str(self.last_error) if self.last_error else None,
            'updated_at': self.updated_at,
        }


class ItemState(str, Enum):
    PENDING = "pending"
    DURABLE = "durable"
    FAILED = "failed"


@dataclass
class TodoItem:
    """
    Cached todo entry

    `confirmed` holds the last on-chain state (text, done, updated_at)
    and is what a failed write rolls back to. `removed` hides an item
    whose removal is still pending.
    """

    id: str
    text: str
    done: bool = False
    updated_at: float = field(default_factory=time.time)
    tx_hash: Optional[str] = None
    state: ItemState = ItemState.PENDING
    pending_tx: Optional[str] = None
    failed_tx_hash: Optional[str] = None
    confirmed: Optional[Dict[str, Any]] = None
    removed: bool = False
    history: List[Dict] = field(default_factory=list)

    @property
    def is_durable(self) -> bool:
        return self.state == ItemState.DURABLE

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['state'] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TodoItem":
        data = dict(data)
        data['state'] = ItemState(data['state'])
        return cls(**data)
