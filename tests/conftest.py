"""
Shared fixtures: an in-memory chain, test networks and wired components
"""

import hashlib
import itertools
from typing import Dict, List, Optional

import pytest

from blockchain.contract_factory import ContractFactoryClient
from blockchain.errors import AlreadySubmitted, NonceConflict
from blockchain.models import ChainFamily, ContractCall, Network, Receipt
from blockchain.network_registry import NetworkRegistry
from blockchain.transaction_manager import TransactionManager
from chains.base import ChainClient, UnsignedTx
from todo.todo_cache import TodoCache
from todo.todo_client import TodoContractClient
from utils.data_cache import DataCache
from wallet.signers import Signer, SignerAuth
from wallet.wallet_connector import WalletConnector

ADDRESSES = {
    ChainFamily.EVM: "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
    ChainFamily.SOLANA: "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
    ChainFamily.POLKADOT: "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY",
}


class FakeChainClient(ChainClient):
    """
    Deterministic chain in memory

    A broadcast is "included" the first time its receipt is read, which
    applies the call to the fake contract state. Set `hold` to keep
    receipts unseen, push exceptions (or callables returning one) on
    `broadcast_errors` to fail the next broadcasts before the node sees
    them, or on `lost_responses` to fail them after the node accepted.
    A broadcast reusing the nonce of an uncommitted transaction replaces it.
    """

    _builds = itertools.count(1)

    def __init__(self, network: Network):
        super().__init__(network)
        self.contracts: Dict[str, str] = {}
        self.items: Dict[str, Dict[int, tuple]] = {}
        self.nonces: Dict[str, int] = {}
        self.next_item_id = 1

        self.broadcasts: List[dict] = []
        self.txs: Dict[str, dict] = {}
        self.pool: Dict[tuple, str] = {}
        self.released: List[str] = []
        self.broadcast_errors: List[Exception] = []
        self.lost_responses: List[Exception] = []
        self.revert_methods = set()
        self.hold = False
        self.confirmations: Optional[int] = None
        self.ping_error: Optional[Exception] = None
        self.closed = False

    @property
    def deploy_count(self) -> int:
        return len(self.accepted('deploy'))

    def accepted(self, method: Optional[str] = None) -> List[dict]:
        return [
            b for b in self.broadcasts
            if not b['rejected'] and (method is None or b['call'].method == method)
        ]

    async def ping(self):
        if self.ping_error is not None:
            raise self.ping_error

    async def lookup_contract(self, owner: str) -> Optional[str]:
        return self.contracts.get(owner)

    async def get_sequence(self, address: str) -> Optional[int]:
        if not self.network.account_sequenced:
            return None
        return self.nonces.get(address, 0)

    async def build(self, call: ContractCall, sender: str, sequence: Optional[int], attempt: int = 1,
                    crypto_type: Optional[str] = None) -> UnsignedTx:
        payload = {
            'method': call.method,
            'args': call.args,
            'sender': sender,
            'sequence': sequence,
            'attempt': attempt,
            'build': next(self._builds),
        }
        return UnsignedTx(payload=payload, sequence=sequence, context={'call': call, 'sender': sender})

    async def transaction_hash(self, unsigned: UnsignedTx, signature: bytes) -> str:
        return "0x" + hashlib.sha256(signature).hexdigest()

    @staticmethod
    def _raise(errors: List):
        error = errors.pop(0)
        if not isinstance(error, BaseException):
            error = error()
        raise error

    def _reject(self, record: dict, error: Exception):
        self.broadcasts.append(dict(record, rejected=True))
        raise error

    async def broadcast(self, unsigned: UnsignedTx, signature: bytes) -> str:
        call = unsigned.context['call']
        sender = unsigned.context['sender']
        sequence = unsigned.sequence
        tx_hash = await self.transaction_hash(unsigned, signature)
        record = {'call': call, 'sender': sender, 'sequence': sequence, 'signature': signature, 'hash': tx_hash}

        if self.broadcast_errors:
            self.broadcasts.append(dict(record, rejected=True))
            self._raise(self.broadcast_errors)

        known = self.txs.get(tx_hash)
        if known is not None:
            if not known['applied']:
                self._reject(record, AlreadySubmitted("already known"))
            if sequence is None:
                self._reject(record, AlreadySubmitted("This transaction has already been processed"))
            self._reject(record, NonceConflict("nonce too low"))

        if sequence is not None:
            if sequence < self.nonces.get(sender, 0):
                previous = self.pool.get((sender, sequence))
                if previous is None or self.txs[previous]['applied']:
                    self._reject(record, NonceConflict("nonce too low"))
                self.txs[previous]['replaced'] = True
            self.nonces[sender] = max(self.nonces.get(sender, 0), sequence + 1)
            self.pool[(sender, sequence)] = tx_hash

        self.broadcasts.append(dict(record, rejected=False))
        self.txs[tx_hash] = dict(record, applied=False, replaced=False, receipt=None)

        if self.lost_responses:
            self._raise(self.lost_responses)
        return tx_hash

    def mine(self, tx_hash: str):
        """Apply a broadcast to the contract state"""
        entry = self.txs[tx_hash]
        if not entry['applied']:
            entry['applied'] = True
            entry['receipt'] = self._apply(entry['call'], entry['sender'])

    async def get_receipt(self, tx_hash: str, call: Optional[ContractCall] = None) -> Optional[Receipt]:
        entry = self.txs.get(tx_hash)
        if entry is None or entry['replaced']:
            return None
        if self.hold and not entry['applied']:
            return None

        self.mine(tx_hash)

        receipt = entry['receipt']
        confirmations = self.network.confirmation_depth if self.confirmations is None else self.confirmations
        return Receipt(
            success=receipt.success,
            confirmations=confirmations,
            effect=dict(receipt.effect),
            revert_reason=receipt.revert_reason,
        )

    def release_receipt(self, tx_hash: str):
        self.released.append(tx_hash)

    def _apply(self, call: ContractCall, sender: str) -> Receipt:
        if call.method in self.revert_methods:
            return Receipt(success=False, revert_reason=f"{call.method} reverted")

        if call.method == 'deploy':
            owner, = call.args
            address = f"list-{self.network.id}-{len(self.contracts) + 1}"
            self.contracts[owner] = address
            self.items[address] = {}
            return Receipt(success=True, effect={'contract_address': address})

        items = self.items.setdefault(call.contract_address, {})
        if call.method == 'create':
            text, = call.args
            item_id = self.next_item_id
            self.next_item_id += 1
            items[item_id] = (text, False)
            return Receipt(success=True, effect={'item_id': str(item_id)})
        if call.method == 'update':
            item_id, text, done = call.args
            items[int(item_id)] = (text, done)
        elif call.method == 'remove':
            item_id, = call.args
            items.pop(int(item_id), None)
        return Receipt(success=True)

    async def read_items(self, contract_address: str, owner: str):
        return [(str(i), t, d) for i, (t, d) in self.items.get(contract_address, {}).items()]

    async def close(self):
        self.closed = True


def fake_signer(family: ChainFamily, address: Optional[str] = None) -> Signer:
    return Signer(
        family=family,
        address=address or ADDRESSES[family],
        public_key=b"\x01" * 32,
        crypto_type="sr25519",
        _sign=lambda payload: b"signed:" + repr(payload).encode(),
    )


def _network(network_id: str, family: ChainFamily, **overrides) -> Network:
    params = dict(
        id=network_id,
        name=network_id.replace('_', ' ').title(),
        family=family,
        rpc_url=f"http://{network_id}.invalid",
        factory_address=f"factory-{network_id}",
        confirmation_depth=1,
        confirmation_timeout=1.0,
        poll_interval=0.01,
        max_attempts=3,
        backoff_base=0.001,
        backoff_cap=0.01,
        is_testnet=True,
    )
    if family == ChainFamily.EVM:
        params['chain_id'] = 31337
    params.update(overrides)
    return Network(**params)


@pytest.fixture
def networks():
    """Test networks, one per family plus a second EVM chain"""
    return [
        _network('evm_test', ChainFamily.EVM),
        _network('evm_other', ChainFamily.EVM, chain_id=84532),
        _network('solana_test', ChainFamily.SOLANA),
        _network('polkadot_test', ChainFamily.POLKADOT, ss58_format=42),
    ]


@pytest.fixture
def registry(networks):
    return NetworkRegistry(networks)


@pytest.fixture
def connector(registry):
    return WalletConnector(registry, client_factory=FakeChainClient)


@pytest.fixture
def auth_for(registry):
    """Fresh signer authorization for a network's family"""
    def _auth(network_id: str, address: Optional[str] = None) -> SignerAuth:
        return SignerAuth(fake_signer(registry.get(network_id).family, address))
    return _auth


@pytest.fixture
def store():
    cache = DataCache(":memory:")
    yield cache
    cache.close()


@pytest.fixture
def tx_manager(connector):
    return TransactionManager(connector)


@pytest.fixture
def factory(connector, tx_manager, store):
    return ContractFactoryClient(connector, tx_manager, store)


@pytest.fixture
def todo_cache(store):
    return TodoCache(store)


@pytest.fixture
def todos(connector, tx_manager, factory, todo_cache):
    return TodoContractClient(connector, tx_manager, factory, todo_cache)
