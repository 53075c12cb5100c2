"""
EVM Chain Client
Factory and todo contract calls over AsyncWeb3
"""

from typing import List, Optional

from eth_abi import decode
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.logs import DISCARD
from loguru import logger

from blockchain.errors import BlockchainError, TransactionReverted
from blockchain.models import ContractCall, Receipt
from .base import ChainClient, ItemRow, UnsignedTx

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Error(string) selector used by require/revert messages
ERROR_SELECTOR = bytes.fromhex("08c379a0")

# Fee multiplier applied per resubmission (replacement needs >= 10% bump)
FEE_BUMP = 1.125

DEFAULT_GAS = {
    'deploy': 1_500_000,
    'create': 200_000,
    'update': 150_000,
    'remove': 100_000,
}

FACTORY_ABI = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "deploy",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "lookup",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": False, "name": "list", "type": "address"}
        ],
        "name": "TodoListDeployed",
        "type": "event"
    }
]

TODO_ABI = [
    {
        "inputs": [{"name": "text", "type": "string"}],
        "name": "create",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "itemId", "type": "uint256"},
            {"name": "text", "type": "string"},
            {"name": "done", "type": "bool"}
        ],
        "name": "update",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [{"name": "itemId", "type": "uint256"}],
        "name": "remove",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "getAll",
        "outputs": [
            {"name": "ids", "type": "uint256[]"},
            {"name": "texts", "type": "string[]"},
            {"name": "dones", "type": "bool[]"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "id", "type": "uint256"},
            {"indexed": False, "name": "text", "type": "string"}
        ],
        "name": "TodoCreated",
        "type": "event"
    }
]


def decode_revert_reason(data) -> Optional[str]:
    """Message of an Error(string) revert payload, None for custom errors"""
    if isinstance(data, str):
        data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    if not data or data[:4] != ERROR_SELECTOR:
        return None
    reason, = decode(["string"], data[4:])
    return reason


class EvmClient(ChainClient):
    """
    Client for EVM-compatible networks

    Confirmations are blocks on top of the receipt block, inclusive.
    """

    def __init__(self, network, w3: Optional[AsyncWeb3] = None):
        super().__init__(network)
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(network.rpc_url))
        self.factory = self.w3.eth.contract(
            address=Web3.to_checksum_address(network.factory_address),
            abi=FACTORY_ABI
        )

    def classify_error(self, exc: BaseException) -> BlockchainError:
        if isinstance(exc, ContractLogicError):
            reason = decode_revert_reason(exc.data) if isinstance(exc.data, (str, bytes)) else None
            return TransactionReverted(str(exc), reason=reason or exc.message, network_id=self.network.id)
        return super().classify_error(exc)

    def _todo_contract(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=TODO_ABI)

    async def ping(self):
        async with self.rpc_errors("ping"):
            chain_id = await self.w3.eth.chain_id

        if chain_id != self.network.chain_id:
            logger.warning(
                f"{self.network.id}: endpoint reports chain id {chain_id}, expected {self.network.chain_id}"
            )

    async def lookup_contract(self, owner: str) -> Optional[str]:
        async with self.rpc_errors("factory lookup"):
            address = await self.factory.functions.lookup(Web3.to_checksum_address(owner)).call()

        if not address or address == ZERO_ADDRESS:
            return None
        return Web3.to_checksum_address(address)

    async def get_sequence(self, address: str) -> Optional[int]:
        async with self.rpc_errors("nonce lookup"):
            return await self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), 'pending')

    def _function_for(self, call: ContractCall):
        if call.method == 'deploy':
            owner, = call.args
            return self.factory.functions.deploy(Web3.to_checksum_address(owner))

        contract = self._todo_contract(call.contract_address)
        if call.method == 'create':
            return contract.functions.create(*call.args)
        if call.method == 'update':
            item_id, text, done = call.args
            return contract.functions.update(int(item_id), text, bool(done))
        if call.method == 'remove':
            item_id, = call.args
            return contract.functions.remove(int(item_id))

        raise ValueError(f"Unsupported contract method: {call.method}")

    async def build(self, call: ContractCall, sender: str, sequence: Optional[int], attempt: int = 1,
                    crypto_type: Optional[str] = None) -> UnsignedTx:
        """
        Build an unsigned legacy transaction

        Args:
            call: Contract call
            sender: Sending address
            sequence: Nonce to use
            attempt: Submission attempt, fees grow by FEE_BUMP per retry

        Returns:
            UnsignedTx whose payload is the transaction dict
        """
        async with self.rpc_errors(f"build {call.method}"):
            gas_price = await self.w3.eth.gas_price
            tx = await self._function_for(call).build_transaction({
                'from': Web3.to_checksum_address(sender),
                'nonce': sequence,
                'chainId': self.network.chain_id,
                'gasPrice': int(gas_price * FEE_BUMP ** (attempt - 1)),
                'gas': DEFAULT_GAS[call.method],
            })

        return UnsignedTx(payload=tx, sequence=sequence)

    async def transaction_hash(self, unsigned: UnsignedTx, signature: bytes) -> str:
        return Web3.to_hex(Web3.keccak(signature))

    async def broadcast(self, unsigned: UnsignedTx, signature: bytes) -> str:
        # eth_account signs the whole envelope, the "signature" is the raw tx
        async with self.rpc_errors("send_raw_transaction"):
            tx_hash = await self.w3.eth.send_raw_transaction(signature)
        return Web3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str, call: Optional[ContractCall] = None) -> Optional[Receipt]:
        async with self.rpc_errors("receipt lookup"):
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
            head = await self.w3.eth.block_number

        confirmations = max(0, head - receipt['blockNumber'] + 1)

        if receipt['status'] != 1:
            return Receipt(success=False, confirmations=confirmations, revert_reason="execution reverted")

        return Receipt(success=True, confirmations=confirmations, effect=self._decode_effect(receipt, call))

    def _decode_effect(self, receipt, call: Optional[ContractCall]) -> dict:
        if call is None:
            return {}

        if call.method == 'deploy':
            events = self.factory.events.TodoListDeployed().process_receipt(receipt, errors=DISCARD)
            if events:
                return {'contract_address': Web3.to_checksum_address(events[0]['args']['list'])}
            raise TransactionReverted("deploy receipt carries no TodoListDeployed event", network_id=self.network.id)

        if call.method == 'create':
            contract = self._todo_contract(call.contract_address)
            events = contract.events.TodoCreated().process_receipt(receipt, errors=DISCARD)
            if events:
                return {'item_id': str(events[0]['args']['id'])}
            raise TransactionReverted("create receipt carries no TodoCreated event", network_id=self.network.id)

        return {}

    async def read_items(self, contract_address: str, owner: str) -> List[ItemRow]:
        async with self.rpc_errors("getAll"):
            ids, texts, dones = await self._todo_contract(contract_address).functions.getAll().call()

        return [(str(i), t, bool(d)) for i, t, d in zip(ids, texts, dones)]

    async def close(self):
        provider = self.w3.provider
        if hasattr(provider, 'disconnect'):
            await provider.disconnect()
