"""
Solana Chain Client
Anchor-style todo program; the owner's list lives at a program-derived
address, so the program itself acts as the factory
"""

import re
import struct
import hashlib
from typing import List, Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.models import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from blockchain.errors import AlreadySubmitted, InsufficientFunds, NetworkUnavailable, TransactionReverted
from blockchain.models import ContractCall, Receipt
from .base import ChainClient, ItemRow, UnsignedTx

TODO_LIST_SEED = b"todo_list"
CREATED_LOG = re.compile(r"Todo created with ID: (\d+)")

INSTRUCTIONS = {
    'deploy': 'initialize_todo_list',
    'create': 'create_todo',
    'update': 'update_todo',
    'remove': 'delete_todo',
}


def anchor_discriminator(name: str, namespace: str = "global") -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def encode_instruction_data(call: ContractCall) -> bytes:
    """Discriminator followed by borsh-encoded arguments"""
    data = anchor_discriminator(INSTRUCTIONS[call.method])

    if call.method == 'create':
        text, = call.args
        data += _borsh_string(text)
    elif call.method == 'update':
        item_id, text, done = call.args
        data += struct.pack("<Q", int(item_id)) + _borsh_string(text) + struct.pack("<?", bool(done))
    elif call.method == 'remove':
        item_id, = call.args
        data += struct.pack("<Q", int(item_id))

    return data


def decode_todo_list(data: bytes) -> List[ItemRow]:
    """
    Decode a TodoList account

    Layout: discriminator(8) owner(32) vec<u32 len>{id u64, text string,
    done bool} next_id u64
    """
    offset = 8 + 32
    count, = struct.unpack_from("<I", data, offset)
    offset += 4

    items = []
    for _ in range(count):
        item_id, text_len = struct.unpack_from("<QI", data, offset)
        offset += 12
        text = data[offset:offset + text_len].decode("utf-8")
        offset += text_len
        done = data[offset] != 0
        offset += 1
        items.append((str(item_id), text, done))

    return items


class SolanaClient(ChainClient):
    """
    Client for Solana clusters

    No account nonce: ordering comes from the recent blockhash, so
    get_sequence returns None. Confirmations are the validator vote count
    from getSignatureStatuses; a finalized signature satisfies any depth.
    """

    error_patterns = (
        ('blockhash not found', NetworkUnavailable),
        ('already been processed', AlreadySubmitted),
        ('insufficient lamports', InsufficientFunds),
        ('no record of a prior credit', InsufficientFunds),
        ('custom program error', TransactionReverted),
    )

    def __init__(self, network, client: Optional[AsyncClient] = None):
        super().__init__(network)
        self.client = client or AsyncClient(network.rpc_url, commitment=Confirmed)
        self.program_id = Pubkey.from_string(network.factory_address)

    def todo_list_address(self, owner: str) -> Pubkey:
        pda, _bump = Pubkey.find_program_address(
            [TODO_LIST_SEED, bytes(Pubkey.from_string(owner))],
            self.program_id
        )
        return pda

    async def ping(self):
        async with self.rpc_errors("ping"):
            healthy = await self.client.is_connected()
        if not healthy:
            raise NetworkUnavailable("Solana RPC health check failed", network_id=self.network.id)

    async def lookup_contract(self, owner: str) -> Optional[str]:
        pda = self.todo_list_address(owner)
        async with self.rpc_errors("account lookup"):
            resp = await self.client.get_account_info(pda)
        return str(pda) if resp.value is not None else None

    async def get_sequence(self, address: str) -> Optional[int]:
        return None

    def _instruction(self, call: ContractCall, sender: str) -> Instruction:
        owner = Pubkey.from_string(sender)
        accounts = [
            AccountMeta(self.todo_list_address(sender), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=True),
        ]
        if call.method == 'deploy':
            accounts.append(AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False))

        return Instruction(self.program_id, encode_instruction_data(call), accounts)

    async def build(self, call: ContractCall, sender: str, sequence: Optional[int], attempt: int = 1,
                    crypto_type: Optional[str] = None) -> UnsignedTx:
        async with self.rpc_errors("latest blockhash"):
            resp = await self.client.get_latest_blockhash()

        message = MessageV0.try_compile(
            Pubkey.from_string(sender),
            [self._instruction(call, sender)],
            [],
            resp.value.blockhash,
        )
        return UnsignedTx(payload=bytes(to_bytes_versioned(message)), context=message)

    async def transaction_hash(self, unsigned: UnsignedTx, signature: bytes) -> str:
        # The fee payer signature is the transaction id
        return str(Signature.from_bytes(signature))

    async def broadcast(self, unsigned: UnsignedTx, signature: bytes) -> str:
        tx = VersionedTransaction.populate(unsigned.context, [Signature.from_bytes(signature)])
        async with self.rpc_errors("sendTransaction"):
            resp = await self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed)
            )
        return str(resp.value)

    async def get_receipt(self, tx_hash: str, call: Optional[ContractCall] = None) -> Optional[Receipt]:
        signature = Signature.from_string(tx_hash)

        async with self.rpc_errors("signature status"):
            resp = await self.client.get_signature_statuses([signature], search_transaction_history=True)

        status = resp.value[0]
        if status is None:
            return None

        if status.err is not None:
            return Receipt(success=False, revert_reason=str(status.err))

        # None means rooted (finalized)
        confirmations = status.confirmations
        if confirmations is None:
            confirmations = self.network.confirmation_depth

        receipt = Receipt(success=True, confirmations=confirmations)
        if call is not None and confirmations >= self.network.confirmation_depth:
            receipt.effect = await self._decode_effect(signature, call)
        return receipt

    async def _decode_effect(self, signature: Signature, call: ContractCall) -> dict:
        if call.method == 'deploy':
            owner, = call.args
            return {'contract_address': str(self.todo_list_address(owner))}

        if call.method != 'create':
            return {}

        async with self.rpc_errors("transaction logs"):
            resp = await self.client.get_transaction(signature, max_supported_transaction_version=0)

        logs = []
        if resp.value is not None and resp.value.transaction.meta is not None:
            logs = resp.value.transaction.meta.log_messages or []

        for line in logs:
            match = CREATED_LOG.search(line)
            if match:
                return {'item_id': match.group(1)}

        raise TransactionReverted("create transaction logged no item id", network_id=self.network.id)

    async def read_items(self, contract_address: str, owner: str) -> List[ItemRow]:
        async with self.rpc_errors("account data"):
            resp = await self.client.get_account_info(Pubkey.from_string(contract_address))

        if resp.value is None:
            return []
        return decode_todo_list(bytes(resp.value.data))

    async def close(self):
        await self.client.close()
