"""
Polkadot Chain Client
Todo pallet extrinsics through substrate-interface

The pallet is shared by every account and keys its storage by owner, so
an owner's "instance" always exists and no deploy is ever submitted.
substrate-interface is synchronous and its websocket is not thread-safe;
each call runs in a worker thread, one at a time per client.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from blockchain.errors import (
    AlreadySubmitted,
    FeeUnderpriced,
    InsufficientFunds,
    NonceConflict,
    NonceGap,
    TransactionReverted,
)
from blockchain.models import ContractCall, Receipt
from .base import ChainClient, ItemRow, UnsignedTx

PALLET_CALLS = {
    'create': 'create_todo',
    'update': 'update_todo',
    'remove': 'delete_todo',
}


def _decode_text(value: Any) -> str:
    """Vec<u8> comes back either decoded or as 0x-hex"""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, str) and value.startswith("0x"):
        return bytes.fromhex(value[2:]).decode("utf-8")
    return str(value)


class PolkadotClient(ChainClient):
    """
    Client for Substrate chains running the todo pallet

    Confirmations count finalized blocks from the inclusion block; a
    depth of 1 means "included and finalized".
    """

    error_patterns = (
        ('already imported', AlreadySubmitted),
        ('priority is too low', FeeUnderpriced),
        ('valid in the future', NonceGap),
        ('transaction is outdated', NonceConflict),
        ('stale', NonceConflict),
        ('inability to pay some fees', InsufficientFunds),
        ('balance too low', InsufficientFunds),
    )
    finds_receipts_by_hash = False

    def __init__(self, network, substrate=None):
        super().__init__(network)
        self.pallet = network.factory_address
        self._substrate = substrate
        # extrinsic hash -> ExtrinsicReceipt from inclusion
        self._receipts: Dict[str, Any] = {}
        self._lock: Optional[asyncio.Lock] = None

    @property
    def substrate(self):
        if self._substrate is None:
            from substrateinterface import SubstrateInterface
            self._substrate = SubstrateInterface(
                url=self.network.rpc_url,
                ss58_format=self.network.ss58_format
            )
        return self._substrate

    async def _run(self, action: str, func: Callable):
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            async with self.rpc_errors(action):
                return await asyncio.to_thread(func)

    async def ping(self):
        await self._run("ping", lambda: self.substrate.get_chain_head())

    async def lookup_contract(self, owner: str) -> Optional[str]:
        return f"{self.pallet}/{owner}"

    async def get_sequence(self, address: str) -> Optional[int]:
        return await self._run("account nonce", lambda: self.substrate.get_account_nonce(address))

    @staticmethod
    def _call_params(call: ContractCall) -> dict:
        if call.method == 'create':
            text, = call.args
            return {'text': text}
        if call.method == 'update':
            item_id, text, done = call.args
            return {'item_id': int(item_id), 'text': text, 'done': bool(done)}
        if call.method == 'remove':
            item_id, = call.args
            return {'item_id': int(item_id)}
        raise ValueError(f"Todo pallet has no '{call.method}' call")

    async def build(self, call: ContractCall, sender: str, sequence: Optional[int], attempt: int = 1,
                    crypto_type: Optional[str] = None) -> UnsignedTx:
        async with self.rpc_errors(f"encode {call.method}"):
            params = self._call_params(call)

        def _compose():
            composed = self.substrate.compose_call(
                call_module=self.pallet,
                call_function=PALLET_CALLS[call.method],
                call_params=params
            )
            payload = self.substrate.generate_signature_payload(call=composed, nonce=sequence)
            return composed, payload

        composed, payload = await self._run(f"compose {call.method}", _compose)

        return UnsignedTx(
            payload=bytes(payload.data),
            sequence=sequence,
            context={'call': composed, 'sender': sender, 'crypto_type': crypto_type},
        )

    async def _signed_extrinsic(self, unsigned: UnsignedTx, signature: bytes):
        """Extrinsic carrying an external signature, assembled once per signature"""
        from substrateinterface import Keypair, KeypairType

        context = unsigned.context
        if context.get('signature') == signature:
            return context['extrinsic']

        keypair_type = KeypairType.ED25519 if context['crypto_type'] == 'ed25519' else KeypairType.SR25519
        # Public half only; the signature was produced by the session signer
        public_keypair = Keypair(
            ss58_address=context['sender'],
            ss58_format=self.network.ss58_format,
            crypto_type=keypair_type
        )

        extrinsic = await self._run("sign extrinsic", lambda: self.substrate.create_signed_extrinsic(
            call=context['call'],
            keypair=public_keypair,
            nonce=unsigned.sequence,
            signature=signature
        ))
        context['signature'] = signature
        context['extrinsic'] = extrinsic
        return extrinsic

    async def transaction_hash(self, unsigned: UnsignedTx, signature: bytes) -> str:
        extrinsic = await self._signed_extrinsic(unsigned, signature)
        return f"0x{extrinsic.extrinsic_hash.hex()}"

    async def broadcast(self, unsigned: UnsignedTx, signature: bytes) -> str:
        extrinsic = await self._signed_extrinsic(unsigned, signature)

        receipt = await self._run(
            "submit_extrinsic",
            lambda: self.substrate.submit_extrinsic(extrinsic, wait_for_inclusion=True)
        )
        self._receipts[receipt.extrinsic_hash] = receipt

        logger.debug(f"{self.network.id}: extrinsic {receipt.extrinsic_hash} included in {receipt.block_hash}")
        return receipt.extrinsic_hash

    def release_receipt(self, tx_hash: str):
        self._receipts.pop(tx_hash, None)

    async def get_receipt(self, tx_hash: str, call: Optional[ContractCall] = None) -> Optional[Receipt]:
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            return None

        def _status():
            block_number = self.substrate.get_block_number(receipt.block_hash)
            finalized = self.substrate.get_block_number(self.substrate.get_chain_finalised_head())
            # Both properties fetch the block's events on first access
            events = receipt.triggered_events if receipt.is_success else []
            return block_number, finalized, receipt.is_success, events

        block_number, finalized, success, events = await self._run("finality", _status)
        confirmations = finalized - block_number + 1 if finalized >= block_number else 0

        if not success:
            return Receipt(success=False, confirmations=confirmations, revert_reason=str(receipt.error_message))

        effect = {}
        if call is not None and call.method == 'create':
            effect = self._created_item(events)
        return Receipt(success=True, confirmations=confirmations, effect=effect)

    def _created_item(self, events) -> dict:
        for event in events:
            value = event.value
            if value.get('module_id') == self.pallet and value.get('event_id') == 'TodoCreated':
                attributes = value['attributes']
                item_id = attributes['id'] if isinstance(attributes, dict) else attributes[1]
                return {'item_id': str(item_id)}
        raise TransactionReverted("create extrinsic emitted no TodoCreated event", network_id=self.network.id)

    async def read_items(self, contract_address: str, owner: str) -> List[ItemRow]:
        result = await self._run(
            "Todos storage",
            lambda: self.substrate.query(module=self.pallet, storage_function='Todos', params=[owner])
        )

        return [
            (str(entry['id']), _decode_text(entry['text']), bool(entry['done']))
            for entry in (result.value or [])
        ]

    async def close(self):
        if self._substrate is not None:
            self._substrate.close()
