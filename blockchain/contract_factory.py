"""
Contract Factory Client
Resolves an owner's todo contract, deploying it through the factory once
"""

from typing import Dict, Optional, Tuple

from loguru import logger

from utils.data_cache import DataCache
from utils.keyed_lock import KeyedLock
from .errors import DuplicateProvisioning, TransactionReverted
from .models import ContractCall, ContractRef, Transaction, TxStatus


class ContractFactoryClient:
    """
    One contract instance per (owner, network)

    Lookup order: persisted ref, factory lookup on chain, deploy. Calls for
    the same pair are serialized, so a concurrent caller waits for the
    first one and receives the same address.
    """

    def __init__(self, connector, tx_manager, cache: DataCache):
        """
        Initialize Contract Factory Client

        Args:
            connector: WalletConnector for chain clients
            tx_manager: TransactionManager executing the deploy
            cache: Store where ContractRefs are persisted
        """
        self.connector = connector
        self.tx_manager = tx_manager
        self.cache = cache

        self._locks = KeyedLock()
        self._deploys: Dict[Tuple[str, str], Transaction] = {}
        self.deploy_count = 0

    @staticmethod
    def _key(owner: str, network_id: str) -> str:
        return f"contract:{network_id}:{owner}"

    def get(self, owner: str, network_id: str) -> Optional[ContractRef]:
        """Persisted ref for the pair, None if never provisioned"""
        data = self.cache.get(self._key(owner, network_id))
        return ContractRef.from_dict(data) if data else None

    def _persist(self, ref: ContractRef) -> ContractRef:
        existing = self.get(ref.owner, ref.network_id)
        if existing is not None and existing.contract_address != ref.contract_address:
            logger.critical(
                f"{ref.network_id}: second contract for {ref.owner}: "
                f"{existing.contract_address} already recorded, got {ref.contract_address}"
            )
            raise DuplicateProvisioning(
                f"{ref.owner} already owns {existing.contract_address}",
                network_id=ref.network_id
            )

        self.cache.set(self._key(ref.owner, ref.network_id), ref.to_dict())
        return existing or ref

    async def resolve_or_deploy(self, session, owner: Optional[str] = None,
                                timeout: Optional[float] = None) -> ContractRef:
        """
        Existing contract for the owner, deploying one if absent

        A deploy still in flight from an earlier call is awaited again
        rather than submitted twice.

        Args:
            session: Connected WalletSession (pays for a deploy)
            owner: Owner address, the session account if omitted
            timeout: Seconds to wait for the deploy (network default if None)

        Returns:
            ContractRef for (owner, session network)

        Raises:
            DuplicateProvisioning: A different address is already recorded
            ConfirmationTimeout: The deploy is still pending; retrying later resumes it
            BlockchainError: The deploy transaction failed
        """
        owner = owner or session.address
        network_id = session.network_id

        async with self._locks.hold((owner, network_id)):
            ref = self.get(owner, network_id)
            if ref is not None:
                return ref

            client = self.connector.client_for(network_id)

            address = await client.lookup_contract(owner)
            if address:
                logger.info(f"{network_id}: found existing todo contract {address} for {owner}")
                self._forget_deploy(owner, network_id)
                return self._persist(ContractRef(owner, network_id, address))

            tx = self._pending_deploy(owner, network_id)
            if tx is None:
                logger.info(f"{network_id}: deploying todo contract for {owner}")
                self.deploy_count += 1
                tx = await self.tx_manager.submit(session, client.deploy_call(owner))
                self._remember_deploy(owner, tx)
            else:
                logger.info(f"{network_id}: awaiting earlier deploy {tx.hash} for {owner}")

            # Timeout or a closed session keep the deploy remembered
            await self.tx_manager.wait_for_confirmation(tx, timeout=timeout, session=session)
            self._forget_deploy(owner, network_id)

            if tx.status == TxStatus.FAILED:
                raise tx.last_error

            address = tx.effect.get('contract_address')
            if not address:
                raise TransactionReverted(
                    f"deploy {tx.hash} reported no contract address",
                    network_id=network_id,
                    transaction=tx
                )

            ref = self._persist(ContractRef(owner, network_id, address))
            logger.success(f"{network_id}: todo contract {address} deployed for {owner}")
            return ref

    @staticmethod
    def _deploy_key(owner: str, network_id: str) -> str:
        return f"pending_deploy:{network_id}:{owner}"

    def _remember_deploy(self, owner: str, tx: Transaction):
        self._deploys[(owner, tx.network_id)] = tx
        self.cache.set(self._deploy_key(owner, tx.network_id), {
            'id': tx.id,
            'sender': tx.sender,
            'call': tx.call.to_dict(),
            'hash': tx.hash,
            'hashes': list(tx.hashes),
            'sequence': tx.sequence,
            'created_at': tx.created_at,
        })

    def _pending_deploy(self, owner: str, network_id: str) -> Optional[Transaction]:
        """Deploy submitted earlier and not yet settled, restored from the cache after a restart"""
        tx = self._deploys.get((owner, network_id))
        if tx is not None:
            return tx

        data = self.cache.get(self._deploy_key(owner, network_id))
        if not data:
            return None

        call = data['call']
        tx = Transaction(
            network_id=network_id,
            sender=data['sender'],
            call=ContractCall(call['method'], call['contract_address'], tuple(call['args'])),
            id=data['id'],
            status=TxStatus.SUBMITTED,
            hash=data['hash'],
            hashes=list(data['hashes']),
            sequence=data['sequence'],
            created_at=data['created_at'],
        )
        self._deploys[(owner, network_id)] = tx
        return tx

    def _forget_deploy(self, owner: str, network_id: str):
        self._deploys.pop((owner, network_id), None)
        self.cache.delete(self._deploy_key(owner, network_id))
