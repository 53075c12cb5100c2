"""
Wallet Connector
Opens and tears down signing sessions against configured networks
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from blockchain.errors import BlockchainError, SessionClosed, WalletRejected
from blockchain.models import ChainFamily, Network
from blockchain.network_registry import NetworkRegistry
from chains import ChainClient, create_client
from .signers import Signer

AuthMethod = Callable[[Network], Awaitable[Signer]]


@dataclass
class WalletSession:
    """
    Connected account on one network

    The signer is the only handle able to produce signatures; closing the
    session releases it and wakes every confirmation wait bound to it.
    """

    address: str
    network_id: str
    family: ChainFamily
    signer: Signer = field(repr=False)
    connected: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class WalletConnector:
    """
    Session owner for every network

    One active session per network; connecting again to the same network
    closes the previous session first.
    """

    def __init__(self, registry: NetworkRegistry, client_factory: Callable[[Network], ChainClient] = create_client):
        """
        Initialize Wallet Connector

        Args:
            registry: Configured networks
            client_factory: Builds the chain client for a network
        """
        self.registry = registry
        self.client_factory = client_factory

        self.sessions: Dict[str, WalletSession] = {}
        self._clients: Dict[str, ChainClient] = {}

    def client_for(self, network_id: str) -> ChainClient:
        """Shared chain client for a network, created on first use"""
        client = self._clients.get(network_id)
        if client is None:
            client = self.client_factory(self.registry.get(network_id))
            self._clients[network_id] = client
        return client

    def active_session(self, network_id: str) -> Optional[WalletSession]:
        return self.sessions.get(network_id)

    async def connect(self, network_id: str, auth_method: AuthMethod) -> WalletSession:
        """
        Establish a session

        Args:
            network_id: Network to connect to
            auth_method: Async callable producing a signer for the network

        Returns:
            Connected WalletSession

        Raises:
            NetworkNotFound: Unknown network id
            NetworkUnavailable: RPC endpoint did not answer
            WalletRejected: Authorization denied or signer unusable
        """
        network = self.registry.get(network_id)

        await self.client_for(network_id).ping()

        try:
            signer = await auth_method(network)
        except BlockchainError:
            raise
        except Exception as e:
            logger.error(f"{network_id}: authorization failed: {e}")
            raise WalletRejected(str(e), network_id=network_id) from e

        if signer is None:
            raise WalletRejected("Authorization returned no signer", network_id=network_id)

        if signer.family != network.family:
            signer.release()
            raise WalletRejected(
                f"{signer.family.value} signer cannot sign for {network.family.value} network",
                network_id=network_id
            )

        previous = self.sessions.get(network_id)
        if previous is not None:
            logger.info(f"{network_id}: replacing session for {previous.address}")
            await self.disconnect(previous)

        session = WalletSession(
            address=signer.address,
            network_id=network_id,
            family=network.family,
            signer=signer,
        )
        self.sessions[network_id] = session

        logger.success(f"Connected {session.address} on {network.name}")
        return session

    async def disconnect(self, session: WalletSession):
        """Release the signer and close the session; idempotent"""
        if not session.connected:
            return

        session.connected = False
        session.signer.release()
        session.closed.set()

        if self.sessions.get(session.network_id) is session:
            del self.sessions[session.network_id]

        logger.info(f"Disconnected {session.address} from {session.network_id}")

    async def switch_network(self, session: WalletSession, network_id: str, auth_method: AuthMethod) -> WalletSession:
        """Close `session` and connect to another network"""
        await self.disconnect(session)
        return await self.connect(network_id, auth_method)

    def sign(self, session: WalletSession, payload: Any) -> bytes:
        """
        Sign a chain-specific payload with the session's signer

        Raises:
            SessionClosed: Session was disconnected or replaced
            WalletRejected: Signer refused the payload
        """
        if not session.connected:
            raise SessionClosed(f"Session {session.id} is closed", network_id=session.network_id)

        try:
            return session.signer.sign(payload)
        except BlockchainError:
            raise
        except Exception as e:
            logger.error(f"{session.network_id}: signer refused payload: {e}")
            raise WalletRejected(str(e), network_id=session.network_id) from e

    async def close(self):
        """Disconnect every session and close chain clients"""
        for session in list(self.sessions.values()):
            await self.disconnect(session)

        for client in self._clients.values():
            await client.close()
        self._clients.clear()
