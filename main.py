"""
Todo Chain - Main Entry Point
Connects to a configured network, lists the owner's todos and adds one

Usage: python main.py <network_id> ["todo text"]
"""

import asyncio
import os
import sys

from dotenv import load_dotenv
from loguru import logger

from blockchain import ChainFamily, ContractFactoryClient, NetworkRegistry, TransactionManager
from blockchain.errors import BlockchainError
from todo import TodoCache, TodoContractClient
from utils import DataCache
from wallet import EnvKeyAuth, WalletConnector

load_dotenv()

KEY_VARIABLES = {
    ChainFamily.EVM: 'EVM_PRIVATE_KEY',
    ChainFamily.SOLANA: 'SOLANA_SECRET_KEY',
    ChainFamily.POLKADOT: 'POLKADOT_SEED',
}


def configure_logging(level: str = "INFO", log_file: str = "data/logs/todo_chain.log"):
    """Console and rotating file sinks"""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level
    )
    logger.add(
        log_file,
        rotation="1 day",
        retention="7 days",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
        level="DEBUG"
    )


class TodoChainRunner:
    """Wires the layers together for one network"""

    def __init__(self, network_id: str, config_path: str = "config/networks.json"):
        self.network_id = network_id

        self.registry = NetworkRegistry.from_file(config_path)
        self.store = DataCache(os.getenv('TODO_CACHE_PATH', 'data/cache/todo_chain.db'))

        self.connector = WalletConnector(self.registry)
        self.tx_manager = TransactionManager(self.connector)
        self.factory = ContractFactoryClient(self.connector, self.tx_manager, self.store)
        self.todos = TodoContractClient(self.connector, self.tx_manager, self.factory, TodoCache(self.store))

    async def run(self, text: str = None):
        network = self.registry.get(self.network_id)

        logger.info("=" * 70)
        logger.info(f"Todo Chain on {network.name} ({network.family.value})")
        logger.info("=" * 70)

        session = await self.connector.connect(network.id, EnvKeyAuth(KEY_VARIABLES[network.family]))

        try:
            items = await self.todos.sync(session)
            logger.info(f"{len(items)} item(s) on chain for {session.address}")
            for item in items:
                mark = "x" if item.done else " "
                logger.info(f"  [{mark}] {item.id}: {item.text}")

            if text:
                item = await self.todos.create(session, text)
                logger.info(f"Submitted '{text}' in {item.tx_hash}")
                if network.explorer_url:
                    logger.info(f"  {network.tx_explorer_url(item.tx_hash)}")

                await self.todos.wait_until_settled(session)

                for item in self.todos.list(session):
                    logger.info(f"  {item.id}: {item.text} ({item.state.value})")

            stats = self.tx_manager.get_stats()
            logger.info(f"Transactions: {stats['confirmed']} confirmed, {stats['failed']} failed, {stats['retries']} retries")
        finally:
            await self.stop()

    async def stop(self):
        await self.todos.close()
        await self.connector.close()
        self.store.close()


async def main(argv) -> int:
    if len(argv) < 2:
        logger.error("Usage: python main.py <network_id> [\"todo text\"]")
        return 2

    try:
        runner = TodoChainRunner(argv[1])
        await runner.run(argv[2] if len(argv) > 2 else None)
    except BlockchainError as e:
        logger.error(f"{e}")
        return 1
    return 0


if __name__ == "__main__":
    configure_logging()
    try:
        sys.exit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
