#!/usr/bin/env python3
"""
Escrow Lifecycle Engine - composition root
Wires the store, pool, chain client, reconciliation and settlement services
together and owns the background scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from caching.expiring_cache import ExpiringCache
from config import Config
from database import create_tables, dispose_engine, init_database, test_connection
from jobs.scheduler import EscrowScheduler
from services.chain_client import RateLimitedChainClient
from services.channel_pool_service import ChannelPoolService
from services.deposit_reconciliation_service import DepositReconciliationService
from services.escrow_lifecycle_service import EscrowLifecycleService
from services.fund_movement import FundMovementGateway, HttpFundMovementGateway
from services.participant_manager import ParticipantManager, TelegramParticipantManager
from services.settlement_service import SettlementService
from services.trade_store import TradeStore

logger = logging.getLogger(__name__)


@dataclass
class EscrowEngine:
    store: TradeStore
    channel_pool: ChannelPoolService
    chain_client: RateLimitedChainClient
    reconciliation: DepositReconciliationService
    settlement: SettlementService
    lifecycle: EscrowLifecycleService
    scheduler: EscrowScheduler

    @classmethod
    def build(
        cls,
        session_factory: async_sessionmaker,
        participant_manager: Optional[ParticipantManager] = None,
        chain_client: Optional[RateLimitedChainClient] = None,
        fund_gateway: Optional[FundMovementGateway] = None,
    ) -> "EscrowEngine":
        store = TradeStore(session_factory)
        channel_pool = ChannelPoolService(
            participant_manager or TelegramParticipantManager(),
            store,
            session_factory,
        )
        scheduler = EscrowScheduler(channel_pool)
        chain_client = chain_client or RateLimitedChainClient()
        lifecycle = EscrowLifecycleService(store, channel_pool, recycle_scheduler=scheduler)
        scheduler.inactivity_sweep = lifecycle.cancel_inactive_trades
        return cls(
            store=store,
            channel_pool=channel_pool,
            chain_client=chain_client,
            reconciliation=DepositReconciliationService(store, chain_client),
            settlement=SettlementService(
                store,
                fund_gateway or HttpFundMovementGateway(),
                recycle_scheduler=scheduler,
                debounce_cache=ExpiringCache(default_ttl=Config.CLICK_DEBOUNCE_SECONDS),
            ),
            lifecycle=lifecycle,
            scheduler=scheduler,
        )

    def start(self):
        self.scheduler.start()
        logger.info("🚀 Escrow engine started")

    async def shutdown(self):
        self.scheduler.stop()
        await self.chain_client.close()
        logger.info("Escrow engine stopped")


async def main():
    Config.log_environment_config()
    session_factory = init_database()
    if not await test_connection():
        raise RuntimeError("Database connection failed")
    await create_tables()

    engine = EscrowEngine.build(session_factory)
    engine.start()
    stats = await engine.channel_pool.pool_stats()
    logger.info(f"📊 Channel pool: {stats}")
    try:
        await asyncio.Event().wait()
    finally:
        await engine.shutdown()
        await dispose_engine()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("👋 Engine stopped by user")
