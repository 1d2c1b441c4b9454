"""
Trade Store
Persistence for trades and consumed deposit references.

Every mutation is a compare-and-swap on the trade's version column: the UPDATE
only matches when nobody else wrote the row since it was read, so no in-memory
lock is needed to keep concurrent handlers from overwriting each other.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import AbstractSet, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from database import get_session_factory, managed_session
from models import DepositReference, Trade
from services.escrow_errors import ConflictingState, DuplicateReference, TradeNotFound

logger = logging.getLogger(__name__)


class TradeStore:
    """Versioned trade persistence"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    def session(self):
        return managed_session(self.session_factory)

    async def find(self, trade_id: str) -> Optional[Trade]:
        async with self.session() as session:
            result = await session.execute(select(Trade).where(Trade.trade_id == trade_id))
            return result.scalar_one_or_none()

    async def find_one(self, trade_id: str) -> Trade:
        trade = await self.find(trade_id)
        if trade is None:
            raise TradeNotFound(f"Trade {trade_id} not found", trade_id=trade_id)
        return trade

    async def find_by_channel(self, channel_id: str) -> Optional[Trade]:
        """Most recent trade bound to a channel"""
        async with self.session() as session:
            result = await session.execute(
                select(Trade)
                .where(Trade.channel_id == channel_id)
                .order_by(Trade.created_at.desc(), Trade.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def insert_trade(self, trade: Trade) -> Trade:
        try:
            async with self.session() as session:
                session.add(trade)
                await session.flush()
        except IntegrityError as e:
            logger.warning(f"TRADE_INSERT_CONFLICT: {trade.trade_id} already exists")
            raise ConflictingState(f"Trade {trade.trade_id} already exists") from e
        logger.info(f"📝 TRADE_CREATED: {trade.trade_id} channel={trade.channel_id}")
        return trade

    async def _conditional_update(
        self,
        session: AsyncSession,
        trade: Trade,
        expected_statuses: Optional[AbstractSet[str]],
        values: dict,
    ) -> Optional[Trade]:
        stmt = update(Trade).where(
            Trade.trade_id == trade.trade_id,
            Trade.version == trade.version,
        )
        if expected_statuses:
            stmt = stmt.where(Trade.status.in_(sorted(expected_statuses)))
        stmt = (
            stmt.values(version=trade.version + 1, updated_at=datetime.utcnow(), **values)
            .returning(Trade)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _raise_conflict(self, trade: Trade) -> None:
        current = await self.find(trade.trade_id)
        if current is None:
            raise TradeNotFound(f"Trade {trade.trade_id} not found", trade_id=trade.trade_id)
        logger.warning(
            f"🔒 CAS_CONFLICT: trade={trade.trade_id} expected v{trade.version} ({trade.status}), "
            f"found v{current.version} ({current.status})"
        )
        raise ConflictingState(
            f"Trade {trade.trade_id} changed: expected v{trade.version}, found v{current.version}",
            current_status=current.status,
        )

    async def compare_and_set(
        self,
        trade: Trade,
        expected_statuses: Optional[AbstractSet[str]] = None,
        **values,
    ) -> Trade:
        """Apply values only if the trade is still at trade.version (and in expected_statuses)

        Returns the updated record; raises ConflictingState when the row moved on.
        """
        async with self.session() as session:
            updated = await self._conditional_update(session, trade, expected_statuses, values)
        if updated is None:
            await self._raise_conflict(trade)
        logger.debug(f"✅ CAS: {trade.trade_id} v{trade.version} -> v{updated.version} {sorted(values)}")
        return updated

    async def mutate(
        self,
        trade_id: str,
        build: Callable[[Trade], Optional[dict]],
        max_attempts: Optional[int] = None,
    ) -> Trade:
        """Read-validate-write loop: build(trade) returns the values to set (None for no-op)

        build runs again on the freshly read record after every conflict, so its
        guards always see the latest persisted state.
        """
        attempts = max_attempts or Config.CAS_MAX_ATTEMPTS
        trade = await self.find_one(trade_id)
        for attempt in range(1, attempts + 1):
            values = build(trade)
            if values is None:
                return trade
            try:
                return await self.compare_and_set(trade, expected_statuses={trade.status}, **values)
            except ConflictingState:
                if attempt == attempts:
                    raise
                logger.info(f"🔄 CAS_RETRY: {trade_id} attempt {attempt}/{attempts}")
                trade = await self.find_one(trade_id)
        return trade

    async def consume_reference(
        self,
        trade: Trade,
        tx_ref: str,
        amount: Decimal,
        amount_minor: int,
        from_address: Optional[str] = None,
        expected_statuses: Optional[AbstractSet[str]] = None,
        **values,
    ) -> Trade:
        """Record a deposit reference and update the trade in one transaction

        The reference row is unique across all trades, so a concurrent or later
        attempt to reuse it fails with DuplicateReference and changes nothing.
        """
        conflict = False
        try:
            async with self.session() as session:
                session.add(DepositReference(
                    tx_ref=tx_ref,
                    trade_id=trade.trade_id,
                    amount=amount,
                    amount_minor=amount_minor,
                    from_address=from_address,
                ))
                await session.flush()
                updated = await self._conditional_update(session, trade, expected_statuses, values)
                if updated is None:
                    conflict = True
                    # Undo the reference insert together with the missed update
                    await session.rollback()
        except IntegrityError as e:
            owner = await self.reference_owner(tx_ref)
            logger.warning(f"🚫 DUPLICATE_REFERENCE: {tx_ref} (owner={owner}) submitted for {trade.trade_id}")
            raise DuplicateReference(tx_ref, owner_trade_id=owner) from e

        if conflict:
            await self._raise_conflict(trade)
        logger.info(f"💰 REFERENCE_CONSUMED: {tx_ref} -> {trade.trade_id} amount={amount}")
        return updated

    async def reference_owner(self, tx_ref: str) -> Optional[str]:
        """Trade that consumed a reference, if any"""
        async with self.session() as session:
            result = await session.execute(
                select(DepositReference.trade_id).where(DepositReference.tx_ref == tx_ref)
            )
            return result.scalar_one_or_none()

    async def list_references(self, trade_id: str) -> List[DepositReference]:
        async with self.session() as session:
            result = await session.execute(
                select(DepositReference)
                .where(DepositReference.trade_id == trade_id)
                .order_by(DepositReference.created_at, DepositReference.id)
            )
            return list(result.scalars().all())

    async def find_inactive(self, statuses: AbstractSet[str], cutoff: datetime) -> List[Trade]:
        """Trades in one of statuses whose last activity is older than cutoff"""
        async with self.session() as session:
            result = await session.execute(
                select(Trade)
                .where(Trade.status.in_(sorted(statuses)), Trade.last_activity_at < cutoff)
                .order_by(Trade.last_activity_at)
            )
            return list(result.scalars().all())
