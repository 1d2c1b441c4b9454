"""
Channel Pool Service
Leases pooled private channels to trades and recycles them afterwards.

Lease is one conditional UPDATE against the store, so concurrent trade creation
can never hand the same channel to two trades. A channel only goes back to
'available' after every tracked participant was evicted and its access token
was rotated; otherwise it is parked at 'completed' for a later retry.
"""

import logging
from datetime import datetime
from typing import AbstractSet, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import aliased

from config import Config
from database import get_session_factory, managed_session
from models import Channel, ChannelStatus
from services.escrow_errors import NoChannelsAvailable
from services.participant_manager import ParticipantManager
from services.trade_store import TradeStore

logger = logging.getLogger(__name__)

# Statuses from which a channel can be recycled back into the pool
_RECYCLABLE = (ChannelStatus.ASSIGNED.value, ChannelStatus.COMPLETED.value)


class ChannelPoolService:
    """Atomic lease/recycle over the shared channel pool"""

    def __init__(
        self,
        participant_manager: ParticipantManager,
        trade_store: TradeStore,
        session_factory: Optional[async_sessionmaker] = None,
        protected_identities: Optional[Iterable[int]] = None,
        service_identity: Optional[int] = None,
    ):
        self.participant_manager = participant_manager
        self.trade_store = trade_store
        self.session_factory = session_factory or get_session_factory()
        self.protected_identities = frozenset(
            Config.PROTECTED_PARTICIPANT_IDS if protected_identities is None else protected_identities
        )
        self.service_identity = service_identity if service_identity is not None else Config.SERVICE_IDENTITY_ID

    def session(self):
        return managed_session(self.session_factory)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def add_channel(self, channel_id: str, title: Optional[str] = None) -> Channel:
        """Register a provisioned channel as available (no-op if already known)"""
        existing = await self.get_channel(channel_id)
        if existing is not None:
            logger.debug(f"Channel {channel_id} already in pool ({existing.status})")
            return existing
        try:
            async with self.session() as session:
                channel = Channel(channel_id=channel_id, title=title, status=ChannelStatus.AVAILABLE.value)
                session.add(channel)
                await session.flush()
        except IntegrityError:
            # Registered concurrently
            return await self.get_channel(channel_id)
        logger.info(f"➕ CHANNEL_ADDED: {channel_id} ({title or 'untitled'})")
        return channel

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        async with self.session() as session:
            result = await session.execute(select(Channel).where(Channel.channel_id == channel_id))
            return result.scalar_one_or_none()

    async def get_channel_for_trade(self, trade_id: str) -> Optional[Channel]:
        """Channel currently held by a trade (assigned or parked)"""
        async with self.session() as session:
            result = await session.execute(
                select(Channel)
                .where(Channel.assigned_trade_id == trade_id, Channel.status.in_(_RECYCLABLE))
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    async def lease(self, trade_id: str) -> Channel:
        """Assign the oldest available channel to trade_id

        Raises NoChannelsAvailable when the pool is exhausted.
        """
        held = await self.get_channel_for_trade(trade_id)
        if held is not None and held.status == ChannelStatus.ASSIGNED.value:
            return held

        now = datetime.utcnow()
        candidate = aliased(Channel)
        next_available = (
            select(candidate.id)
            .where(candidate.status == ChannelStatus.AVAILABLE.value)
            .order_by(candidate.created_at, candidate.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Channel)
            .where(Channel.id == next_available, Channel.status == ChannelStatus.AVAILABLE.value)
            .values(
                status=ChannelStatus.ASSIGNED.value,
                assigned_trade_id=trade_id,
                assigned_at=now,
                completed_at=None,
                updated_at=now,
            )
            .returning(Channel)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            channel = result.scalar_one_or_none()

        if channel is None:
            logger.warning(f"🚫 POOL_EXHAUSTED: no available channel for trade {trade_id}")
            raise NoChannelsAvailable(f"No available channel for trade {trade_id}", trade_id=trade_id)

        logger.info(f"🔐 CHANNEL_LEASED: {channel.channel_id} -> trade {trade_id}")
        return channel

    async def release_lease(self, trade_id: str) -> Optional[Channel]:
        """Hand back a lease nobody joined yet (trade creation failed after leasing)"""
        stmt = (
            update(Channel)
            .where(Channel.assigned_trade_id == trade_id, Channel.status == ChannelStatus.ASSIGNED.value)
            .values(status=ChannelStatus.AVAILABLE.value, assigned_trade_id=None, assigned_at=None,
                    updated_at=datetime.utcnow())
            .returning(Channel)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            channel = result.scalar_one_or_none()
        if channel is not None:
            logger.info(f"↩️ LEASE_RELEASED: {channel.channel_id} from unused trade {trade_id}")
        return channel

    async def issue_access_token(self, channel: Channel) -> Optional[str]:
        """Current access token of a leased channel, minting one if it has none"""
        if channel.invite_token:
            return channel.invite_token
        token = await self.participant_manager.rotate_access_token(channel.channel_id)
        if token:
            async with self.session() as session:
                await session.execute(
                    update(Channel)
                    .where(Channel.id == channel.id)
                    .values(invite_token=token, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
        return token

    # ------------------------------------------------------------------
    # Recycle
    # ------------------------------------------------------------------

    async def recycle(
        self, trade_id: str, protected_identities: Optional[AbstractSet[int]] = None
    ) -> Optional[Channel]:
        """Evict the trade's participants and return its channel to the pool

        Idempotent: a trade without a held channel (never leased, already
        recycled, or archived) is a no-op returning the channel's current record.
        """
        channel = await self.get_channel_for_trade(trade_id)
        if channel is None:
            trade = await self.trade_store.find(trade_id)
            current = await self.get_channel(trade.channel_id) if trade and trade.channel_id else None
            logger.debug(f"Recycle no-op for trade {trade_id}: channel {current!r}")
            return current

        protected = set(self.protected_identities)
        if protected_identities:
            protected |= set(protected_identities)
        return await self._recycle_channel(channel, trade_id, protected)

    async def _recycle_channel(self, channel: Channel, trade_id: str, protected: AbstractSet[int]) -> Channel:
        trade = await self.trade_store.find(trade_id)
        participants = trade.participant_ids if trade else []
        removable = [
            participant for participant in participants
            if participant not in protected and participant != self.service_identity
        ]

        failed = []
        for participant in removable:
            if not await self.participant_manager.evict_participant(channel.channel_id, participant):
                failed.append(participant)

        new_token = None
        if not failed:
            new_token = await self.participant_manager.rotate_access_token(channel.channel_id, channel.invite_token)

        now = datetime.utcnow()
        if not failed and new_token:
            values = dict(
                status=ChannelStatus.AVAILABLE.value,
                assigned_trade_id=None,
                assigned_at=None,
                completed_at=now,
                invite_token=new_token,
                updated_at=now,
            )
        else:
            values = dict(status=ChannelStatus.COMPLETED.value, completed_at=now, updated_at=now)

        stmt = (
            update(Channel)
            .where(
                Channel.id == channel.id,
                Channel.assigned_trade_id == trade_id,
                Channel.status.in_(_RECYCLABLE),
            )
            .values(**values)
            .returning(Channel)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            updated = result.scalar_one_or_none()

        if updated is None:
            # Another recycle finished first
            logger.info(f"Recycle of {channel.channel_id} for {trade_id} already settled elsewhere")
            return await self.get_channel(channel.channel_id)

        if updated.status == ChannelStatus.AVAILABLE.value:
            logger.info(
                f"♻️ CHANNEL_RECYCLED: {channel.channel_id} from trade {trade_id} "
                f"({len(removable)} participants evicted)"
            )
        elif failed:
            logger.error(
                f"🅿️ CHANNEL_PARKED: {channel.channel_id} trade {trade_id} - "
                f"could not evict {failed}"
            )
        else:
            logger.error(f"🅿️ CHANNEL_PARKED: {channel.channel_id} trade {trade_id} - token rotation failed")
        return updated

    async def retry_parked_channels(self) -> Dict[str, int]:
        """Re-attempt recycling for every channel parked at 'completed'"""
        parked = await self.channels_by_status(ChannelStatus.COMPLETED.value)
        summary = {"recycled": 0, "parked": 0}
        for channel in parked:
            if channel.assigned_trade_id is None:
                continue
            result = await self._recycle_channel(channel, channel.assigned_trade_id, self.protected_identities)
            if result is not None and result.status == ChannelStatus.AVAILABLE.value:
                summary["recycled"] += 1
            else:
                summary["parked"] += 1
        if parked:
            logger.info(f"PARKED_RETRY: {summary['recycled']} recycled, {summary['parked']} still parked")
        return summary

    # ------------------------------------------------------------------
    # Archive and inspection
    # ------------------------------------------------------------------

    async def archive(self, channel_id: str) -> Optional[Channel]:
        """Permanently remove a channel from the assignable pool"""
        now = datetime.utcnow()
        stmt = (
            update(Channel)
            .where(Channel.channel_id == channel_id, Channel.status != ChannelStatus.ARCHIVED.value)
            .values(status=ChannelStatus.ARCHIVED.value, updated_at=now)
            .returning(Channel)
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            channel = result.scalar_one_or_none()

        if channel is None:
            return await self.get_channel(channel_id)
        if channel.assigned_trade_id:
            logger.warning(f"📦 CHANNEL_ARCHIVED: {channel_id} while held by trade {channel.assigned_trade_id}")
        else:
            logger.info(f"📦 CHANNEL_ARCHIVED: {channel_id}")
        return channel

    async def verify_channels(self) -> List[str]:
        """Archive non-archived channels whose backing chat no longer exists"""
        archived = []
        for status in (ChannelStatus.AVAILABLE, ChannelStatus.ASSIGNED, ChannelStatus.COMPLETED):
            for channel in await self.channels_by_status(status.value):
                try:
                    exists = await self.participant_manager.channel_exists(channel.channel_id)
                except Exception as e:
                    logger.error(f"❌ Could not verify channel {channel.channel_id}: {e}")
                    continue
                if not exists:
                    await self.archive(channel.channel_id)
                    archived.append(channel.channel_id)
        if archived:
            logger.warning(f"VERIFY_CHANNELS: archived {len(archived)} missing channels: {archived}")
        return archived

    async def channels_by_status(self, status: str) -> List[Channel]:
        async with self.session() as session:
            result = await session.execute(
                select(Channel).where(Channel.status == status).order_by(Channel.created_at, Channel.id)
            )
            return list(result.scalars().all())

    async def pool_stats(self) -> Dict[str, int]:
        """Channel counts per status plus total"""
        async with self.session() as session:
            result = await session.execute(
                select(Channel.status, func.count(Channel.id)).group_by(Channel.status)
            )
            counts = {status: count for status, count in result.all()}
        stats = {status.value: counts.get(status.value, 0) for status in ChannelStatus}
        stats["total"] = sum(stats.values())
        return stats
