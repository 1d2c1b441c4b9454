"""
Escrow Lifecycle Engine - Database Schema
=========================================

Three tables back the engine:
- trades: one escrow trade, its terms, approvals and deposit accounting
- channels: the finite pool of private chats leased to trades
- deposit_references: every on-chain transfer consumed by a trade, unique across all trades

Amounts are stored through text-backed column types so no backend rounds them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, func
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class TradeStatus(Enum):
    """Escrow trade lifecycle states"""
    DRAFT = "draft"
    AWAITING_DETAILS = "awaiting_details"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSITED = "deposited"
    IN_SETTLEMENT_REVIEW = "in_settlement_review"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class ChannelStatus(Enum):
    """Pool channel lifecycle states"""
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    COMPLETED = "completed"  # Parked: participants could not all be evicted
    ARCHIVED = "archived"    # Backing chat no longer exists


class TradeRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class SettlementKind(Enum):
    """Fund movement direction: release pays the buyer, refund pays the seller"""
    RELEASE = "release"
    REFUND = "refund"


class SettlementMode(Enum):
    """Which approvals a pending fund movement needs"""
    DUAL = "dual"    # Buyer and seller, admin may substitute for either
    ADMIN = "admin"  # Administrator only (partial or dispute settlement)


# ============================================================================
# COLUMN TYPES
# ============================================================================

class DecimalText(TypeDecorator):
    """Exact Decimal stored as its plain string form"""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class MinorUnits(TypeDecorator):
    """Arbitrary-size integer (token minor units, e.g. wei) stored as text"""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# ============================================================================
# MODELS
# ============================================================================

class Trade(Base):
    """One escrow trade between a buyer and a seller"""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    channel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=TradeStatus.DRAFT.value)
    status_before_dispute: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Parties
    initiator_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    origin_chat_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    buyer_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    buyer_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    seller_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    seller_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    allowed_participant_ids: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=list)
    invite_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Deal terms
    asset: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, default="USDT")
    network: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    quantity: Mapped[Optional[Decimal]] = mapped_column(DecimalText, nullable=True)
    rate: Mapped[Optional[Decimal]] = mapped_column(DecimalText, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    buyer_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    seller_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    deposit_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Deal-terms approvals
    buyer_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deal_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Deposit accounting
    accumulated_deposit: Mapped[Decimal] = mapped_column(DecimalText, nullable=False, default=Decimal("0"))
    accumulated_deposit_minor: Mapped[int] = mapped_column(MinorUnits, nullable=False, default=0)
    deposit_tx_refs: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    confirmed_amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False, default=Decimal("0"))
    settled_amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False, default=Decimal("0"))

    # Release confirmation
    pending_release_amount: Mapped[Optional[Decimal]] = mapped_column(DecimalText, nullable=True)
    release_mode: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    buyer_confirmed_release: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_confirmed_release: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_confirmed_release: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    release_button_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    release_tx_refs: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Refund confirmation
    pending_refund_amount: Mapped[Optional[Decimal]] = mapped_column(DecimalText, nullable=True)
    refund_mode: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    buyer_confirmed_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_confirmed_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    admin_confirmed_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_button_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    refund_tx_refs: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Cancellation confirmation
    buyer_confirmed_cancel: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_confirmed_cancel: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Concurrency control: bumped on every write, all writes are conditional on it
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    trade_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_trades_status_activity", "status", "last_activity_at"),
    )

    @property
    def remaining_balance(self) -> Decimal:
        """Confirmed funds not yet released or refunded"""
        return (self.confirmed_amount or Decimal("0")) - (self.settled_amount or Decimal("0"))

    @property
    def participant_ids(self) -> List[int]:
        """Every identity known to have access to the trade's channel"""
        ids = []
        for candidate in [self.initiator_id, self.buyer_id, self.seller_id, *(self.allowed_participant_ids or [])]:
            if candidate is not None and candidate not in ids:
                ids.append(candidate)
        return ids

    def role_of(self, user_id: Optional[int]) -> Optional[TradeRole]:
        if user_id is None:
            return None
        if self.buyer_id == user_id:
            return TradeRole.BUYER
        if self.seller_id == user_id:
            return TradeRole.SELLER
        return None

    def __repr__(self):
        return f"<Trade {self.trade_id} status={self.status} v{self.version}>"


class Channel(Base):
    """A private chat in the shared pool, leased to at most one trade at a time"""

    __tablename__ = "channels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ChannelStatus.AVAILABLE.value)
    assigned_trade_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    invite_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_channels_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Channel {self.channel_id} status={self.status} trade={self.assigned_trade_id}>"


class DepositReference(Base):
    """An on-chain transfer consumed by a trade; tx_ref is unique across all trades"""

    __tablename__ = "deposit_references"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_ref: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    trade_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("trades.trade_id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    amount_minor: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<DepositReference {self.tx_ref} trade={self.trade_id} amount={self.amount}>"
