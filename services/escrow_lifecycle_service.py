"""
Escrow Lifecycle Service
Trade creation, role selection, deal terms, dispute, reset and cancellation.

All writes go through TradeStore.mutate, so every guard below is evaluated
against the latest persisted record and the write only lands if nothing
changed in between.
"""

import logging
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from config import Config
from models import Trade, TradeRole, TradeStatus
from services.channel_pool_service import ChannelPoolService
from services.escrow_errors import ConflictingState, PermissionDenied, ValidationError
from services.results import TradeResult
from services.trade_store import TradeStore
from utils.decimal_precision import TokenAmount
from utils.escrow_state_machine import (
    PRE_DEPOSIT_STATUSES, TERMINAL_STATUSES, EscrowStateValidator
)
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)

TERM_FIELDS = ("network", "asset", "quantity", "rate", "payment_method")
REQUIRED_DEAL_FIELDS = TERM_FIELDS + ("buyer_address", "seller_address")

# Step-scoped fields cleared by a reset
_RESET_VALUES = {
    "buyer_id": None,
    "buyer_name": None,
    "seller_id": None,
    "seller_name": None,
    "asset": "USDT",
    "network": None,
    "quantity": None,
    "rate": None,
    "payment_method": None,
    "buyer_address": None,
    "seller_address": None,
    "deposit_address": None,
    "buyer_approved": False,
    "seller_approved": False,
    "deal_finalized": False,
    "buyer_confirmed_cancel": False,
    "seller_confirmed_cancel": False,
    "trade_started_at": None,
}


def generate_trade_id() -> str:
    return f"ESC{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"


def _has_deposit(trade: Trade) -> bool:
    return (trade.accumulated_deposit or Decimal("0")) > 0 or bool(trade.deposit_tx_refs)


class EscrowLifecycleService:
    """Drives a trade from creation to deposit and handles side exits"""

    def __init__(
        self,
        store: TradeStore,
        channel_pool: ChannelPoolService,
        recycle_scheduler=None,
        admin_ids: Optional[Iterable[int]] = None,
    ):
        self.store = store
        self.channel_pool = channel_pool
        self.recycle_scheduler = recycle_scheduler
        self.admin_ids = frozenset(Config.ADMIN_USER_IDS if admin_ids is None else admin_ids)

    def is_admin(self, actor_id: Optional[int]) -> bool:
        return actor_id is not None and actor_id in self.admin_ids

    def _schedule_recycle(self, trade_id: str) -> None:
        if self.recycle_scheduler is not None:
            self.recycle_scheduler.schedule_recycle(trade_id)

    def _ensure_party(self, trade: Trade, actor_id: int) -> None:
        if self.is_admin(actor_id):
            return
        if actor_id != trade.initiator_id and trade.role_of(actor_id) is None:
            raise PermissionDenied(f"User {actor_id} is not part of trade {trade.trade_id}")

    # ------------------------------------------------------------------
    # Creation and roles
    # ------------------------------------------------------------------

    async def create_trade(
        self,
        initiator_id: int,
        origin_chat_id: Optional[str] = None,
        participant_ids: Optional[Iterable[int]] = None,
    ) -> TradeResult:
        """Lease a channel and open a draft trade bound to it"""
        trade_id = generate_trade_id()
        channel = await self.channel_pool.lease(trade_id)

        allowed = []
        for participant in [initiator_id, *(participant_ids or [])]:
            if participant is not None and participant not in allowed:
                allowed.append(participant)

        try:
            token = await self.channel_pool.issue_access_token(channel)
            now = datetime.utcnow()
            trade = Trade(
                trade_id=trade_id,
                channel_id=channel.channel_id,
                status=TradeStatus.DRAFT.value,
                initiator_id=initiator_id,
                origin_chat_id=str(origin_chat_id) if origin_chat_id is not None else None,
                allowed_participant_ids=allowed,
                invite_token=token,
                created_at=now,
                last_activity_at=now,
            )
            trade = await self.store.insert_trade(trade)
        except Exception:
            await self.channel_pool.release_lease(trade_id)
            raise

        logger.info(f"🆕 TRADE_OPENED: {trade_id} by {initiator_id} in channel {channel.channel_id}")
        return TradeResult(
            trade=trade,
            message="Trade room ready. Choose your role.",
            actions=["select_role_buyer", "select_role_seller"],
            notify=allowed,
        )

    async def select_role(
        self, trade_id: str, actor_id: int, role, display_name: Optional[str] = None
    ) -> TradeResult:
        try:
            role = role if isinstance(role, TradeRole) else TradeRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role {role!r}", user_message="❌ Choose buyer or seller.") from None
        other = TradeRole.SELLER if role == TradeRole.BUYER else TradeRole.BUYER

        def build(trade: Trade) -> Optional[dict]:
            EscrowStateValidator.ensure_status(trade_id, trade.status, {TradeStatus.DRAFT.value})
            if getattr(trade, f"{other.value}_id") == actor_id:
                raise ValidationError(
                    f"User {actor_id} already holds the {other.value} role on {trade_id}",
                    user_message="❌ You cannot be both buyer and seller.",
                )
            holder = getattr(trade, f"{role.value}_id")
            if holder is not None and holder != actor_id:
                raise ConflictingState(
                    f"{role.value} role on {trade_id} already taken by {holder}",
                    current_status=trade.status,
                    user_message=f"❌ The {role.value} role is already taken.",
                )
            values = {
                f"{role.value}_id": actor_id,
                f"{role.value}_name": display_name,
                "last_activity_at": datetime.utcnow(),
            }
            if actor_id not in (trade.allowed_participant_ids or []):
                values["allowed_participant_ids"] = [*(trade.allowed_participant_ids or []), actor_id]
            if getattr(trade, f"{other.value}_id") is not None:
                EscrowStateValidator.ensure_transition(trade_id, trade.status, TradeStatus.AWAITING_DETAILS.value)
                values["status"] = TradeStatus.AWAITING_DETAILS.value
            return values

        trade = await self.store.mutate(trade_id, build)
        logger.info(f"👤 ROLE_SELECTED: {trade_id} {role.value}={actor_id} status={trade.status}")
        if trade.status == TradeStatus.AWAITING_DETAILS.value:
            return TradeResult(
                trade=trade,
                message="Both roles selected. Enter the deal terms.",
                actions=["submit_terms"],
                notify=[trade.buyer_id, trade.seller_id],
            )
        return TradeResult(trade=trade, message=f"You are the {role.value}.", actions=[f"select_role_{other.value}"])

    # ------------------------------------------------------------------
    # Deal terms
    # ------------------------------------------------------------------

    def _parse_term(self, field: str, value) -> object:
        if field == "network":
            network = InputValidator.normalize_network(value)
            if network not in {n for _, n in Config.TOKEN_SETTINGS}:
                raise ValidationError(f"Unsupported network {network}", user_message=f"❌ {network} is not supported.")
            return network
        if field == "asset":
            asset = (value or "").strip().upper()
            if asset not in {a for a, _ in Config.TOKEN_SETTINGS}:
                raise ValidationError(f"Unsupported asset {asset!r}", user_message=f"❌ {asset or 'That token'} is not supported.")
            return asset
        if field == "quantity":
            quantity = TokenAmount.parse(value, "quantity")
            if quantity < Config.MIN_TRADE_AMOUNT or quantity > Config.MAX_TRADE_AMOUNT:
                raise ValidationError(
                    f"Quantity {quantity} outside {Config.MIN_TRADE_AMOUNT}..{Config.MAX_TRADE_AMOUNT}",
                    user_message=(
                        f"❌ Amount must be between {Config.MIN_TRADE_AMOUNT} and {Config.MAX_TRADE_AMOUNT}."
                    ),
                )
            return quantity
        if field == "rate":
            return TokenAmount.parse(value, "rate")
        if field == "payment_method":
            method = (value or "").strip()
            if not method or len(method) > 128:
                raise ValidationError(
                    "Payment method must be 1-128 characters",
                    user_message="❌ Please enter a payment method (max 128 characters).",
                )
            return method
        raise ValidationError(f"Unknown term {field!r}")

    async def submit_terms(self, trade_id: str, actor_id: int, field: str, value) -> TradeResult:
        """Set one deal term; only the trade creator or an administrator may do this"""
        parsed = self._parse_term(field, value)

        def build(trade: Trade) -> dict:
            EscrowStateValidator.ensure_status(trade_id, trade.status, {TradeStatus.AWAITING_DETAILS.value})
            if actor_id != trade.initiator_id and not self.is_admin(actor_id):
                raise PermissionDenied(
                    f"User {actor_id} cannot edit terms of {trade_id}",
                    user_message="❌ Only the trade creator can enter the deal terms.",
                )
            values = {
                field: parsed,
                "buyer_approved": False,
                "seller_approved": False,
                "last_activity_at": datetime.utcnow(),
            }
            if field == "network" and parsed != trade.network:
                # Addresses were validated for the old network
                values.update(buyer_address=None, seller_address=None)
            return values

        trade = await self.store.mutate(trade_id, build)
        logger.info(f"📝 TERMS_UPDATED: {trade_id} {field}={parsed}")
        return TradeResult(trade=trade, message=f"{field.replace('_', ' ').capitalize()} saved.",
                           actions=self._missing_actions(trade))

    async def submit_address(self, trade_id: str, actor_id: int, role, address: str) -> TradeResult:
        role = role if isinstance(role, TradeRole) else TradeRole(role)

        def build(trade: Trade) -> dict:
            EscrowStateValidator.ensure_status(trade_id, trade.status, {TradeStatus.AWAITING_DETAILS.value})
            if not self.is_admin(actor_id) and getattr(trade, f"{role.value}_id") != actor_id:
                raise PermissionDenied(
                    f"User {actor_id} is not the {role.value} of {trade_id}",
                    user_message=f"❌ Only the {role.value} can set this address.",
                )
            if not trade.network:
                raise ValidationError("Network not chosen yet", user_message="❌ Choose the network first.")
            return {
                f"{role.value}_address": InputValidator.validate_address(address, trade.network),
                "buyer_approved": False,
                "seller_approved": False,
                "last_activity_at": datetime.utcnow(),
            }

        trade = await self.store.mutate(trade_id, build)
        logger.info(f"🏦 ADDRESS_SET: {trade_id} {role.value}")
        return TradeResult(trade=trade, message="Address saved.", actions=self._missing_actions(trade))

    @staticmethod
    def _missing_actions(trade: Trade) -> List[str]:
        missing = [f"submit_{name}" for name in REQUIRED_DEAL_FIELDS if getattr(trade, name) in (None, "")]
        return missing or ["approve_deal"]

    async def approve_deal(self, trade_id: str, actor_id: int) -> TradeResult:
        """Party approval of the summarised terms; both approvals open the deposit step"""

        def build(trade: Trade) -> Optional[dict]:
            EscrowStateValidator.ensure_status(trade_id, trade.status, {TradeStatus.AWAITING_DETAILS.value})
            role = trade.role_of(actor_id)
            if role is None:
                raise PermissionDenied(f"User {actor_id} is not a party to {trade_id}")
            missing = [name for name in REQUIRED_DEAL_FIELDS if getattr(trade, name) in (None, "")]
            if missing:
                raise ValidationError(
                    f"Trade {trade_id} missing {missing}",
                    user_message=f"❌ Missing deal details: {', '.join(m.replace('_', ' ') for m in missing)}.",
                )
            if getattr(trade, f"{role.value}_approved"):
                return None

            values = {f"{role.value}_approved": True, "last_activity_at": datetime.utcnow()}
            other = TradeRole.SELLER if role == TradeRole.BUYER else TradeRole.BUYER
            if getattr(trade, f"{other.value}_approved"):
                Config.get_token_settings(trade.asset, trade.network)
                EscrowStateValidator.ensure_transition(trade_id, trade.status, TradeStatus.AWAITING_DEPOSIT.value)
                values.update(
                    status=TradeStatus.AWAITING_DEPOSIT.value,
                    deal_finalized=True,
                    deposit_address=Config.get_deposit_address(trade.asset, trade.network),
                    trade_started_at=datetime.utcnow(),
                )
            return values

        trade = await self.store.mutate(trade_id, build)
        if trade.status == TradeStatus.AWAITING_DEPOSIT.value:
            logger.info(f"🤝 DEAL_FINALIZED: {trade_id} {trade.quantity} {trade.asset}/{trade.network}")
            return TradeResult(
                trade=trade,
                message=f"Deal confirmed. Deposit {trade.quantity} {trade.asset} to {trade.deposit_address}",
                actions=["submit_deposit_reference"],
                notify=[trade.buyer_id, trade.seller_id],
            )
        return TradeResult(trade=trade, message="Approval recorded. Waiting for the other party.")

    # ------------------------------------------------------------------
    # Side exits
    # ------------------------------------------------------------------

    async def open_dispute(self, trade_id: str, actor_id: int, reason: Optional[str] = None) -> TradeResult:
        def build(trade: Trade) -> dict:
            EscrowStateValidator.ensure_not_terminal(trade_id, trade.status)
            if not self.is_admin(actor_id) and trade.role_of(actor_id) is None:
                raise PermissionDenied(f"User {actor_id} is not a party to {trade_id}")
            if trade.release_button_used or trade.refund_button_used:
                raise ConflictingState(
                    f"Payout in progress on {trade_id}",
                    current_status=trade.status,
                    user_message="⏳ A payout is being processed. Please wait.",
                )
            EscrowStateValidator.ensure_transition(trade_id, trade.status, TradeStatus.DISPUTED.value)
            values = {
                "status": TradeStatus.DISPUTED.value,
                "status_before_dispute": trade.status,
                "pending_release_amount": None,
                "release_mode": None,
                "pending_refund_amount": None,
                "refund_mode": None,
                "last_activity_at": datetime.utcnow(),
            }
            # Partial deposits stop accumulating here; they become the balance an administrator settles
            if not trade.confirmed_amount and _has_deposit(trade):
                values["confirmed_amount"] = trade.accumulated_deposit or Decimal("0")
            return values

        trade = await self.store.mutate(trade_id, build)
        logger.warning(f"⚖️ DISPUTE_OPENED: {trade_id} by {actor_id} (was {trade.status_before_dispute}): {reason}")
        return TradeResult(
            trade=trade,
            message="Dispute opened. An administrator will review this trade.",
            notify=sorted(self.admin_ids),
        )

    async def reset_trade(self, trade_id: str, actor_id: int) -> TradeResult:
        """Return a trade without deposits to draft, clearing roles and terms"""
        is_admin = self.is_admin(actor_id)

        def build(trade: Trade) -> dict:
            self._ensure_party(trade, actor_id)
            EscrowStateValidator.ensure_status(trade_id, trade.status, PRE_DEPOSIT_STATUSES)
            if _has_deposit(trade):
                raise ConflictingState(
                    f"Trade {trade_id} already has deposits",
                    current_status=trade.status,
                    user_message="❌ A deposit was already received, so this trade cannot be restarted.",
                )
            if trade.deal_finalized and not is_admin:
                raise PermissionDenied(
                    f"Trade {trade_id} terms are finalized",
                    user_message="❌ The deal is already finalized. Ask an administrator to restart it.",
                )
            values = {**_RESET_VALUES, "last_activity_at": datetime.utcnow()}
            if trade.status != TradeStatus.DRAFT.value:
                EscrowStateValidator.ensure_transition(trade_id, trade.status, TradeStatus.DRAFT.value, is_admin=is_admin)
                values["status"] = TradeStatus.DRAFT.value
            return values

        trade = await self.store.mutate(trade_id, build)
        logger.info(f"🔄 TRADE_RESET: {trade_id} by {actor_id}")
        return TradeResult(
            trade=trade,
            message="Trade restarted. Choose your role.",
            actions=["select_role_buyer", "select_role_seller"],
        )

    async def cancel_trade(self, trade_id: str, actor_id: int) -> TradeResult:
        """Cancel before any deposit: both parties confirm, or one administrator"""
        is_admin = self.is_admin(actor_id)

        def build(trade: Trade) -> Optional[dict]:
            self._ensure_party(trade, actor_id)
            allowed = PRE_DEPOSIT_STATUSES | ({TradeStatus.DISPUTED.value} if is_admin else set())
            EscrowStateValidator.ensure_status(trade_id, trade.status, allowed)
            if _has_deposit(trade):
                raise ConflictingState(
                    f"Trade {trade_id} has deposits and cannot be cancelled",
                    current_status=trade.status,
                    user_message="❌ Funds were deposited. Request a refund instead.",
                )

            values = {"last_activity_at": datetime.utcnow()}
            role = trade.role_of(actor_id)
            if role is not None:
                values[f"{role.value}_confirmed_cancel"] = True
            confirmed = {
                "buyer": values.get("buyer_confirmed_cancel", trade.buyer_confirmed_cancel),
                "seller": values.get("seller_confirmed_cancel", trade.seller_confirmed_cancel),
            }
            parties = [name for name in ("buyer", "seller") if getattr(trade, f"{name}_id") is not None]
            everyone_agreed = all(confirmed[name] for name in parties) and (bool(parties) or actor_id == trade.initiator_id)

            if is_admin or everyone_agreed:
                EscrowStateValidator.ensure_transition(
                    trade_id, trade.status, TradeStatus.CANCELLED.value, is_admin=is_admin
                )
                values.update(status=TradeStatus.CANCELLED.value, completed_at=datetime.utcnow())
            elif role is None:
                return None
            return values

        trade = await self.store.mutate(trade_id, build)
        if trade.status == TradeStatus.CANCELLED.value:
            logger.info(f"🛑 TRADE_CANCELLED: {trade_id} by {actor_id}")
            self._schedule_recycle(trade_id)
            return TradeResult(trade=trade, message="Trade cancelled.", notify=[trade.buyer_id, trade.seller_id])
        return TradeResult(
            trade=trade,
            message="Cancellation requested. Waiting for the other party to confirm.",
            actions=["confirm_cancel"],
        )

    async def cancel_inactive_trades(self, now: Optional[datetime] = None) -> List[str]:
        """Cancel undeposited trades idle for longer than the inactivity timeout"""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=Config.INACTIVITY_TIMEOUT_MINUTES)
        cancelled = []
        for stale in await self.store.find_inactive(PRE_DEPOSIT_STATUSES, cutoff):

            def build(trade: Trade) -> Optional[dict]:
                if (
                    trade.status not in PRE_DEPOSIT_STATUSES
                    or _has_deposit(trade)
                    or trade.last_activity_at >= cutoff
                ):
                    return None
                return {"status": TradeStatus.CANCELLED.value, "completed_at": now}

            try:
                trade = await self.store.mutate(stale.trade_id, build)
            except ConflictingState as e:
                logger.info(f"Inactivity cancel of {stale.trade_id} skipped: {e}")
                continue
            if trade.status == TradeStatus.CANCELLED.value:
                cancelled.append(trade.trade_id)
                logger.info(f"⏰ TRADE_EXPIRED: {trade.trade_id} idle since {trade.last_activity_at}")
                self._schedule_recycle(trade.trade_id)
        if cancelled:
            logger.info(f"INACTIVITY_SWEEP: cancelled {len(cancelled)} trades")
        return cancelled

    async def touch_activity(self, trade_id: str) -> Trade:
        def build(trade: Trade) -> Optional[dict]:
            if trade.status in TERMINAL_STATUSES:
                return None
            return {"last_activity_at": datetime.utcnow()}

        return await self.store.mutate(trade_id, build)

    # ------------------------------------------------------------------
    # Administrative override
    # ------------------------------------------------------------------

    async def admin_override(
        self, trade_id: str, actor_id: int, target_status: str, confirmed_amount=None
    ) -> TradeResult:
        """Force a transition when automatic reconciliation or evictions cannot proceed"""
        if not self.is_admin(actor_id):
            raise PermissionDenied(f"User {actor_id} is not an administrator")
        try:
            target = TradeStatus(target_status).value
        except ValueError:
            raise ValidationError(f"Unknown status {target_status!r}") from None
        amount = TokenAmount.parse(confirmed_amount, "confirmed amount") if confirmed_amount is not None else None

        def build(trade: Trade) -> dict:
            EscrowStateValidator.ensure_transition(trade_id, trade.status, target, is_admin=True)
            now = datetime.utcnow()
            values = {"status": target, "last_activity_at": now}
            if target == TradeStatus.DEPOSITED.value:
                confirmed = amount if amount is not None else trade.accumulated_deposit
                if not confirmed or confirmed <= 0:
                    raise ValidationError(
                        f"No confirmed amount for {trade_id}",
                        user_message="❌ Provide the confirmed deposit amount.",
                    )
                values["confirmed_amount"] = confirmed
            elif target == TradeStatus.CANCELLED.value and _has_deposit(trade):
                raise ConflictingState(
                    f"Trade {trade_id} has deposits and cannot be cancelled",
                    current_status=trade.status,
                )
            if target in TERMINAL_STATUSES:
                values["completed_at"] = now
            return values

        trade = await self.store.mutate(trade_id, build)
        logger.warning(f"🛠️ ADMIN_OVERRIDE: {trade_id} -> {target} by {actor_id}")
        if trade.status in TERMINAL_STATUSES:
            self._schedule_recycle(trade_id)
        return TradeResult(trade=trade, message=f"Trade moved to {target}.")
