"""
Settlement Service
Release/refund confirmation protocol.

A fund movement (release pays the buyer, refund pays the seller) starts with a
request carrying an optional partial amount and is executed only after the
approvals its mode requires are recorded:

- DUAL mode: buyer and seller; an administrator's approval substitutes for both.
  When the paying side initiates, the receiving side is approved automatically.
- ADMIN mode: administrator only. Used for partial amounts requested by an
  administrator and for every settlement of a disputed trade.

The external call is guarded by a one-shot flag claimed with a conditional
update, and the flag is released again if the call fails so the movement stays
retryable. The trade becomes terminal only after a confirmed movement drains
the remaining balance.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from caching.expiring_cache import ExpiringCache
from config import Config
from models import SettlementKind, SettlementMode, Trade, TradeRole, TradeStatus
from services.escrow_errors import (
    ConflictingState, EscrowError, ExternalCallFailure, PermissionDenied, ValidationError
)
from services.fund_movement import FundMovementGateway
from services.results import SettlementOutcome
from services.trade_store import TradeStore
from utils.decimal_precision import TokenAmount
from utils.escrow_state_machine import SETTLEABLE_STATUSES, EscrowStateValidator

logger = logging.getLogger(__name__)


class SettlementService:
    """Gates release/refund fund movements behind the required approvals"""

    def __init__(
        self,
        store: TradeStore,
        fund_gateway: FundMovementGateway,
        recycle_scheduler=None,
        admin_ids: Optional[Iterable[int]] = None,
        debounce_cache: Optional[ExpiringCache] = None,
        tolerance: Optional[Decimal] = None,
    ):
        self.store = store
        self.fund_gateway = fund_gateway
        self.recycle_scheduler = recycle_scheduler
        self.admin_ids = frozenset(Config.ADMIN_USER_IDS if admin_ids is None else admin_ids)
        self.debounce_cache = debounce_cache or ExpiringCache(default_ttl=Config.CLICK_DEBOUNCE_SECONDS)
        self.tolerance = Decimal(tolerance) if tolerance is not None else Config.DEPOSIT_TOLERANCE

    def is_admin(self, actor_id: Optional[int]) -> bool:
        return actor_id is not None and actor_id in self.admin_ids

    # ------------------------------------------------------------------
    # Per-kind field names
    # ------------------------------------------------------------------

    @staticmethod
    def _kind(kind) -> SettlementKind:
        try:
            return kind if isinstance(kind, SettlementKind) else SettlementKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown settlement kind: {kind!r}") from None

    @staticmethod
    def _pending(trade: Trade, kind: SettlementKind) -> Optional[Decimal]:
        return getattr(trade, f"pending_{kind.value}_amount")

    @staticmethod
    def _mode(trade: Trade, kind: SettlementKind) -> Optional[str]:
        return getattr(trade, f"{kind.value}_mode")

    @staticmethod
    def _cleared_request(kind: SettlementKind) -> dict:
        return {
            f"pending_{kind.value}_amount": None,
            f"{kind.value}_mode": None,
            f"buyer_confirmed_{kind.value}": False,
            f"seller_confirmed_{kind.value}": False,
            f"admin_confirmed_{kind.value}": False,
            f"{kind.value}_button_used": False,
        }

    def approvals_satisfied(self, trade: Trade, kind: SettlementKind) -> bool:
        """True when every approval the pending request's mode needs is recorded"""
        kind = self._kind(kind)
        if self._pending(trade, kind) is None:
            return False
        if getattr(trade, f"admin_confirmed_{kind.value}"):
            return True
        if self._mode(trade, kind) == SettlementMode.ADMIN.value:
            return False
        return bool(
            getattr(trade, f"buyer_confirmed_{kind.value}") and getattr(trade, f"seller_confirmed_{kind.value}")
        )

    def awaiting_approvals(self, trade: Trade, kind: SettlementKind) -> List[str]:
        kind = self._kind(kind)
        if self.approvals_satisfied(trade, kind):
            return []
        if self._mode(trade, kind) == SettlementMode.ADMIN.value:
            return ["admin"]
        return [
            role for role in ("buyer", "seller")
            if not getattr(trade, f"{role}_confirmed_{kind.value}")
        ]

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def request_settlement(
        self, trade_id: str, kind, actor_id: int, amount=None
    ) -> SettlementOutcome:
        """Open a release/refund request; validates the amount before any prompt"""
        kind = self._kind(kind)
        other = SettlementKind.REFUND if kind == SettlementKind.RELEASE else SettlementKind.RELEASE
        trade = await self.store.find_one(trade_id)
        EscrowStateValidator.ensure_not_terminal(trade_id, trade.status)
        EscrowStateValidator.ensure_status(trade_id, trade.status, SETTLEABLE_STATUSES)

        is_admin = self.is_admin(actor_id)
        role = trade.role_of(actor_id)
        if not is_admin and role is None:
            raise PermissionDenied(f"User {actor_id} is not a party to trade {trade_id}")
        if trade.status == TradeStatus.DISPUTED.value and not is_admin:
            raise PermissionDenied(
                f"Disputed trade {trade_id} can only be settled by an administrator",
                user_message="❌ This trade is under dispute. An administrator will settle it.",
            )

        balance = trade.remaining_balance
        if amount is None:
            requested = balance
        else:
            requested = TokenAmount.parse(amount, "amount")
        if requested <= 0 or balance <= 0:
            raise ValidationError(
                f"Nothing to {kind.value} on trade {trade_id} (balance {balance})",
                user_message="❌ There is no confirmed balance left to move.",
            )
        if requested > balance:
            raise ValidationError(
                f"Requested {requested} exceeds confirmed balance {balance} on {trade_id}",
                user_message=f"❌ Amount exceeds the available balance of {TokenAmount.display(balance)} {trade.asset}.",
            )

        if self._pending(trade, other) is not None:
            raise ConflictingState(
                f"Trade {trade_id} already has a pending {other.value}",
                current_status=trade.status,
                user_message=f"❌ A {other.value} is already pending for this trade.",
            )
        if getattr(trade, f"{kind.value}_button_used"):
            raise ConflictingState(
                f"{kind.value} on {trade_id} is already executing",
                current_status=trade.status,
                user_message="⏳ This payout is already being processed.",
            )

        partial = requested < balance
        if is_admin and (partial or trade.status == TradeStatus.DISPUTED.value):
            mode = SettlementMode.ADMIN
        else:
            mode = SettlementMode.DUAL

        values = {
            **self._cleared_request(kind),
            f"pending_{kind.value}_amount": requested,
            f"{kind.value}_mode": mode.value,
            "last_activity_at": datetime.utcnow(),
        }
        if mode == SettlementMode.DUAL:
            # The receiving side is approved when the paying side initiates
            if kind == SettlementKind.RELEASE and role == TradeRole.SELLER:
                values["buyer_confirmed_release"] = True
            elif kind == SettlementKind.REFUND and role == TradeRole.BUYER:
                values["seller_confirmed_refund"] = True

        if trade.status == TradeStatus.DEPOSITED.value:
            EscrowStateValidator.ensure_transition(
                trade_id, trade.status, TradeStatus.IN_SETTLEMENT_REVIEW.value, is_admin=is_admin
            )
            values["status"] = TradeStatus.IN_SETTLEMENT_REVIEW.value

        updated = await self.store.compare_and_set(trade, expected_statuses={trade.status}, **values)
        awaiting = self.awaiting_approvals(updated, kind)
        logger.info(
            f"📨 SETTLEMENT_REQUESTED: {trade_id} {kind.value} {requested} {trade.asset} "
            f"mode={mode.value} by={actor_id} awaiting={awaiting}"
        )
        return SettlementOutcome(
            trade=updated,
            kind=kind.value,
            mode=mode.value,
            amount=requested,
            awaiting=awaiting,
            message=f"{kind.value.capitalize()} of {TokenAmount.display(requested)} {trade.asset} requested",
        )

    async def request_release(self, trade_id: str, actor_id: int, amount=None) -> SettlementOutcome:
        return await self.request_settlement(trade_id, SettlementKind.RELEASE, actor_id, amount)

    async def request_refund(self, trade_id: str, actor_id: int, amount=None) -> SettlementOutcome:
        return await self.request_settlement(trade_id, SettlementKind.REFUND, actor_id, amount)

    # ------------------------------------------------------------------
    # Approve / reject
    # ------------------------------------------------------------------

    async def approve(self, trade_id: str, kind, actor_id: int) -> SettlementOutcome:
        """Record one approval; executes the movement once the mode is satisfied"""
        kind = self._kind(kind)
        debounce_key = f"{kind.value}:{trade_id}:{actor_id}"
        if not self.debounce_cache.claim(debounce_key):
            raise ConflictingState(
                f"Repeated {kind.value} approval by {actor_id} on {trade_id}",
                user_message="⏳ Already processing your confirmation.",
            )

        try:
            return await self._approve(trade_id, kind, actor_id)
        except EscrowError:
            # A refused or failed approval must not hold the click window
            self.debounce_cache.delete(debounce_key)
            raise

    async def _approve(self, trade_id: str, kind: SettlementKind, actor_id: int) -> SettlementOutcome:
        trade = await self.store.find_one(trade_id)
        for attempt in range(1, Config.CAS_MAX_ATTEMPTS + 1):
            EscrowStateValidator.ensure_status(trade_id, trade.status, SETTLEABLE_STATUSES)
            if self._pending(trade, kind) is None:
                raise ConflictingState(
                    f"No pending {kind.value} on {trade_id}",
                    current_status=trade.status,
                    user_message=f"❌ There is no pending {kind.value} to confirm.",
                )

            flag = self._approval_flag(trade, kind, actor_id)
            if getattr(trade, flag):
                break
            try:
                trade = await self.store.compare_and_set(
                    trade, expected_statuses=SETTLEABLE_STATUSES,
                    **{flag: True, "last_activity_at": datetime.utcnow()},
                )
                logger.info(f"👍 SETTLEMENT_APPROVED: {trade_id} {kind.value} {flag} by {actor_id}")
                break
            except ConflictingState:
                if attempt == Config.CAS_MAX_ATTEMPTS:
                    raise
                trade = await self.store.find_one(trade_id)

        if not self.approvals_satisfied(trade, kind):
            awaiting = self.awaiting_approvals(trade, kind)
            return SettlementOutcome(
                trade=trade,
                kind=kind.value,
                mode=self._mode(trade, kind),
                amount=self._pending(trade, kind),
                awaiting=awaiting,
                message=f"Waiting for {', '.join(awaiting)} to confirm",
            )
        return await self._execute(trade, kind)

    async def approve_release(self, trade_id: str, actor_id: int) -> SettlementOutcome:
        return await self.approve(trade_id, SettlementKind.RELEASE, actor_id)

    async def approve_refund(self, trade_id: str, actor_id: int) -> SettlementOutcome:
        return await self.approve(trade_id, SettlementKind.REFUND, actor_id)

    def _approval_flag(self, trade: Trade, kind: SettlementKind, actor_id: int) -> str:
        if self.is_admin(actor_id):
            return f"admin_confirmed_{kind.value}"
        if self._mode(trade, kind) == SettlementMode.ADMIN.value:
            raise PermissionDenied(
                f"{kind.value} on {trade.trade_id} requires administrator approval",
                user_message="❌ Only an administrator can confirm this payout.",
            )
        role = trade.role_of(actor_id)
        if role is None:
            raise PermissionDenied(f"User {actor_id} is not a party to trade {trade.trade_id}")
        return f"{role.value}_confirmed_{kind.value}"

    async def reject(self, trade_id: str, kind, actor_id: int) -> SettlementOutcome:
        """Withdraw a pending request; the trade returns to 'deposited' if it was under review"""
        kind = self._kind(kind)
        trade = await self.store.find_one(trade_id)
        is_admin = self.is_admin(actor_id)
        if not is_admin and trade.role_of(actor_id) is None:
            raise PermissionDenied(f"User {actor_id} is not a party to trade {trade_id}")
        if self._pending(trade, kind) is None:
            raise ConflictingState(f"No pending {kind.value} on {trade_id}", current_status=trade.status)
        if not is_admin and (
            self._mode(trade, kind) == SettlementMode.ADMIN.value
            or trade.status == TradeStatus.DISPUTED.value
        ):
            raise PermissionDenied(
                f"{kind.value} on {trade_id} can only be withdrawn by an administrator",
                user_message="❌ Only an administrator can cancel this payout.",
            )
        if getattr(trade, f"{kind.value}_button_used"):
            raise ConflictingState(
                f"{kind.value} on {trade_id} is already executing",
                current_status=trade.status,
                user_message="⏳ This payout is already being processed.",
            )

        values = {**self._cleared_request(kind), "last_activity_at": datetime.utcnow()}
        if trade.status == TradeStatus.IN_SETTLEMENT_REVIEW.value:
            values["status"] = TradeStatus.DEPOSITED.value
        updated = await self.store.compare_and_set(trade, expected_statuses={trade.status}, **values)
        logger.info(f"↩️ SETTLEMENT_REJECTED: {trade_id} {kind.value} by {actor_id}")
        return SettlementOutcome(
            trade=updated, kind=kind.value, message=f"{kind.value.capitalize()} request cancelled"
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, trade: Trade, kind: SettlementKind) -> SettlementOutcome:
        trade_id = trade.trade_id
        if not self.approvals_satisfied(trade, kind):
            raise ConflictingState(f"{kind.value} on {trade_id} is missing approvals", current_status=trade.status)
        if getattr(trade, f"{kind.value}_button_used"):
            raise ConflictingState(
                f"{kind.value} on {trade_id} is already executing",
                current_status=trade.status,
                user_message="⏳ This payout is already being processed.",
            )

        amount = self._pending(trade, kind)
        to_address = trade.buyer_address if kind == SettlementKind.RELEASE else trade.seller_address
        if not to_address:
            raise ValidationError(
                f"No payout address for {kind.value} on {trade_id}",
                user_message="❌ The payout address is missing for this trade.",
            )

        # One-shot claim; a concurrent approver loses here
        claimed = await self.store.compare_and_set(
            trade, expected_statuses=SETTLEABLE_STATUSES, **{f"{kind.value}_button_used": True}
        )

        mover = self.fund_gateway.release if kind == SettlementKind.RELEASE else self.fund_gateway.refund
        try:
            tx_ref = await mover(trade.asset, trade.network, to_address, amount)
        except Exception as e:
            await self._release_claim(claimed, kind)
            logger.error(f"❌ SETTLEMENT_FAILED: {trade_id} {kind.value} {amount} {trade.asset}: {e}")
            if isinstance(e, EscrowError):
                raise
            raise ExternalCallFailure(
                f"{kind.value} of {amount} on {trade_id} failed: {e}", service="fund_movement"
            ) from e

        return await self._record_movement(claimed, kind, amount, tx_ref)

    async def _release_claim(self, trade: Trade, kind: SettlementKind) -> None:
        for _ in range(Config.CAS_MAX_ATTEMPTS):
            try:
                await self.store.compare_and_set(trade, **{f"{kind.value}_button_used": False})
                return
            except ConflictingState:
                trade = await self.store.find_one(trade.trade_id)
        logger.error(f"❌ Could not release {kind.value} claim on {trade.trade_id}; operator must reset it")

    async def _record_movement(
        self, trade: Trade, kind: SettlementKind, amount: Decimal, tx_ref: str
    ) -> SettlementOutcome:
        """Book a confirmed movement; funds already moved, so conflicts are retried on fresh state"""
        trade_id = trade.trade_id
        for attempt in range(1, Config.CAS_MAX_ATTEMPTS + 1):
            settled = (trade.settled_amount or Decimal("0")) + amount
            remaining = (trade.confirmed_amount or Decimal("0")) - settled
            terminal = remaining <= self.tolerance
            now = datetime.utcnow()
            values = {
                **self._cleared_request(kind),
                "settled_amount": settled,
                f"{kind.value}_tx_refs": [*(getattr(trade, f"{kind.value}_tx_refs") or []), tx_ref],
                "last_activity_at": now,
            }
            if terminal:
                target = TradeStatus.COMPLETED if kind == SettlementKind.RELEASE else TradeStatus.REFUNDED
                EscrowStateValidator.ensure_transition(trade_id, trade.status, target.value, is_admin=True)
                values.update(status=target.value, completed_at=now)
            try:
                updated = await self.store.compare_and_set(trade, **values)
                break
            except ConflictingState:
                if attempt == Config.CAS_MAX_ATTEMPTS:
                    logger.critical(
                        f"🚨 SETTLEMENT_UNRECORDED: {trade_id} {kind.value} {amount} tx={tx_ref} moved "
                        f"but could not be recorded"
                    )
                    raise
                trade = await self.store.find_one(trade_id)

        logger.info(
            f"💸 SETTLEMENT_EXECUTED: {trade_id} {kind.value} {amount} {trade.asset} tx={tx_ref} "
            f"remaining={updated.remaining_balance} status={updated.status}"
        )
        if terminal and self.recycle_scheduler is not None:
            self.recycle_scheduler.schedule_recycle(trade_id)

        return SettlementOutcome(
            trade=updated,
            kind=kind.value,
            mode=None,
            amount=amount,
            executed=True,
            tx_ref=tx_ref,
            message=(
                f"✅ {kind.value.capitalize()} of {TokenAmount.display(amount)} {trade.asset} sent"
                + ("" if terminal else f". Remaining balance: {TokenAmount.display(updated.remaining_balance)}")
            ),
        )
