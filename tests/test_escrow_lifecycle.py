"""
Escrow Lifecycle Tests
Creation through deal approval, plus dispute, reset, cancel and override exits
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from config import Config
from models import ChannelStatus, TradeStatus
from services.escrow_errors import (
    ConflictingState,
    NoChannelsAvailable,
    PermissionDenied,
    ValidationError,
)
from services.escrow_lifecycle_service import EscrowLifecycleService, generate_trade_id

from conftest import (
    ADMIN_ID,
    BUYER_ADDRESS,
    BUYER_ID,
    DEPOSIT_ADDRESS,
    OUTSIDER_ID,
    SELLER_ADDRESS,
    SELLER_ID,
    tx_hash,
)


@pytest.fixture
def recycle_scheduler():
    return Mock()


@pytest.fixture
def lifecycle(store, pool, recycle_scheduler):
    return EscrowLifecycleService(store, pool, recycle_scheduler=recycle_scheduler, admin_ids=[ADMIN_ID])


def details_trade(make_trade, **overrides):
    fields = dict(
        status=TradeStatus.AWAITING_DETAILS.value,
        buyer_approved=False,
        seller_approved=False,
        deal_finalized=False,
        deposit_address=None,
    )
    fields.update(overrides)
    return make_trade(**fields)


def test_trade_ids_are_prefixed_and_unique():
    ids = {generate_trade_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(trade_id.startswith("ESC") for trade_id in ids)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_create_to_awaiting_deposit(self, lifecycle, pool):
        await pool.add_channel("-1001", "Room A")

        created = await lifecycle.create_trade(SELLER_ID, origin_chat_id=-5000, participant_ids=[BUYER_ID])
        trade_id = created.trade.trade_id
        assert created.trade.status == TradeStatus.DRAFT.value
        assert created.trade.channel_id == "-1001"
        assert created.trade.invite_token
        assert created.trade.allowed_participant_ids == [SELLER_ID, BUYER_ID]
        assert created.actions == ["select_role_buyer", "select_role_seller"]

        first_role = await lifecycle.select_role(trade_id, SELLER_ID, "seller", "Sam")
        assert first_role.trade.status == TradeStatus.DRAFT.value
        assert first_role.actions == ["select_role_buyer"]

        both = await lifecycle.select_role(trade_id, BUYER_ID, "buyer", "Bo")
        assert both.trade.status == TradeStatus.AWAITING_DETAILS.value

        await lifecycle.submit_terms(trade_id, SELLER_ID, "network", "bsc")
        await lifecycle.submit_terms(trade_id, SELLER_ID, "asset", "usdt")
        await lifecycle.submit_terms(trade_id, SELLER_ID, "quantity", "100")
        await lifecycle.submit_terms(trade_id, SELLER_ID, "rate", "1.02")
        terms = await lifecycle.submit_terms(trade_id, SELLER_ID, "payment_method", "Wise")
        assert terms.actions == ["submit_buyer_address", "submit_seller_address"]

        await lifecycle.submit_address(trade_id, BUYER_ID, "buyer", BUYER_ADDRESS)
        ready = await lifecycle.submit_address(trade_id, SELLER_ID, "seller", SELLER_ADDRESS)
        assert ready.actions == ["approve_deal"]

        half = await lifecycle.approve_deal(trade_id, BUYER_ID)
        assert half.trade.status == TradeStatus.AWAITING_DETAILS.value

        final = await lifecycle.approve_deal(trade_id, SELLER_ID)
        assert final.trade.status == TradeStatus.AWAITING_DEPOSIT.value
        assert final.trade.deal_finalized is True
        assert final.trade.deposit_address == DEPOSIT_ADDRESS
        assert final.trade.quantity == Decimal("100")
        assert final.trade.trade_started_at is not None
        assert final.actions == ["submit_deposit_reference"]

    @pytest.mark.asyncio
    async def test_exhausted_pool_rejects_creation(self, lifecycle):
        with pytest.raises(NoChannelsAvailable):
            await lifecycle.create_trade(SELLER_ID)

    @pytest.mark.asyncio
    async def test_failed_insert_hands_lease_back(self, lifecycle, pool, store):
        await pool.add_channel("-1001")
        store.insert_trade = AsyncMock(side_effect=ConflictingState("Trade already exists"))

        with pytest.raises(ConflictingState):
            await lifecycle.create_trade(SELLER_ID)

        channel = await pool.get_channel("-1001")
        assert channel.status == ChannelStatus.AVAILABLE.value
        assert channel.assigned_trade_id is None


class TestRoles:
    @pytest.mark.asyncio
    async def test_cannot_hold_both_roles(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.DRAFT.value, buyer_id=None, seller_id=SELLER_ID)
        with pytest.raises(ValidationError):
            await lifecycle.select_role(trade.trade_id, SELLER_ID, "buyer")

    @pytest.mark.asyncio
    async def test_taken_role_is_conflict(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.DRAFT.value, buyer_id=None, seller_id=SELLER_ID)
        with pytest.raises(ConflictingState):
            await lifecycle.select_role(trade.trade_id, OUTSIDER_ID, "seller")

    @pytest.mark.asyncio
    async def test_unknown_role(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.DRAFT.value, buyer_id=None, seller_id=None)
        with pytest.raises(ValidationError):
            await lifecycle.select_role(trade.trade_id, BUYER_ID, "broker")

    @pytest.mark.asyncio
    async def test_new_participant_is_tracked_for_eviction(self, lifecycle, make_trade):
        trade = await make_trade(
            status=TradeStatus.DRAFT.value, buyer_id=None, seller_id=SELLER_ID, allowed_participant_ids=[SELLER_ID]
        )
        result = await lifecycle.select_role(trade.trade_id, OUTSIDER_ID, "buyer")
        assert OUTSIDER_ID in result.trade.allowed_participant_ids


class TestTerms:
    @pytest.mark.asyncio
    async def test_only_creator_edits_terms(self, lifecycle, make_trade):
        trade = await details_trade(make_trade)
        with pytest.raises(PermissionDenied):
            await lifecycle.submit_terms(trade.trade_id, BUYER_ID, "rate", "2")

        admin_edit = await lifecycle.submit_terms(trade.trade_id, ADMIN_ID, "rate", "2")
        assert admin_edit.trade.rate == Decimal("2")

    @pytest.mark.parametrize("field,value", [
        ("quantity", "0.5"),
        ("quantity", "250000"),
        ("network", "DOGE"),
        ("asset", "SHIB"),
        ("payment_method", "   "),
        ("colour", "blue"),
    ])
    @pytest.mark.asyncio
    async def test_invalid_terms_rejected(self, lifecycle, make_trade, field, value):
        trade = await details_trade(make_trade)
        with pytest.raises(ValidationError):
            await lifecycle.submit_terms(trade.trade_id, SELLER_ID, field, value)

    @pytest.mark.asyncio
    async def test_terms_outside_details_step(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(ConflictingState):
            await lifecycle.submit_terms(trade.trade_id, SELLER_ID, "rate", "2")

    @pytest.mark.asyncio
    async def test_term_change_revokes_approvals(self, lifecycle, make_trade):
        trade = await details_trade(make_trade, buyer_approved=True)
        result = await lifecycle.submit_terms(trade.trade_id, SELLER_ID, "quantity", "120")
        assert result.trade.buyer_approved is False

    @pytest.mark.asyncio
    async def test_network_change_clears_addresses(self, lifecycle, make_trade, monkeypatch):
        monkeypatch.setitem(Config.TOKEN_SETTINGS, ("USDT", "ETH"), {"contract": "0x" + "2" * 40, "decimals": 6})
        trade = await details_trade(make_trade)

        result = await lifecycle.submit_terms(trade.trade_id, SELLER_ID, "network", "eth")

        assert result.trade.network == "ETH"
        assert result.trade.buyer_address is None
        assert result.trade.seller_address is None

    @pytest.mark.asyncio
    async def test_invalid_address_rejected(self, lifecycle, make_trade):
        trade = await details_trade(make_trade)
        with pytest.raises(ValidationError):
            await lifecycle.submit_address(trade.trade_id, BUYER_ID, "buyer", "0x1234")

    @pytest.mark.asyncio
    async def test_address_belongs_to_its_role(self, lifecycle, make_trade):
        trade = await details_trade(make_trade)
        with pytest.raises(PermissionDenied):
            await lifecycle.submit_address(trade.trade_id, SELLER_ID, "buyer", BUYER_ADDRESS)

    @pytest.mark.asyncio
    async def test_approval_requires_complete_terms(self, lifecycle, make_trade):
        trade = await details_trade(make_trade, payment_method=None)
        with pytest.raises(ValidationError):
            await lifecycle.approve_deal(trade.trade_id, BUYER_ID)


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_roles_and_terms(self, lifecycle, make_trade):
        trade = await details_trade(make_trade)
        result = await lifecycle.reset_trade(trade.trade_id, SELLER_ID)

        assert result.trade.status == TradeStatus.DRAFT.value
        assert result.trade.buyer_id is None and result.trade.seller_id is None
        assert result.trade.quantity is None
        assert result.trade.channel_id == trade.channel_id

    @pytest.mark.asyncio
    async def test_finalized_reset_needs_admin(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(PermissionDenied):
            await lifecycle.reset_trade(trade.trade_id, BUYER_ID)

        result = await lifecycle.reset_trade(trade.trade_id, ADMIN_ID)
        assert result.trade.status == TradeStatus.DRAFT.value
        assert result.trade.deal_finalized is False

    @pytest.mark.asyncio
    async def test_reset_refused_after_deposit(self, lifecycle, make_trade):
        trade = await make_trade(accumulated_deposit=Decimal("10"), deposit_tx_refs=[tx_hash(1)])
        with pytest.raises(ConflictingState):
            await lifecycle.reset_trade(trade.trade_id, ADMIN_ID)


class TestCancel:
    @pytest.mark.asyncio
    async def test_both_parties_must_confirm(self, lifecycle, recycle_scheduler, make_trade):
        trade = await details_trade(make_trade)

        first = await lifecycle.cancel_trade(trade.trade_id, BUYER_ID)
        assert first.trade.status == TradeStatus.AWAITING_DETAILS.value
        assert first.trade.buyer_confirmed_cancel is True
        recycle_scheduler.schedule_recycle.assert_not_called()

        second = await lifecycle.cancel_trade(trade.trade_id, SELLER_ID)
        assert second.trade.status == TradeStatus.CANCELLED.value
        recycle_scheduler.schedule_recycle.assert_called_once_with(trade.trade_id)

    @pytest.mark.asyncio
    async def test_creator_alone_cancels_before_roles(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.DRAFT.value, buyer_id=None, seller_id=None)
        result = await lifecycle.cancel_trade(trade.trade_id, SELLER_ID)
        assert result.trade.status == TradeStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_admin_cancels_alone(self, lifecycle, make_trade):
        trade = await make_trade()
        result = await lifecycle.cancel_trade(trade.trade_id, ADMIN_ID)
        assert result.trade.status == TradeStatus.CANCELLED.value
        assert result.trade.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_refused_with_deposit(self, lifecycle, make_deposited_trade):
        trade = await make_deposited_trade()
        with pytest.raises(ConflictingState):
            await lifecycle.cancel_trade(trade.trade_id, ADMIN_ID)

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(PermissionDenied):
            await lifecycle.cancel_trade(trade.trade_id, OUTSIDER_ID)


class TestInactivity:
    @pytest.mark.asyncio
    async def test_idle_undeposited_trades_expire(self, lifecycle, recycle_scheduler, make_trade,
                                                  make_deposited_trade):
        long_ago = datetime.utcnow() - timedelta(hours=5)
        idle = await make_trade(status=TradeStatus.DRAFT.value, last_activity_at=long_ago)
        fresh = await make_trade(status=TradeStatus.DRAFT.value)
        funded = await make_deposited_trade(last_activity_at=long_ago)

        cancelled = await lifecycle.cancel_inactive_trades()

        assert cancelled == [idle.trade_id]
        assert (await lifecycle.store.find_one(fresh.trade_id)).status == TradeStatus.DRAFT.value
        assert (await lifecycle.store.find_one(funded.trade_id)).status == TradeStatus.DEPOSITED.value
        recycle_scheduler.schedule_recycle.assert_called_once_with(idle.trade_id)

    @pytest.mark.asyncio
    async def test_touch_keeps_trade_alive(self, lifecycle, make_trade):
        trade = await make_trade(last_activity_at=datetime.utcnow() - timedelta(hours=5))
        await lifecycle.touch_activity(trade.trade_id)
        assert await lifecycle.cancel_inactive_trades() == []


class TestDispute:
    @pytest.mark.asyncio
    async def test_party_opens_dispute(self, lifecycle, make_deposited_trade):
        trade = await make_deposited_trade()
        result = await lifecycle.open_dispute(trade.trade_id, BUYER_ID, "seller unresponsive")

        assert result.trade.status == TradeStatus.DISPUTED.value
        assert result.trade.status_before_dispute == TradeStatus.DEPOSITED.value
        assert result.notify == [ADMIN_ID]

    @pytest.mark.asyncio
    async def test_partial_deposit_becomes_settleable_balance(self, lifecycle, make_trade):
        trade = await make_trade(
            accumulated_deposit=Decimal("40"),
            deposit_tx_refs=[tx_hash(0xD2)],
        )
        result = await lifecycle.open_dispute(trade.trade_id, SELLER_ID)

        assert result.trade.status_before_dispute == TradeStatus.AWAITING_DEPOSIT.value
        assert result.trade.confirmed_amount == Decimal("40")
        assert result.trade.remaining_balance == Decimal("40")

    @pytest.mark.asyncio
    async def test_dispute_keeps_existing_confirmed_amount(self, lifecycle, make_deposited_trade):
        trade = await make_deposited_trade(amount="100", settled_amount=Decimal("30"))
        result = await lifecycle.open_dispute(trade.trade_id, BUYER_ID)

        assert result.trade.confirmed_amount == Decimal("100")
        assert result.trade.remaining_balance == Decimal("70")

    @pytest.mark.asyncio
    async def test_outsider_cannot_dispute(self, lifecycle, make_deposited_trade):
        trade = await make_deposited_trade()
        with pytest.raises(PermissionDenied):
            await lifecycle.open_dispute(trade.trade_id, OUTSIDER_ID)

    @pytest.mark.asyncio
    async def test_terminal_trade_cannot_be_disputed(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.COMPLETED.value)
        with pytest.raises(ConflictingState):
            await lifecycle.open_dispute(trade.trade_id, BUYER_ID)

    @pytest.mark.asyncio
    async def test_dispute_blocked_while_payout_executes(self, lifecycle, make_deposited_trade):
        trade = await make_deposited_trade(
            status=TradeStatus.IN_SETTLEMENT_REVIEW.value, release_button_used=True
        )
        with pytest.raises(ConflictingState):
            await lifecycle.open_dispute(trade.trade_id, SELLER_ID)


class TestAdminOverride:
    @pytest.mark.asyncio
    async def test_confirm_deposit_manually(self, lifecycle, make_trade):
        trade = await make_trade()
        result = await lifecycle.admin_override(trade.trade_id, ADMIN_ID, "deposited", confirmed_amount="100")
        assert result.trade.status == TradeStatus.DEPOSITED.value
        assert result.trade.confirmed_amount == Decimal("100")

    @pytest.mark.asyncio
    async def test_deposit_override_needs_amount(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(ValidationError):
            await lifecycle.admin_override(trade.trade_id, ADMIN_ID, "deposited")

    @pytest.mark.asyncio
    async def test_override_is_admin_only(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(PermissionDenied):
            await lifecycle.admin_override(trade.trade_id, SELLER_ID, "deposited", confirmed_amount="100")

    @pytest.mark.asyncio
    async def test_unknown_status(self, lifecycle, make_trade):
        trade = await make_trade()
        with pytest.raises(ValidationError):
            await lifecycle.admin_override(trade.trade_id, ADMIN_ID, "paid")

    @pytest.mark.asyncio
    async def test_cancel_disputed_trade_recycles(self, lifecycle, recycle_scheduler, make_trade):
        trade = await make_trade(status=TradeStatus.DISPUTED.value)
        result = await lifecycle.admin_override(trade.trade_id, ADMIN_ID, "cancelled")
        assert result.trade.status == TradeStatus.CANCELLED.value
        recycle_scheduler.schedule_recycle.assert_called_once_with(trade.trade_id)

    @pytest.mark.asyncio
    async def test_terminal_states_stay_terminal(self, lifecycle, make_trade):
        trade = await make_trade(status=TradeStatus.REFUNDED.value)
        with pytest.raises(ConflictingState):
            await lifecycle.admin_override(trade.trade_id, ADMIN_ID, "deposited", confirmed_amount="1")
