"""
Scheduler Tests
Deferred recycle jobs and periodic maintenance wiring
"""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from escrow_engine import EscrowEngine
from jobs.scheduler import EscrowScheduler
from models import ChannelStatus, TradeStatus


@pytest.fixture
def fake_pool():
    pool = Mock()
    pool.recycle = AsyncMock(return_value=None)
    pool.retry_parked_channels = AsyncMock(return_value={"recycled": 0, "parked": 0})
    return pool


@pytest.mark.asyncio
async def test_rescheduling_recycle_replaces_job(fake_pool):
    scheduler = EscrowScheduler(fake_pool, recycle_grace=timedelta(minutes=15))
    scheduler.start()
    try:
        scheduler.schedule_recycle("ESC1")
        scheduler.schedule_recycle("ESC1", delay=timedelta(minutes=30))

        jobs = scheduler.scheduler.get_jobs()
        recycle_jobs = [job for job in jobs if job.id == EscrowScheduler.recycle_job_id("ESC1")]
        assert len(recycle_jobs) == 1
        assert list(recycle_jobs[0].args) == ["ESC1"]
        assert "retry_parked_channels" in {job.id for job in jobs}
        assert "inactivity_sweep" not in {job.id for job in jobs}
    finally:
        scheduler.stop()
    assert not scheduler.scheduler.running


@pytest.mark.asyncio
async def test_inactivity_sweep_registered_when_provided(fake_pool):
    sweep = AsyncMock(return_value=[])
    scheduler = EscrowScheduler(fake_pool, inactivity_sweep=sweep)
    scheduler.start()
    try:
        assert scheduler.scheduler.get_job("inactivity_sweep") is not None
    finally:
        scheduler.stop()

    await scheduler.sweep_inactive_trades()
    sweep.assert_awaited_once()


@pytest.mark.asyncio
async def test_recycle_job_delegates_to_pool(fake_pool):
    scheduler = EscrowScheduler(fake_pool)
    await scheduler.run_recycle("ESC7")
    fake_pool.recycle.assert_awaited_once_with("ESC7")


@pytest.mark.asyncio
async def test_job_failures_are_contained(fake_pool):
    fake_pool.recycle.side_effect = RuntimeError("telegram down")
    fake_pool.retry_parked_channels.side_effect = RuntimeError("db down")
    scheduler = EscrowScheduler(fake_pool, inactivity_sweep=AsyncMock(side_effect=RuntimeError("boom")))

    await scheduler.run_recycle("ESC8")
    await scheduler.retry_parked_channels()
    await scheduler.sweep_inactive_trades()


@pytest.mark.asyncio
async def test_recycle_job_returns_channel_to_pool(pool, make_trade):
    await pool.add_channel("-1001")
    trade = await make_trade(status=TradeStatus.COMPLETED.value)
    await pool.lease(trade.trade_id)

    await EscrowScheduler(pool).run_recycle(trade.trade_id)

    channel = await pool.get_channel("-1001")
    assert channel.status == ChannelStatus.AVAILABLE.value


@pytest.mark.asyncio
async def test_engine_wires_scheduler_into_services(session_factory, participants, chain, fund_gateway):
    engine = EscrowEngine.build(session_factory, participants, chain, fund_gateway)

    assert engine.lifecycle.recycle_scheduler is engine.scheduler
    assert engine.settlement.recycle_scheduler is engine.scheduler
    assert engine.scheduler.inactivity_sweep == engine.lifecycle.cancel_inactive_trades
    assert engine.reconciliation.chain_client is chain
    assert engine.channel_pool.participant_manager is participants
