"""
Shared fixtures for the escrow engine test suite.

Each test gets its own SQLite database file (aiosqlite driver) with the full
schema, plus in-memory fakes for the chain reader, participant management and
fund movement collaborators.
"""

import itertools
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio

from config import Config
from database import build_engine, build_session_factory, create_tables
from models import Trade, TradeStatus
from services.channel_pool_service import ChannelPoolService
from services.deposit_reconciliation_service import TRANSFER_TOPIC, address_to_topic
from services.escrow_errors import ExternalCallFailure
from services.fund_movement import FundMovementGateway
from services.participant_manager import ParticipantManager
from services.trade_store import TradeStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ADMIN_ID = 900001
SERVICE_ID = 900002
BUYER_ID = 1001
SELLER_ID = 1002
OUTSIDER_ID = 4040

TOKEN_CONTRACT = "0x55d398326f99059fF775485246999027B3197955"
DEPOSIT_ADDRESS = "0x4B20993Bc481177ec7E8f571ceCaE8A9e22C02db"
BUYER_ADDRESS = "0x78731D3Ca6b7E34aC0F824c42a7cC18A495cabaB"
SELLER_ADDRESS = "0x617F2E2fD72FD9D5503197092aC168c91465E7f2"
SENDER_ADDRESS = "0x17F6AD8Ef982297579C203069C1DbfFE4348c372"

_trade_counter = itertools.count(1)


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def to_wei(amount: str) -> int:
    return int(Decimal(amount) * (Decimal(10) ** 18))


@pytest.fixture(autouse=True)
def escrow_config(monkeypatch):
    """Pin configuration so tests never depend on the environment"""
    monkeypatch.setattr(Config, "TOKEN_SETTINGS", {("USDT", "BSC"): {"contract": TOKEN_CONTRACT, "decimals": 18}})
    monkeypatch.setattr(Config, "DEPOSIT_ADDRESSES", {("USDT", "BSC"): DEPOSIT_ADDRESS})
    monkeypatch.setattr(Config, "ADMIN_USER_IDS", [ADMIN_ID])
    monkeypatch.setattr(Config, "PROTECTED_PARTICIPANT_IDS", [ADMIN_ID])
    monkeypatch.setattr(Config, "SERVICE_IDENTITY_ID", SERVICE_ID)
    monkeypatch.setattr(Config, "DEPOSIT_TOLERANCE", Decimal("0.01"))
    monkeypatch.setattr(Config, "CAS_MAX_ATTEMPTS", 5)
    monkeypatch.setattr(Config, "MIN_TRADE_AMOUNT", Decimal("1"))
    monkeypatch.setattr(Config, "MAX_TRADE_AMOUNT", Decimal("100000"))


# ============================================================================
# DATABASE
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow_test.db'}")
    await create_tables(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return TradeStore(session_factory)


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakeParticipantManager(ParticipantManager):
    """Records evictions; failures and missing chats are configurable per test"""

    def __init__(self):
        self.evicted: List[tuple] = []
        self.fail_for: Set[int] = set()
        self.rotation_fails = False
        self.missing_channels: Set[str] = set()
        self._tokens = itertools.count(1)

    async def evict_participant(self, channel_id: str, participant_id: int) -> bool:
        if participant_id in self.fail_for:
            return False
        self.evicted.append((channel_id, participant_id))
        return True

    async def rotate_access_token(self, channel_id: str, current_token: Optional[str] = None) -> Optional[str]:
        if self.rotation_fails:
            return None
        return f"https://t.me/+invite{channel_id}x{next(self._tokens)}"

    async def channel_exists(self, channel_id: str) -> bool:
        return channel_id not in self.missing_channels

    def evicted_ids(self, channel_id: Optional[str] = None) -> List[int]:
        return [pid for cid, pid in self.evicted if channel_id is None or cid == channel_id]


class FakeChainClient:
    """Serves canned transactions/receipts keyed by hash"""

    def __init__(self):
        self.transactions: Dict[str, dict] = {}
        self.receipts: Dict[str, dict] = {}
        self.logs: List[dict] = []
        self.calls: List[tuple] = []

    def add_transfer(
        self,
        ref: str,
        amount: str,
        to_address: str = DEPOSIT_ADDRESS,
        contract: str = TOKEN_CONTRACT,
        status: str = "0x1",
        include_logs: bool = True,
    ) -> None:
        log = {
            "address": contract.lower(),
            "topics": [TRANSFER_TOPIC, address_to_topic(SENDER_ADDRESS), address_to_topic(to_address)],
            "data": hex(to_wei(amount)),
            "transactionHash": ref,
            "logIndex": "0x0",
        }
        self.transactions[ref] = {"hash": ref, "to": contract.lower(), "blockNumber": "0x10"}
        self.receipts[ref] = {
            "transactionHash": ref,
            "status": status,
            "blockNumber": "0x10",
            "logs": [log] if include_logs else [],
        }
        if not include_logs:
            self.logs.append(log)

    async def get_transaction(self, network: str, ref: str):
        self.calls.append(("get_transaction", network, ref))
        return self.transactions.get(ref)

    async def get_receipt(self, network: str, ref: str):
        self.calls.append(("get_receipt", network, ref))
        return self.receipts.get(ref)

    async def get_logs(self, network: str, log_filter: dict):
        self.calls.append(("get_logs", network, log_filter))
        return list(self.logs)


class FakeFundGateway(FundMovementGateway):
    def __init__(self):
        self.calls: List[tuple] = []
        self.fail = False
        self._refs = itertools.count(1)

    async def _move(self, kind, asset, network, to_address, amount):
        if self.fail:
            raise ExternalCallFailure("custody service unavailable", service="fund_movement")
        self.calls.append((kind, asset, network, to_address, amount))
        return tx_hash(0xF000 + next(self._refs))

    async def release(self, asset, network, to_address, amount):
        return await self._move("release", asset, network, to_address, amount)

    async def refund(self, asset, network, to_address, amount):
        return await self._move("refund", asset, network, to_address, amount)


@pytest.fixture
def participants():
    return FakeParticipantManager()


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def fund_gateway():
    return FakeFundGateway()


@pytest.fixture
def pool(participants, store, session_factory):
    return ChannelPoolService(
        participants, store, session_factory,
        protected_identities=[ADMIN_ID],
        service_identity=SERVICE_ID,
    )


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_trade(store):
    """Insert a trade with finalized BSC/USDT terms; override any column"""

    async def _make(**overrides) -> Trade:
        defaults = dict(
            trade_id=f"ESCTEST{next(_trade_counter):05d}",
            status=TradeStatus.AWAITING_DEPOSIT.value,
            initiator_id=SELLER_ID,
            buyer_id=BUYER_ID,
            seller_id=SELLER_ID,
            allowed_participant_ids=[SELLER_ID, BUYER_ID],
            asset="USDT",
            network="BSC",
            quantity=Decimal("100"),
            rate=Decimal("1"),
            payment_method="Bank transfer",
            buyer_address=BUYER_ADDRESS,
            seller_address=SELLER_ADDRESS,
            deposit_address=DEPOSIT_ADDRESS,
            buyer_approved=True,
            seller_approved=True,
            deal_finalized=True,
        )
        defaults.update(overrides)
        return await store.insert_trade(Trade(**defaults))

    return _make


@pytest.fixture
def make_deposited_trade(make_trade):
    async def _make(amount: str = "100", **overrides) -> Trade:
        value = Decimal(amount)
        fields = dict(
            status=TradeStatus.DEPOSITED.value,
            quantity=value,
            accumulated_deposit=value,
            accumulated_deposit_minor=to_wei(amount),
            confirmed_amount=value,
            deposit_tx_refs=[tx_hash(0xD0)],
        )
        fields.update(overrides)
        return await make_trade(**fields)

    return _make
