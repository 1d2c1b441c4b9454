"""
Deposit Reconciliation Service
Matches a submitted on-chain transaction to a trade's expected deposit.

Flow for one reference:
1. syntactic validation for the trade's network
2. global duplicate check (a reference is consumed by at most one trade, ever)
3. transaction + receipt lookup through the rate-limited chain client
4. token Transfer events paying the trade's deposit address are summed
5. the amount is accumulated and the reference recorded in one conditional write
6. accumulated total is compared with the expected quantity within tolerance
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from models import Trade, TradeStatus
from services.chain_client import RateLimitedChainClient
from services.escrow_errors import ConflictingState, DuplicateReference, NotYetAvailable, ValidationError
from services.results import DepositOutcome
from services.trade_store import TradeStore
from utils.decimal_precision import TokenAmount
from utils.escrow_state_machine import EscrowStateValidator
from utils.input_validation import InputValidator

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

_AWAITING_DEPOSIT = frozenset({TradeStatus.AWAITING_DEPOSIT.value})


def topic_to_address(topic: str) -> str:
    """Indexed address topic (32-byte word) -> lowercase 0x address"""
    return "0x" + topic[-40:].lower()


def address_to_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


class DepositReconciliationService:
    """Accumulates confirmed token transfers into a trade's deposit"""

    def __init__(
        self,
        store: TradeStore,
        chain_client: RateLimitedChainClient,
        tolerance: Optional[Decimal] = None,
    ):
        self.store = store
        self.chain_client = chain_client
        self.tolerance = Decimal(tolerance) if tolerance is not None else Config.DEPOSIT_TOLERANCE

    async def submit_reference(self, trade_id: str, tx_ref: str) -> DepositOutcome:
        """Verify one transaction reference and credit it to the trade

        Raises ValidationError, DuplicateReference, NotYetAvailable,
        ConflictingState or ExternalCallFailure; never blocks waiting for
        further deposits.
        """
        trade = await self.store.find_one(trade_id)
        if not trade.network:
            raise ConflictingState(f"Trade {trade_id} has no network yet", current_status=trade.status)

        tx_ref = InputValidator.validate_tx_reference(tx_ref, trade.network)

        owner = await self.store.reference_owner(tx_ref)
        if owner is not None:
            logger.warning(f"🚫 DUPLICATE_REFERENCE: {tx_ref} already consumed by {owner}, submitted for {trade_id}")
            raise DuplicateReference(tx_ref, owner_trade_id=owner)

        EscrowStateValidator.ensure_status(trade_id, trade.status, _AWAITING_DEPOSIT)
        if not trade.deposit_address or trade.quantity is None:
            raise ConflictingState(f"Trade {trade_id} has no deposit terms", current_status=trade.status)

        settings = Config.get_token_settings(trade.asset, trade.network)
        decimals = int(settings["decimals"])

        transaction = await self.chain_client.get_transaction(trade.network, tx_ref)
        receipt = await self.chain_client.get_receipt(trade.network, tx_ref) if transaction else None
        if transaction is None or receipt is None:
            logger.info(f"⏳ DEPOSIT_PENDING: {tx_ref} for {trade_id} not confirmed yet")
            raise NotYetAvailable(f"Transaction {tx_ref} not yet confirmed", tx_ref=tx_ref)

        if str(receipt.get("status", "0x1")).lower() in ("0x0", "0"):
            raise ValidationError(
                f"Transaction {tx_ref} reverted",
                user_message="❌ This transaction failed on chain.",
            )

        transfers = await self._extract_transfers(trade, tx_ref, receipt, settings)
        if not transfers:
            logger.warning(f"DEPOSIT_NO_TRANSFER: {tx_ref} has no {trade.asset} transfer to {trade.deposit_address}")
            raise ValidationError(
                f"No transfer to {trade.deposit_address} found in {tx_ref}",
                user_message=f"❌ No {trade.asset} transfer to the escrow address was found in this transaction.",
            )

        amount_minor = sum(value for value, _ in transfers)
        amount = TokenAmount.from_minor_units(amount_minor, decimals)
        return await self._accumulate(trade, tx_ref, amount, amount_minor, transfers[0][1])

    async def _extract_transfers(
        self, trade: Trade, tx_ref: str, receipt: Dict[str, Any], settings: Dict[str, Any]
    ) -> List[Tuple[int, str]]:
        """(minor_units, sender) for every token Transfer to the deposit address"""
        contract = str(settings["contract"])
        deposit_address = trade.deposit_address

        logs = receipt.get("logs") or []
        if not logs and receipt.get("blockNumber"):
            # Some providers strip logs from receipts; ask for them directly
            block = receipt["blockNumber"]
            logs = await self.chain_client.get_logs(trade.network, {
                "address": settings["contract"],
                "fromBlock": block,
                "toBlock": block,
                "topics": [TRANSFER_TOPIC, None, address_to_topic(deposit_address)],
            })
            logs = [log for log in logs if (log.get("transactionHash") or "").lower() == tx_ref]

        transfers = []
        for log in logs:
            topics = log.get("topics") or []
            if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC:
                continue
            if not InputValidator.same_address(log.get("address"), contract):
                continue
            if not InputValidator.same_address(topic_to_address(topics[2]), deposit_address):
                continue
            value = int(log.get("data") or "0x0", 16)
            if value > 0:
                transfers.append((value, topic_to_address(topics[1])))
        return transfers

    async def _accumulate(
        self, trade: Trade, tx_ref: str, amount: Decimal, amount_minor: int, from_address: Optional[str]
    ) -> DepositOutcome:
        for attempt in range(1, Config.CAS_MAX_ATTEMPTS + 1):
            EscrowStateValidator.ensure_status(trade.trade_id, trade.status, _AWAITING_DEPOSIT)

            accumulated = (trade.accumulated_deposit or Decimal("0")) + amount
            complete = TokenAmount.meets_expected(accumulated, trade.quantity, self.tolerance)
            values = dict(
                accumulated_deposit=accumulated,
                accumulated_deposit_minor=(trade.accumulated_deposit_minor or 0) + amount_minor,
                deposit_tx_refs=[*(trade.deposit_tx_refs or []), tx_ref],
                last_activity_at=datetime.utcnow(),
            )
            if complete:
                values.update(status=TradeStatus.DEPOSITED.value, confirmed_amount=accumulated)

            try:
                updated = await self.store.consume_reference(
                    trade, tx_ref, amount, amount_minor, from_address,
                    expected_statuses=_AWAITING_DEPOSIT, **values,
                )
                return self._outcome(updated, tx_ref, amount, complete)
            except ConflictingState:
                if attempt == Config.CAS_MAX_ATTEMPTS:
                    raise
                logger.warning(f"🔄 DEPOSIT_CAS_RETRY: {trade.trade_id} attempt {attempt} lost a race, re-reading")
                trade = await self.store.find_one(trade.trade_id)

        raise ConflictingState(f"Could not record {tx_ref} for {trade.trade_id}", current_status=trade.status)

    def _outcome(self, trade: Trade, tx_ref: str, credited: Decimal, complete: bool) -> DepositOutcome:
        expected = trade.quantity
        accumulated = trade.accumulated_deposit
        remaining = TokenAmount.remaining(accumulated, expected)
        over = TokenAmount.over_delivery(accumulated, expected, self.tolerance)

        if complete:
            message = f"✅ Deposit confirmed: {TokenAmount.display(accumulated)} {trade.asset}"
            if over > 0:
                message += f" (over-delivered by {over} {trade.asset})"
                logger.warning(f"💰 DEPOSIT_OVER_DELIVERY: {trade.trade_id} +{over} {trade.asset}")
            logger.info(
                f"💰 DEPOSIT_COMPLETE: {trade.trade_id} {accumulated}/{expected} {trade.asset} "
                f"refs={len(trade.deposit_tx_refs)}"
            )
        else:
            message = (
                f"🟡 Partial deposit received: {TokenAmount.display(accumulated)} of "
                f"{TokenAmount.display(expected)} {trade.asset}. Remaining: {remaining} {trade.asset}"
            )
            logger.info(f"💰 DEPOSIT_PARTIAL: {trade.trade_id} {accumulated}/{expected} remaining={remaining}")

        return DepositOutcome(
            trade=trade,
            tx_ref=tx_ref,
            credited=credited,
            accumulated=accumulated,
            expected=expected,
            remaining=remaining,
            over_delivery=over,
            complete=complete,
            message=message,
        )

    async def deposit_summary(self, trade_id: str) -> Dict[str, Any]:
        """Deposit read model; the accumulated field is the only source of truth"""
        trade = await self.store.find_one(trade_id)
        references = await self.store.list_references(trade_id)
        accumulated = trade.accumulated_deposit or Decimal("0")
        expected = trade.quantity
        return {
            "trade_id": trade.trade_id,
            "status": trade.status,
            "asset": trade.asset,
            "network": trade.network,
            "expected": expected,
            "accumulated": accumulated,
            "accumulated_minor": trade.accumulated_deposit_minor,
            "remaining": TokenAmount.remaining(accumulated, expected) if expected is not None else None,
            "over_delivery": (
                TokenAmount.over_delivery(accumulated, expected, self.tolerance) if expected is not None else Decimal("0")
            ),
            "confirmed": trade.confirmed_amount,
            "references": [
                {"tx_ref": ref.tx_ref, "amount": ref.amount, "from_address": ref.from_address, "at": ref.created_at}
                for ref in references
            ],
        }
