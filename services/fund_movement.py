"""
Fund Movement Gateway
Release (to buyer) and refund (to seller) calls against the custodial transfer service.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from services.escrow_errors import ExternalCallFailure

logger = logging.getLogger(__name__)


class FundMovementGateway(ABC):
    """Moves custodial funds; each call returns the on-chain transaction reference"""

    @abstractmethod
    async def release(self, asset: str, network: str, to_address: str, amount: Decimal) -> str:
        """Pay amount to the buyer's address"""

    @abstractmethod
    async def refund(self, asset: str, network: str, to_address: str, amount: Decimal) -> str:
        """Pay amount back to the seller's address"""


class HttpFundMovementGateway(FundMovementGateway):
    """HTTP client for the external transfer-execution service"""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: Optional[int] = None):
        self.base_url = (base_url or Config.FUND_MOVEMENT_URL or "").rstrip("/")
        self.api_key = api_key or Config.FUND_MOVEMENT_API_KEY
        self.timeout = timeout or Config.FUND_MOVEMENT_TIMEOUT

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Escrow-Lifecycle-Engine/1.0",
        }
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _transfer(self, kind: str, asset: str, network: str, to_address: str, amount: Decimal) -> str:
        if not self.base_url:
            raise ExternalCallFailure("FUND_MOVEMENT_URL is not configured", service="fund_movement")

        payload: Dict[str, Any] = {
            "asset": asset,
            "network": network,
            "to_address": to_address,
            # Exact decimal string, never a float
            "amount": format(Decimal(amount), "f"),
        }
        logger.info(f"💸 FUND_MOVEMENT_REQUEST: {kind} {payload['amount']} {asset}/{network} -> {to_address}")
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(
                    f"{self.base_url}/{kind}",
                    json=payload,
                    headers=self._get_headers(),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise ExternalCallFailure(
                            f"Fund movement {kind} failed: HTTP {response.status}: {error_text[:200]}",
                            service="fund_movement",
                        )
                    data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            logger.error(f"❌ Network error calling fund movement service: {e}")
            raise ExternalCallFailure(f"Fund movement {kind} network error: {e}", service="fund_movement") from e

        tx_ref = (data or {}).get("tx_ref") or (data or {}).get("txHash")
        if not tx_ref:
            raise ExternalCallFailure(
                f"Fund movement {kind} returned no transaction reference", service="fund_movement"
            )
        logger.info(f"✅ FUND_MOVEMENT_DONE: {kind} {payload['amount']} {asset} tx={tx_ref}")
        return tx_ref

    async def release(self, asset: str, network: str, to_address: str, amount: Decimal) -> str:
        return await self._transfer("release", asset, network, to_address, amount)

    async def refund(self, asset: str, network: str, to_address: str, amount: Decimal) -> str:
        return await self._transfer("refund", asset, network, to_address, amount)
