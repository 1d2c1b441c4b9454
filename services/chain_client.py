"""
Rate-Limited Chain Client
JSON-RPC reads (transaction, receipt, logs) behind one global request gate.

Every call from every caller passes through the same gate: at most N requests in
flight and a minimum spacing between request starts, both FIFO. Transient
failures (network errors, timeouts, 429, 5xx, node-side overload codes) are
retried with exponential backoff; anything else fails on the first attempt.
"""

import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config import Config
from services.escrow_errors import ExternalCallFailure

logger = logging.getLogger(__name__)

# JSON-RPC error codes nodes use for overload / internal hiccups
TRANSIENT_RPC_CODES = {-32000, -32005, -32603}
TRANSIENT_RPC_MARKERS = ("rate limit", "too many requests", "timeout", "try again", "header not found")


class ChainCallOutcome(Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass
class ChainCallResult:
    """Typed result of one logical chain read (after retries)"""
    outcome: ChainCallOutcome
    value: Any = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == ChainCallOutcome.SUCCESS


class ChainRequestError(Exception):
    """One failed request attempt, classified as transient or not"""

    def __init__(self, message: str, retryable: bool, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status
        self.code = code


class RequestGate:
    """Bounded concurrency plus minimum start spacing, FIFO for waiters"""

    def __init__(
        self,
        max_concurrency: int,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        self.max_concurrency = max_concurrency
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._spacing_lock = asyncio.Lock()
        self._last_start: Optional[float] = None
        self.in_flight = 0

    @asynccontextmanager
    async def slot(self):
        async with self._semaphore:
            async with self._spacing_lock:
                if self._last_start is not None:
                    wait = self.min_interval - (self._clock() - self._last_start)
                    if wait > 0:
                        await self._sleep(wait)
                self._last_start = self._clock()
            self.in_flight += 1
            try:
                yield
            finally:
                self.in_flight -= 1


class RateLimitedChainClient:
    """Retrying JSON-RPC client shared by all reconciliation workers"""

    def __init__(
        self,
        rpc_urls: Optional[Dict[str, str]] = None,
        max_concurrency: Optional[int] = None,
        min_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.rpc_urls = {k.upper(): v for k, v in (rpc_urls if rpc_urls is not None else Config.CHAIN_RPC_URLS).items()}
        self.max_attempts = max_attempts or Config.CHAIN_MAX_ATTEMPTS
        self.backoff_base = backoff_base if backoff_base is not None else Config.CHAIN_BACKOFF_BASE_SECONDS
        self.timeout = timeout or Config.CHAIN_REQUEST_TIMEOUT
        if min_interval is None:
            min_interval = Config.CHAIN_MIN_INTERVAL_MS / 1000
        self.gate = RequestGate(max_concurrency or Config.CHAIN_MAX_CONCURRENCY, min_interval, sleep=sleep)
        self._sleep = sleep
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

        logger.info(
            f"🔧 Chain client initialized: networks={sorted(self.rpc_urls)} "
            f"concurrency={self.gate.max_concurrency} spacing={min_interval:.3f}s attempts={self.max_attempts}"
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Single attempt
    # ------------------------------------------------------------------

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """One HTTP round trip; raises ChainRequestError classified for retry"""
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as response:
                if response.status == 429 or response.status >= 500:
                    raise ChainRequestError(
                        f"HTTP {response.status} from RPC", retryable=True, status=response.status
                    )
                if response.status >= 400:
                    raise ChainRequestError(
                        f"HTTP {response.status} from RPC", retryable=False, status=response.status
                    )
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ChainRequestError(f"Network error: {type(e).__name__}: {e}", retryable=True) from e
        except asyncio.TimeoutError as e:
            raise ChainRequestError(f"Timeout after {self.timeout}s", retryable=True) from e

    async def _send(self, network: str, method: str, params: List[Any]) -> Any:
        url = self.rpc_urls.get(network.upper())
        if not url:
            raise ChainRequestError(f"No RPC endpoint configured for {network}", retryable=False)

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        async with self.gate.slot():
            body = await self._post(url, payload)

        error = (body or {}).get("error")
        if error:
            code = error.get("code")
            message = str(error.get("message", ""))
            retryable = code in TRANSIENT_RPC_CODES or any(m in message.lower() for m in TRANSIENT_RPC_MARKERS)
            raise ChainRequestError(f"RPC error {code}: {message}", retryable=retryable, code=code)
        return body.get("result")

    # ------------------------------------------------------------------
    # Retrying calls
    # ------------------------------------------------------------------

    async def execute(self, network: str, method: str, params: List[Any]) -> ChainCallResult:
        """Run one logical read with the retry policy, never raising"""
        last_error: Optional[ChainRequestError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await self._send(network, method, params)
                if attempt > 1:
                    logger.info(f"✅ CHAIN_RECOVERED: {method} on {network} after {attempt} attempts")
                return ChainCallResult(ChainCallOutcome.SUCCESS, value=value, attempts=attempt)
            except ChainRequestError as e:
                if not e.retryable:
                    logger.error(f"❌ CHAIN_FATAL: {method} on {network}: {e}")
                    return ChainCallResult(ChainCallOutcome.FATAL_FAILURE, error=str(e), attempts=attempt)
                last_error = e
                if attempt < self.max_attempts:
                    delay = self.backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        f"🔄 CHAIN_RETRY: {method} on {network} attempt {attempt}/{self.max_attempts} "
                        f"failed ({e}), retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)

        logger.error(f"❌ CHAIN_EXHAUSTED: {method} on {network} after {self.max_attempts} attempts: {last_error}")
        return ChainCallResult(
            ChainCallOutcome.RETRYABLE_FAILURE, error=str(last_error), attempts=self.max_attempts
        )

    async def call(self, network: str, method: str, params: List[Any]) -> Any:
        """Run a read and return its result, raising ExternalCallFailure on failure"""
        result = await self.execute(network, method, params)
        if result.ok:
            return result.value
        raise ExternalCallFailure(
            f"Chain call {method} on {network} failed ({result.outcome.value}): {result.error}",
            service="chain",
            outcome=result.outcome.value,
            attempts=result.attempts,
        )

    async def get_transaction(self, network: str, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call(network, "eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, network: str, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call(network, "eth_getTransactionReceipt", [tx_hash])

    async def get_logs(self, network: str, log_filter: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.call(network, "eth_getLogs", [log_filter]) or []
