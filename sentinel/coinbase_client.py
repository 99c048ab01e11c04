import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import random
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .exchange import (
    AuthenticationError,
    Candle,
    ExchangeAPIError,
    ExchangeClient,
    ExchangeConnectionError,
    ExchangeTimeoutError,
    OrderSide,
    PermissionDeniedError,
    RateLimitError,
    Ticker,
)
from .logging_setup import logger
from .rate_limit_policy import RateLimitManager, endpoint_key
from .secrets import ExchangeCredentials


class CoinbaseClient(ExchangeClient):
    """Async Coinbase Exchange client using aiohttp with non-blocking rate-limit backoff.

    Features:
    - Request signing (CB-ACCESS-* headers) per Coinbase Exchange style.
    - Rate-limit-aware backoff: respects `CB-RateLimit-Reset` header.
    - Jittered exponential backoff for 429 (rate-limit) responses.
    - Client-side per-endpoint throttling via RateLimitManager.
    - Lazily created session, released by ``close()``.

    Usage:
        async with CoinbaseClient(...) as client:
            ticker = await client.get_ticker("BTC-USD")
    """

    def __init__(self, api_key: str, secret: str, passphrase: str, *, base_url: str = "https://api.exchange.coinbase.com", timeout: int = 10, max_retries: int = 5, max_backoff_seconds: float = 60.0, rate_limiter: Optional[RateLimitManager] = None):
        try:
            self._key = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError):
            raise ExchangeAPIError("Secret must be base64-encoded for signing")
        self.api_key = api_key
        self.passphrase = passphrase
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_credentials(cls, credentials: ExchangeCredentials, **kwargs) -> "CoinbaseClient":
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            passphrase=credentials.passphrase,
            **kwargs
        )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
        return self.session

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()
        self.session = None

    def _sign(self, method: str, request_path: str, body: Optional[str]) -> dict:
        timestamp = str(time.time())
        message = timestamp + method.upper() + request_path + (body or "")
        signature = hmac.new(self._key, message.encode("utf-8"), hashlib.sha256)
        return {
            "CB-ACCESS-KEY": self.api_key,
            "CB-ACCESS-SIGN": base64.b64encode(signature.digest()).decode(),
            "CB-ACCESS-TIMESTAMP": timestamp,
            "CB-ACCESS-PASSPHRASE": self.passphrase,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_rate_limit_reset(headers) -> Optional[float]:
        """Extract CB-RateLimit-Reset header (Unix timestamp)."""
        if "CB-RateLimit-Reset" in headers:
            try:
                return float(headers["CB-RateLimit-Reset"])
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def _error_for_status(status: int, text: str) -> ExchangeAPIError:
        message = f"{status}: {text}"
        if status == 401:
            return AuthenticationError(message)
        if status == 403:
            return PermissionDeniedError(message)
        if status == 429:
            return RateLimitError(message)
        return ExchangeAPIError(message, status=status)

    async def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None) -> Any:
        """Execute a request with client-side throttling, 429 backoff and error mapping."""
        session = self._ensure_session()
        request_path = path if path.startswith("/") else f"/{path}"
        if params:
            # Coinbase signs the query string as part of the request path
            query = "&".join(f"{k}={v}" for k, v in params.items())
            request_path = f"{request_path}?{query}"
        body_str = json.dumps(body) if body is not None else ""
        url = f"{self.base_url}{request_path}"

        attempt = 0
        while True:
            if not await self.rate_limiter.acquire(endpoint_key(request_path), max_wait=self.max_backoff_seconds):
                raise RateLimitError(f"Client-side quota exhausted for {request_path}")
            headers = self._sign(method, request_path, body_str)
            try:
                async with session.request(method, url, headers=headers, data=body_str or None, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    text = await resp.text()
                    if resp.status == 429:
                        if attempt >= self.max_retries:
                            raise RateLimitError("Rate limited and max backoff attempts exceeded")
                        reset_ts = self._get_rate_limit_reset(resp.headers)
                        if reset_ts is not None:
                            delay = min(max(0.0, reset_ts - time.time()), self.max_backoff_seconds)
                        else:
                            delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
                        logger.warning(f"Rate limited | path={request_path} attempt={attempt} backoff={delay:.2f}s")
                        attempt += 1
                        await asyncio.sleep(delay)
                        continue

                    if not (200 <= resp.status < 300):
                        raise self._error_for_status(resp.status, text)

                    return json.loads(text) if text else None

            except asyncio.TimeoutError as e:
                raise ExchangeTimeoutError(f"Request timeout: {method} {request_path}") from e
            except aiohttp.ClientConnectionError as e:
                raise ExchangeConnectionError(f"Connection failed: {e}") from e
            except aiohttp.ClientError as e:
                raise ExchangeAPIError(f"Request failed: {e}") from e

    async def validate_credentials(self) -> None:
        """List accounts; any 2xx means the key works."""
        await self._request("GET", "/accounts")

    async def get_ticker(self, pair: str) -> Ticker:
        res = await self._request("GET", f"/products/{pair}/ticker")
        try:
            return Ticker(
                pair=pair,
                price=Decimal(str(res["price"])),
                bid=Decimal(str(res["bid"])) if res.get("bid") is not None else None,
                ask=Decimal(str(res["ask"])) if res.get("ask") is not None else None,
                volume=Decimal(str(res["volume"])) if res.get("volume") is not None else None,
            )
        except (KeyError, TypeError, ArithmeticError) as e:
            raise ExchangeAPIError(f"Malformed ticker for {pair}") from e

    async def get_historic_candles(self, pair: str, granularity: int) -> List[Candle]:
        rows = await self._request("GET", f"/products/{pair}/candles", params={"granularity": granularity})
        try:
            return [Candle.from_row(row) for row in rows or []]
        except (IndexError, TypeError, ValueError, ArithmeticError) as e:
            raise ExchangeAPIError(f"Malformed candles for {pair}") from e

    async def place_market_order(self, pair: str, side: OrderSide, size: Decimal) -> Dict[str, Any]:
        body = {
            "type": "market",
            "side": OrderSide(side).value,
            "product_id": pair,
            "size": str(size),
        }
        res = await self._request("POST", "/orders", body=body)
        logger.debug(f"Market order accepted | pair={pair} side={body['side']} size={size} order_id={res.get('id') if res else None}")
        return res or {}
