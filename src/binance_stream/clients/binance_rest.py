"""Signed Binance REST API client."""

import asyncio
import hashlib
import hmac
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp
from yarl import URL

from ..config.settings import BinanceConfig, RetryConfig
from ..exceptions import BinanceAPIError, BinanceServerError, ConfigurationError
from ..utils.retry import exponential_backoff

logger = logging.getLogger(__name__)


class BinanceRESTClient:
    """Binance REST API client with HMAC-SHA256 request signing."""

    def __init__(self, config: BinanceConfig, retry_config: RetryConfig):
        self.config = config
        self.retry_config = retry_config
        self.session: Optional[aiohttp.ClientSession] = None

        self.endpoints = {
            'time': '/api/v3/time',
            'exchangeInfo': '/api/v3/exchangeInfo',
        }

    async def __aenter__(self):
        headers = {'Content-Type': 'application/json'}
        if self.config.api_key:
            headers['X-MBX-APIKEY'] = self.config.api_key

        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            headers=headers,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def sign(self, query_string: str) -> str:
        """HMAC-SHA256 hex digest of the query string under the API secret."""
        if not self.config.api_secret:
            raise ConfigurationError("Binance API secret is required for signed requests")
        return hmac.new(
            self.config.api_secret.encode('utf-8'),
            query_string.encode('utf-8'),
            hashlib.sha256,
        ).hexdigest()

    def build_query(self, params: Optional[Dict[str, Any]], signed: bool) -> str:
        """Url-encoded query, with timestamp, recvWindow and signature when signed."""
        query_params = dict(params or {})
        if signed:
            query_params['timestamp'] = int(time.time() * 1000)
            query_params.setdefault('recvWindow', self.config.recv_window_ms)
            query_string = urlencode(query_params)
            return f"{query_string}&signature={self.sign(query_string)}"
        return urlencode(query_params)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        """
        Make an HTTP request with retry on rate limits and server errors.

        Returns:
            Parsed JSON body

        Raises:
            BinanceAPIError: On a non-retryable error response, or once retries are exhausted
            ConfigurationError: If a signed request is made without an API secret
        """
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")
        if signed and not self.config.api_key:
            raise ConfigurationError("Binance API key is required for signed requests")

        async def _request():
            # Signed queries are rebuilt per attempt so the timestamp stays fresh
            query = self.build_query(params, signed)
            url = f"{self.config.rest_base_url}{path}"
            if query:
                url = f"{url}?{query}"

            logger.debug(f"Sending API request: {method.upper()} {path}")
            async with self.session.request(method.upper(), URL(url, encoded=True)) as response:
                if response.status >= 400:
                    await self._raise_for_error(response)
                data = await response.json(content_type=None)
                logger.debug(f"Received API response: {response.status} {path}")
                return data

        return await exponential_backoff(
            _request,
            max_attempts=self.retry_config.max_attempts,
            initial_delay=self.retry_config.initial_backoff_seconds,
            max_delay=self.retry_config.max_backoff_seconds,
            backoff_factor=self.retry_config.backoff_multiplier,
            jitter=self.retry_config.jitter,
            exceptions=(BinanceServerError, aiohttp.ClientConnectionError, asyncio.TimeoutError),
        )

    async def _raise_for_error(self, response: aiohttp.ClientResponse) -> None:
        try:
            body = await response.json(content_type=None)
        except ValueError:
            body = None

        if isinstance(body, dict):
            code, message = body.get('code'), body.get('msg', response.reason)
        else:
            code, message = None, response.reason or 'unknown error'

        logger.error(f"API request failed: {response.status} - code={code} msg={message}")

        if response.status == 429:
            logger.warning("Rate limit exceeded; backing off.")
        elif response.status == 418:
            logger.error("IP address has been auto-banned by Binance. Check your request patterns.")

        if response.status == 429 or response.status >= 500:
            raise BinanceServerError(response.status, message, code)
        raise BinanceAPIError(response.status, message, code)

    async def get_server_time(self) -> Dict[str, Any]:
        """Get the exchange server time."""
        return await self.request('GET', self.endpoints['time'])

    async def get_exchange_info(self) -> Dict[str, Any]:
        """Get exchange trading rules and symbol information."""
        return await self.request('GET', self.endpoints['exchangeInfo'])
