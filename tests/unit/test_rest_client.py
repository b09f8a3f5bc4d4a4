"""Tests for the signed Binance REST client."""

from unittest.mock import AsyncMock, Mock, patch
from urllib.parse import parse_qs

import aiohttp
import pytest

from binance_stream.clients.binance_rest import BinanceRESTClient
from binance_stream.config.settings import BinanceConfig, RetryConfig
from binance_stream.exceptions import BinanceAPIError, BinanceServerError, ConfigurationError

# Example key pair from the Binance API documentation
DOC_SECRET = "NhqPtmdSJYdKjVHjA7PZj4Mge3R5YNiP1e3UZjInClVN65XAbvqqM6A7H5fATj0j"
DOC_QUERY = (
    "symbol=LTCBTC&side=BUY&type=LIMIT&timeInForce=GTC&quantity=1&price=0.1"
    "&recvWindow=5000&timestamp=1499827319559"
)
DOC_SIGNATURE = "c8db56825ae71d6d79447849e617115f4a920fa2acdcab2b053c4b2838bd6b71"


def mock_response(status: int, body, reason: str = "Error"):
    """Async context manager yielding a fake aiohttp response."""
    response = Mock()
    response.status = status
    response.reason = reason
    response.json = AsyncMock(return_value=body)

    ctx = AsyncMock()
    ctx.__aenter__.return_value = response
    ctx.__aexit__.return_value = False
    return ctx


@pytest.fixture
def binance_config():
    return BinanceConfig(rest_base_url="https://api.test", api_key="test-key", api_secret=DOC_SECRET)


@pytest.fixture
def retry_config():
    return RetryConfig(max_attempts=2, initial_backoff_seconds=0.01, max_backoff_seconds=0.01, jitter=False)


@pytest.fixture
def client(binance_config, retry_config):
    client = BinanceRESTClient(binance_config, retry_config)
    client.session = Mock()
    return client


class TestSigning:
    """Test request signing."""

    def test_sign_matches_documented_example(self, client):
        assert client.sign(DOC_QUERY) == DOC_SIGNATURE

    def test_sign_without_secret_raises(self, retry_config):
        client = BinanceRESTClient(BinanceConfig(api_key="key"), retry_config)

        with pytest.raises(ConfigurationError, match="secret"):
            client.sign("a=1")

    def test_signed_query_adds_timestamp_window_and_signature(self, client):
        with patch('binance_stream.clients.binance_rest.time.time', return_value=1700000000.0):
            query = client.build_query({'symbol': 'BTCUSDT'}, signed=True)

        unsigned, signature = query.rsplit('&signature=', 1)
        params = parse_qs(unsigned)
        assert params['symbol'] == ['BTCUSDT']
        assert params['timestamp'] == ['1700000000000']
        assert params['recvWindow'] == ['5000']
        assert signature == client.sign(unsigned)

    def test_unsigned_query_is_plain(self, client):
        assert client.build_query({'symbol': 'BTCUSDT'}, signed=False) == 'symbol=BTCUSDT'
        assert client.build_query(None, signed=False) == ''


class TestRequest:
    """Test request execution and error mapping."""

    @pytest.mark.asyncio
    async def test_request_requires_context_manager(self, binance_config, retry_config):
        client = BinanceRESTClient(binance_config, retry_config)

        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get_server_time()

    @pytest.mark.asyncio
    async def test_signed_request_requires_api_key(self, retry_config):
        client = BinanceRESTClient(BinanceConfig(api_secret="secret"), retry_config)
        client.session = Mock()

        with pytest.raises(ConfigurationError, match="key"):
            await client.request('GET', '/api/v3/account', signed=True)

    @pytest.mark.asyncio
    async def test_get_server_time(self, client):
        client.session.request = Mock(return_value=mock_response(200, {'serverTime': 1700000000000}))

        result = await client.get_server_time()

        assert result == {'serverTime': 1700000000000}
        method, url = client.session.request.call_args.args
        assert method == 'GET'
        assert str(url) == 'https://api.test/api/v3/time'

    @pytest.mark.asyncio
    async def test_get_exchange_info(self, client):
        client.session.request = Mock(return_value=mock_response(200, {'symbols': []}))

        result = await client.get_exchange_info()

        assert result == {'symbols': []}
        _, url = client.session.request.call_args.args
        assert str(url) == 'https://api.test/api/v3/exchangeInfo'

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, client):
        client.session.request = Mock(
            return_value=mock_response(400, {'code': -1121, 'msg': 'Invalid symbol.'})
        )

        with pytest.raises(BinanceAPIError) as exc_info:
            await client.request('GET', '/api/v3/ticker/price', {'symbol': 'NOPE'})

        assert not isinstance(exc_info.value, BinanceServerError)
        assert exc_info.value.status == 400
        assert exc_info.value.code == -1121
        assert exc_info.value.message == 'Invalid symbol.'
        assert client.session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, client):
        client.session.request = Mock(side_effect=[
            mock_response(503, None, reason='Service Unavailable'),
            mock_response(200, {'serverTime': 1}),
        ])

        result = await client.get_server_time()

        assert result == {'serverTime': 1}
        assert client.session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_retries(self, client):
        client.session.request = Mock(
            return_value=mock_response(429, {'code': -1003, 'msg': 'Too many requests.'})
        )

        with pytest.raises(BinanceServerError) as exc_info:
            await client.get_server_time()

        assert exc_info.value.status == 429
        assert client.session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, client):
        client.session.request = Mock(side_effect=[
            aiohttp.ClientConnectionError("reset"),
            mock_response(200, {'serverTime': 2}),
        ])

        assert await client.get_server_time() == {'serverTime': 2}

    @pytest.mark.asyncio
    async def test_context_manager_sets_api_key_header(self, binance_config, retry_config):
        async with BinanceRESTClient(binance_config, retry_config) as client:
            assert client.session is not None
            assert client.session.headers['X-MBX-APIKEY'] == 'test-key'

        assert client.session is None
