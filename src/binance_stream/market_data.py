"""Binance market data events, frame decoder and symbol-level service."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .exceptions import DecodeError
from .subscription import SubscriptionManager

logger = logging.getLogger(__name__)

DEPTH_LEVELS = (5, 10, 20)

PriceLevel = Tuple[float, float]


class MarketEventType(Enum):
    """Event types carried on Binance market streams."""
    TRADE = "trade"
    DEPTH = "depthUpdate"
    KLINE = "kline"
    TICKER = "24hrTicker"
    CONTROL = "control"


def _ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _levels(raw_levels) -> List[PriceLevel]:
    return [(float(price), float(qty)) for price, qty in raw_levels]


@dataclass
class TradeEvent:
    event_time: datetime
    symbol: str
    trade_id: int
    price: float
    quantity: float
    trade_time: datetime
    is_market_maker: bool
    buyer_order_id: Optional[int] = None
    seller_order_id: Optional[int] = None
    stream: Optional[str] = None
    event_type: MarketEventType = field(default=MarketEventType.TRADE, init=False)


@dataclass
class DepthEvent:
    """Diff depth update or partial book snapshot (``first_update_id`` is None for the latter)."""
    final_update_id: int
    bids: List[PriceLevel]
    asks: List[PriceLevel]
    symbol: Optional[str] = None
    event_time: Optional[datetime] = None
    first_update_id: Optional[int] = None
    stream: Optional[str] = None
    event_type: MarketEventType = field(default=MarketEventType.DEPTH, init=False)


@dataclass
class KlineEvent:
    event_time: datetime
    symbol: str
    interval: str
    start_time: datetime
    close_time: datetime
    first_trade_id: int
    last_trade_id: int
    open_price: float
    close_price: float
    high_price: float
    low_price: float
    base_asset_volume: float
    number_of_trades: int
    is_closed: bool
    quote_asset_volume: float
    taker_buy_base_asset_volume: float
    taker_buy_quote_asset_volume: float
    stream: Optional[str] = None
    event_type: MarketEventType = field(default=MarketEventType.KLINE, init=False)


@dataclass
class TickerEvent:
    event_time: datetime
    symbol: str
    price_change: float
    price_change_percent: float
    weighted_avg_price: float
    last_price: float
    last_quantity: float
    best_bid_price: float
    best_bid_quantity: float
    best_ask_price: float
    best_ask_quantity: float
    open_price: float
    high_price: float
    low_price: float
    base_volume: float
    quote_volume: float
    open_time: datetime
    close_time: datetime
    first_trade_id: int
    last_trade_id: int
    trade_count: int
    stream: Optional[str] = None
    event_type: MarketEventType = field(default=MarketEventType.TICKER, init=False)


@dataclass
class ControlResponse:
    """Server reply to a SUBSCRIBE/UNSUBSCRIBE request."""
    id: Optional[int]
    result: Any = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    event_type: MarketEventType = field(default=MarketEventType.CONTROL, init=False)

    @property
    def ok(self) -> bool:
        return self.error_code is None and self.error_message is None


MarketEvent = Union[TradeEvent, DepthEvent, KlineEvent, TickerEvent, ControlResponse]


def _parse_trade(data: Dict[str, Any], stream: Optional[str]) -> TradeEvent:
    return TradeEvent(
        event_time=_ms_to_datetime(data['E']),
        symbol=data['s'],
        trade_id=data['t'],
        price=float(data['p']),
        quantity=float(data['q']),
        trade_time=_ms_to_datetime(data['T']),
        is_market_maker=data['m'],
        buyer_order_id=data.get('b'),
        seller_order_id=data.get('a'),
        stream=stream,
    )


def _parse_depth_update(data: Dict[str, Any], stream: Optional[str]) -> DepthEvent:
    return DepthEvent(
        event_time=_ms_to_datetime(data['E']),
        symbol=data['s'],
        first_update_id=data['U'],
        final_update_id=data['u'],
        bids=_levels(data['b']),
        asks=_levels(data['a']),
        stream=stream,
    )


def _parse_partial_depth(data: Dict[str, Any], stream: Optional[str]) -> DepthEvent:
    # Partial book frames carry no symbol; the combined-stream name does
    symbol = stream.split('@', 1)[0].upper() if stream else None
    return DepthEvent(
        symbol=symbol,
        final_update_id=data['lastUpdateId'],
        bids=_levels(data['bids']),
        asks=_levels(data['asks']),
        stream=stream,
    )


def _parse_kline(data: Dict[str, Any], stream: Optional[str]) -> KlineEvent:
    k = data['k']
    return KlineEvent(
        event_time=_ms_to_datetime(data['E']),
        symbol=data['s'],
        interval=k['i'],
        start_time=_ms_to_datetime(k['t']),
        close_time=_ms_to_datetime(k['T']),
        first_trade_id=k['f'],
        last_trade_id=k['L'],
        open_price=float(k['o']),
        close_price=float(k['c']),
        high_price=float(k['h']),
        low_price=float(k['l']),
        base_asset_volume=float(k['v']),
        number_of_trades=k['n'],
        is_closed=k['x'],
        quote_asset_volume=float(k['q']),
        taker_buy_base_asset_volume=float(k['V']),
        taker_buy_quote_asset_volume=float(k['Q']),
        stream=stream,
    )


def _parse_ticker(data: Dict[str, Any], stream: Optional[str]) -> TickerEvent:
    return TickerEvent(
        event_time=_ms_to_datetime(data['E']),
        symbol=data['s'],
        price_change=float(data['p']),
        price_change_percent=float(data['P']),
        weighted_avg_price=float(data['w']),
        last_price=float(data['c']),
        last_quantity=float(data['Q']),
        best_bid_price=float(data['b']),
        best_bid_quantity=float(data['B']),
        best_ask_price=float(data['a']),
        best_ask_quantity=float(data['A']),
        open_price=float(data['o']),
        high_price=float(data['h']),
        low_price=float(data['l']),
        base_volume=float(data['v']),
        quote_volume=float(data['q']),
        open_time=_ms_to_datetime(data['O']),
        close_time=_ms_to_datetime(data['C']),
        first_trade_id=data['F'],
        last_trade_id=data['L'],
        trade_count=data['n'],
        stream=stream,
    )


_PARSERS = {
    'trade': _parse_trade,
    'depthUpdate': _parse_depth_update,
    'kline': _parse_kline,
    '24hrTicker': _parse_ticker,
}


def parse_market_event(raw: Union[str, bytes], stream: Optional[str] = None) -> Optional[MarketEvent]:
    """
    Decode one frame from a raw (/ws) or combined (/stream) endpoint.

    Returns None for well-formed frames of an event type we don't model.

    Raises:
        DecodeError: If the frame is not JSON or a known event is malformed
    """
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(message, dict):
        raise DecodeError(f"Unexpected frame shape: {type(message).__name__}")

    if 'stream' in message and 'data' in message:
        stream = message['stream']
        message = message['data']
        if not isinstance(message, dict):
            raise DecodeError(f"Unexpected payload shape on {stream}: {type(message).__name__}")

    if 'id' in message and ('result' in message or 'error' in message):
        error = message.get('error') or {}
        if not isinstance(error, dict):
            raise DecodeError(f"Malformed control response error: {error!r}")
        return ControlResponse(
            id=message['id'],
            result=message.get('result'),
            error_code=error.get('code'),
            error_message=error.get('msg'),
        )

    event_type = message.get('e')
    try:
        if event_type in _PARSERS:
            return _PARSERS[event_type](message, stream)
        if event_type is None and 'lastUpdateId' in message:
            return _parse_partial_depth(message, stream)
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Malformed {event_type or 'depth'} event: {e!r}") from e

    return None


EventHandler = Callable[[MarketEvent], None]


class MarketDataService:
    """
    Symbol-level subscriptions and typed event dispatch.

    Decode and handler failures are logged and counted; they never reach the
    connection.
    """

    def __init__(self, subscriptions: SubscriptionManager):
        self.subscriptions = subscriptions
        self._handlers: Dict[MarketEventType, List[EventHandler]] = {}
        self.stats = {
            'messages_decoded': 0,
            'decode_errors': 0,
            'handler_errors': 0,
            'unhandled_messages': 0,
            'control_errors': 0,
        }
        subscriptions.register_handler(self.handle_message)

    def register_handler(self, event_type: MarketEventType, handler: EventHandler) -> None:
        """Register a handler for specific event types."""
        self._handlers.setdefault(event_type, []).append(handler)
        logger.info(f"Registered handler for {event_type.value}")

    # Stream names

    @staticmethod
    def trade_stream(symbol: str) -> str:
        return f"{symbol.lower()}@trade"

    @staticmethod
    def depth_stream(symbol: str, level: int = 5) -> str:
        if level not in DEPTH_LEVELS:
            raise ValueError(f"Depth level must be one of {DEPTH_LEVELS}, got {level}")
        return f"{symbol.lower()}@depth{level}"

    @staticmethod
    def kline_stream(symbol: str, interval: str = "1m") -> str:
        return f"{symbol.lower()}@kline_{interval}"

    @staticmethod
    def ticker_stream(symbol: str) -> str:
        return f"{symbol.lower()}@ticker"

    def subscribe_trades(self, symbol: str) -> None:
        self.subscriptions.subscribe([self.trade_stream(symbol)])

    def unsubscribe_trades(self, symbol: str) -> None:
        self.subscriptions.unsubscribe([self.trade_stream(symbol)])

    def subscribe_depth(self, symbol: str, level: int = 5) -> None:
        self.subscriptions.subscribe([self.depth_stream(symbol, level)])

    def unsubscribe_depth(self, symbol: str, level: int = 5) -> None:
        self.subscriptions.unsubscribe([self.depth_stream(symbol, level)])

    def subscribe_klines(self, symbol: str, interval: str = "1m") -> None:
        self.subscriptions.subscribe([self.kline_stream(symbol, interval)])

    def unsubscribe_klines(self, symbol: str, interval: str = "1m") -> None:
        self.subscriptions.unsubscribe([self.kline_stream(symbol, interval)])

    def subscribe_ticker(self, symbol: str) -> None:
        self.subscriptions.subscribe([self.ticker_stream(symbol)])

    def unsubscribe_ticker(self, symbol: str) -> None:
        self.subscriptions.unsubscribe([self.ticker_stream(symbol)])

    # Inbound

    def handle_message(self, payload: Union[str, bytes]) -> None:
        try:
            event = parse_market_event(payload)
        except DecodeError as e:
            self.stats['decode_errors'] += 1
            logger.warning(f"Failed to parse message: {e}")
            logger.debug(f"Raw message: {str(payload)[:200]}...")
            return

        if event is None:
            self.stats['unhandled_messages'] += 1
            return

        self.stats['messages_decoded'] += 1

        if isinstance(event, ControlResponse) and not event.ok:
            self.stats['control_errors'] += 1
            logger.warning(
                f"Control request {event.id} rejected: code={event.error_code} msg={event.error_message}"
            )

        for handler in self._handlers.get(event.event_type, []):
            try:
                handler(event)
            except Exception as e:
                self.stats['handler_errors'] += 1
                logger.error(f"Handler error for {event.event_type.value}: {e}", exc_info=True)
