"""
Market Data Service.
Oracle interface for the latest observed prices and derived indicators.

MarketDataService reads bars and quotes recorded in the database by an
ingestion job. InMemoryMarketData holds prices set directly and is used for
paper runs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from storage.errors import MarketDataNotFoundError
from storage.models import MarketData, Quote, utc_now
from storage.repositories import MarketDataRepository


@dataclass(frozen=True)
class PriceObservation:
    """Latest observed trade price of a symbol."""
    symbol: str
    price: float
    timestamp: datetime


class MarketDataOracle(ABC):
    """
    Abstract market data source.

    Implementations raise MarketDataNotFoundError when nothing has been observed
    for a symbol, and StoreFailureError (or ConnectionError/TimeoutError) when
    the backing source fails.
    """

    @abstractmethod
    def get_price(self, symbol: str) -> PriceObservation:
        """
        Get the latest observed price of a symbol.

        Args:
            symbol: Stock symbol

        Returns:
            PriceObservation
        """
        pass

    @abstractmethod
    def get_moving_average(self, symbol: str, period: int, time_frame: str) -> float:
        """
        Get the simple moving average of the last `period` closes.

        Args:
            symbol: Stock symbol
            period: Number of bars
            time_frame: Bar time frame (1m, 5m, 1h, 1d)

        Returns:
            Average close
        """
        pass


class MarketDataService(MarketDataOracle):
    """Database-backed market data oracle."""

    def __init__(self, db: Optional[Session] = None, repository: Optional[MarketDataRepository] = None):
        if repository is not None:
            self.repository = repository
        elif db is not None:
            self.repository = MarketDataRepository(db)
        else:
            raise ValueError("MarketDataService needs a session or a repository")

    def get_price(self, symbol: str) -> PriceObservation:
        bar = self.repository.get_latest_price(symbol)
        return PriceObservation(symbol=bar.symbol, price=bar.close, timestamp=bar.timestamp)

    def get_historical_data(self, symbol: str, start: datetime, end: datetime,
                            time_frame: str = "1d") -> List[MarketData]:
        """
        Get bars within [start, end], oldest first.

        Raises:
            ValueError: If end is before start
        """
        if end < start:
            raise ValueError("end time must be after start time")
        return self.repository.get_historical_data(symbol, start, end, time_frame)

    def get_quote(self, symbol: str) -> Quote:
        """Get the latest bid/ask snapshot of a symbol."""
        return self.repository.get_latest_quote(symbol)

    def get_moving_average(self, symbol: str, period: int, time_frame: str) -> float:
        if period < 1:
            raise ValueError("period must be at least 1")
        bars = self.repository.get_latest_bars(symbol, time_frame, period)
        if len(bars) < period:
            raise MarketDataNotFoundError(
                f"need {period} {time_frame} bars for {symbol}, have {len(bars)}"
            )
        return sum(bar.close for bar in bars) / period


class InMemoryMarketData(MarketDataOracle):
    """
    Market data oracle backed by a dict of prices.
    Moving averages are computed over the recorded price history of a symbol.
    """

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        self._history: Dict[str, List[PriceObservation]] = {}
        for symbol, price in (prices or {}).items():
            self.set_price(symbol, price)

    def set_price(self, symbol: str, price: float, timestamp: Optional[datetime] = None) -> PriceObservation:
        """Record a new observation for a symbol."""
        observation = PriceObservation(symbol=symbol, price=float(price), timestamp=timestamp or utc_now())
        self._history.setdefault(symbol, []).append(observation)
        return observation

    def get_price(self, symbol: str) -> PriceObservation:
        history = self._history.get(symbol)
        if not history:
            raise MarketDataNotFoundError(f"no market data for {symbol}")
        return history[-1]

    def get_moving_average(self, symbol: str, period: int, time_frame: str) -> float:
        if period < 1:
            raise ValueError("period must be at least 1")
        history = self._history.get(symbol, [])
        if len(history) < period:
            raise MarketDataNotFoundError(f"need {period} observations for {symbol}, have {len(history)}")
        window = history[-period:]
        return sum(o.price for o in window) / period
