"""
Tests for the market data oracles.
"""
import pytest
from datetime import datetime, timedelta
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storage.database import Base
from storage.errors import MarketDataNotFoundError
from storage.repositories import MarketDataRepository
from services.market_data import InMemoryMarketData, MarketDataService, PriceObservation


BASE = datetime(2024, 1, 1, 9, 30)


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def repo(db_session):
    return MarketDataRepository(db_session)


@pytest.fixture
def market_data(db_session):
    return MarketDataService(db=db_session)


def test_get_price_returns_latest_close(repo, market_data):
    repo.add_bar("AAPL", 148.0, timestamp=BASE)
    repo.add_bar("AAPL", 149.5, timestamp=BASE + timedelta(minutes=1))

    observation = market_data.get_price("AAPL")
    assert isinstance(observation, PriceObservation)
    assert observation.price == 149.5
    assert observation.timestamp == BASE + timedelta(minutes=1)


def test_get_price_unknown_symbol(market_data):
    with pytest.raises(MarketDataNotFoundError):
        market_data.get_price("NOPE")


def test_historical_data_range(repo, market_data):
    for day in range(5):
        repo.add_bar("MSFT", 300.0 + day, timestamp=BASE + timedelta(days=day), time_frame="1d")

    bars = market_data.get_historical_data("MSFT", BASE + timedelta(days=1), BASE + timedelta(days=3))
    assert [b.close for b in bars] == [301.0, 302.0, 303.0]


def test_historical_data_rejects_inverted_range(market_data):
    with pytest.raises(ValueError):
        market_data.get_historical_data("MSFT", BASE, BASE - timedelta(days=1))


def test_latest_quote(repo, market_data):
    repo.add_quote("AAPL", bid=149.9, ask=150.1, timestamp=BASE)
    repo.add_quote("AAPL", bid=150.0, ask=150.2, timestamp=BASE + timedelta(seconds=5))
    quote = market_data.get_quote("AAPL")
    assert quote.bid == 150.0
    assert quote.ask == 150.2


def test_moving_average_uses_latest_bars(repo, market_data):
    closes = [10.0, 20.0, 30.0, 40.0]
    for day, close in enumerate(closes):
        repo.add_bar("AAPL", close, timestamp=BASE + timedelta(days=day), time_frame="1d")

    assert market_data.get_moving_average("AAPL", 2, "1d") == pytest.approx(35.0)
    assert market_data.get_moving_average("AAPL", 4, "1d") == pytest.approx(25.0)


def test_moving_average_needs_enough_bars(repo, market_data):
    repo.add_bar("AAPL", 10.0, timestamp=BASE, time_frame="1d")
    with pytest.raises(MarketDataNotFoundError):
        market_data.get_moving_average("AAPL", 3, "1d")
    with pytest.raises(ValueError):
        market_data.get_moving_average("AAPL", 0, "1d")


def test_in_memory_oracle():
    oracle = InMemoryMarketData({"AAPL": 100.0})
    oracle.set_price("AAPL", 110.0)
    oracle.set_price("AAPL", 120.0)

    assert oracle.get_price("AAPL").price == 120.0
    assert oracle.get_moving_average("AAPL", 3, "1m") == pytest.approx(110.0)
    with pytest.raises(MarketDataNotFoundError):
        oracle.get_price("MSFT")
    with pytest.raises(MarketDataNotFoundError):
        oracle.get_moving_average("AAPL", 4, "1m")
