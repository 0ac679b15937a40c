"""
Repository classes for database CRUD operations.
Provides abstraction layer between services and database models.

Every repository method translates SQLAlchemy failures into StoreFailureError
and lookup misses into the matching RecordNotFoundError subclass.
"""
import functools
import logging
from datetime import datetime
from typing import List, Optional, Type

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from storage.errors import (
    StoreFailureError, RecordNotFoundError, RuleNotFoundError, ExecutionNotFoundError,
    PortfolioNotFoundError, HoldingNotFoundError, MarketDataNotFoundError,
)
from storage.models import (
    TradingRule, Execution, Portfolio, PortfolioHolding, MarketData, Quote,
    RuleStatusEnum, utc_now,
)

logger = logging.getLogger(__name__)


def _store_call(not_found: Type[RecordNotFoundError] = RecordNotFoundError):
    """
    Wrap a repository method so database errors surface as StoreFailureError.
    A stale update/delete (row vanished underneath us) surfaces as `not_found`.
    """
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except StaleDataError as exc:
                self.db.rollback()
                raise not_found(str(exc)) from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("%s.%s failed: %s", type(self).__name__, method.__name__, exc)
                raise StoreFailureError(f"{method.__name__} failed: {exc}") from exc
        return wrapper
    return decorator


class RuleRepository:
    """Repository for TradingRule CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    @_store_call(RuleNotFoundError)
    def create(self, rule: TradingRule) -> TradingRule:
        """Persist a new rule."""
        self.db.add(rule)
        self.db.commit()
        self.db.refresh(rule)
        return rule

    @_store_call(RuleNotFoundError)
    def get_by_id(self, rule_id: str) -> TradingRule:
        """Get rule by ID."""
        rule = self.db.query(TradingRule).filter(TradingRule.id == rule_id).first()
        if rule is None:
            raise RuleNotFoundError(f"trading rule {rule_id} not found")
        return rule

    @_store_call(RuleNotFoundError)
    def get_by_user_id(self, user_id: str) -> List[TradingRule]:
        """Get all rules owned by a user."""
        return (
            self.db.query(TradingRule)
            .filter(TradingRule.user_id == user_id)
            .order_by(TradingRule.created_at.asc())
            .all()
        )

    @_store_call(RuleNotFoundError)
    def get_active(self) -> List[TradingRule]:
        """Get all active rules."""
        return (
            self.db.query(TradingRule)
            .filter(TradingRule.status == RuleStatusEnum.ACTIVE)
            .order_by(TradingRule.created_at.asc())
            .all()
        )

    @_store_call(RuleNotFoundError)
    def update(self, rule: TradingRule) -> TradingRule:
        """Update an existing rule."""
        rule.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(rule)
        return rule

    @_store_call(RuleNotFoundError)
    def delete(self, rule_id: str) -> None:
        """Delete a rule."""
        rule = self.db.query(TradingRule).filter(TradingRule.id == rule_id).first()
        if rule is None:
            raise RuleNotFoundError(f"trading rule {rule_id} not found")
        self.db.delete(rule)
        self.db.commit()


class ExecutionRepository:
    """Repository for Execution CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    @_store_call(ExecutionNotFoundError)
    def create(self, execution: Execution) -> Execution:
        """Persist a new execution."""
        self.db.add(execution)
        self.db.commit()
        self.db.refresh(execution)
        return execution

    @_store_call(ExecutionNotFoundError)
    def get_by_id(self, execution_id: str) -> Execution:
        """Get execution by ID."""
        execution = self.db.query(Execution).filter(Execution.id == execution_id).first()
        if execution is None:
            raise ExecutionNotFoundError(f"execution {execution_id} not found")
        return execution

    @_store_call(ExecutionNotFoundError)
    def get_by_idempotency_key(self, key: str) -> Optional[Execution]:
        """Get the execution recorded under a dedup key, if any."""
        return self.db.query(Execution).filter(Execution.idempotency_key == key).first()

    @_store_call(ExecutionNotFoundError)
    def get_by_user_id(self, user_id: str, limit: int = 0, offset: int = 0) -> List[Execution]:
        """Get a user's executions, most recent first."""
        query = (
            self.db.query(Execution)
            .filter(Execution.user_id == user_id)
            .order_by(Execution.execution_time.desc())
        )
        if offset > 0:
            query = query.offset(offset)
        if limit > 0:
            query = query.limit(limit)
        return query.all()

    @_store_call(ExecutionNotFoundError)
    def get_by_rule_id(self, rule_id: str) -> List[Execution]:
        """Get executions triggered by a rule, most recent first."""
        return (
            self.db.query(Execution)
            .filter(Execution.rule_id == rule_id)
            .order_by(Execution.execution_time.desc())
            .all()
        )

    @_store_call(ExecutionNotFoundError)
    def get_recent(self, limit: int = 10) -> List[Execution]:
        """Get recent executions across all users."""
        return (
            self.db.query(Execution)
            .order_by(Execution.execution_time.desc())
            .limit(limit)
            .all()
        )

    @_store_call(ExecutionNotFoundError)
    def update(self, execution: Execution) -> Execution:
        """Update an existing execution."""
        execution.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(execution)
        return execution

    @_store_call(ExecutionNotFoundError)
    def count_by_user_id(self, user_id: str) -> int:
        """Count a user's executions."""
        return self.db.query(Execution).filter(Execution.user_id == user_id).count()


class PortfolioRepository:
    """Repository for Portfolio and PortfolioHolding CRUD operations."""

    def __init__(self, db: Session):
        self.db = db

    # Portfolio methods

    @_store_call(PortfolioNotFoundError)
    def create_portfolio(self, portfolio: Portfolio) -> Portfolio:
        """Persist a new portfolio."""
        self.db.add(portfolio)
        self.db.commit()
        self.db.refresh(portfolio)
        return portfolio

    @_store_call(PortfolioNotFoundError)
    def get_portfolio_by_user_id(self, user_id: str) -> Portfolio:
        """Get the portfolio owned by a user."""
        portfolio = self.db.query(Portfolio).filter(Portfolio.user_id == user_id).first()
        if portfolio is None:
            raise PortfolioNotFoundError(f"portfolio for user {user_id} not found")
        return portfolio

    @_store_call(PortfolioNotFoundError)
    def update_portfolio(self, portfolio: Portfolio) -> Portfolio:
        """Update an existing portfolio."""
        portfolio.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(portfolio)
        return portfolio

    # Holdings methods

    @_store_call(HoldingNotFoundError)
    def create_holding(self, holding: PortfolioHolding) -> PortfolioHolding:
        """Persist a new holding."""
        self.db.add(holding)
        self.db.commit()
        self.db.refresh(holding)
        return holding

    @_store_call(HoldingNotFoundError)
    def get_holding(self, portfolio_id: str, symbol: str) -> PortfolioHolding:
        """Get a portfolio's holding in one symbol."""
        holding = self.db.query(PortfolioHolding).filter(
            and_(PortfolioHolding.portfolio_id == portfolio_id, PortfolioHolding.symbol == symbol)
        ).first()
        if holding is None:
            raise HoldingNotFoundError(f"holding {symbol} in portfolio {portfolio_id} not found")
        return holding

    @_store_call(HoldingNotFoundError)
    def get_all_holdings(self, portfolio_id: str) -> List[PortfolioHolding]:
        """Get every holding of a portfolio."""
        return (
            self.db.query(PortfolioHolding)
            .filter(PortfolioHolding.portfolio_id == portfolio_id)
            .order_by(PortfolioHolding.symbol.asc())
            .all()
        )

    @_store_call(HoldingNotFoundError)
    def update_holding(self, holding: PortfolioHolding) -> PortfolioHolding:
        """Update an existing holding."""
        holding.updated_at = utc_now()
        self.db.commit()
        self.db.refresh(holding)
        return holding

    @_store_call(HoldingNotFoundError)
    def delete_holding(self, holding_id: str) -> None:
        """Delete a holding."""
        holding = self.db.query(PortfolioHolding).filter(PortfolioHolding.id == holding_id).first()
        if holding is None:
            raise HoldingNotFoundError(f"holding {holding_id} not found")
        self.db.delete(holding)
        self.db.commit()


class MarketDataRepository:
    """Read access to stored bars and quotes."""

    def __init__(self, db: Session):
        self.db = db

    @_store_call(MarketDataNotFoundError)
    def add_bar(self, symbol: str, close: float, timestamp: Optional[datetime] = None,
                time_frame: str = "1m", open_price: Optional[float] = None,
                high_price: Optional[float] = None, low_price: Optional[float] = None,
                volume: int = 0, source: Optional[str] = None) -> MarketData:
        """Record a bar. Used by ingestion jobs and fixtures."""
        bar = MarketData(
            symbol=symbol,
            timestamp=timestamp or utc_now(),
            open=open_price if open_price is not None else close,
            high=high_price if high_price is not None else close,
            low=low_price if low_price is not None else close,
            close=close,
            volume=volume,
            source=source,
            time_frame=time_frame,
        )
        self.db.add(bar)
        self.db.commit()
        self.db.refresh(bar)
        return bar

    @_store_call(MarketDataNotFoundError)
    def add_quote(self, symbol: str, bid: float, ask: float, bid_size: int = 0,
                  ask_size: int = 0, timestamp: Optional[datetime] = None,
                  source: Optional[str] = None) -> Quote:
        """Record a quote snapshot."""
        quote = Quote(
            symbol=symbol,
            timestamp=timestamp or utc_now(),
            bid=bid,
            ask=ask,
            bid_size=bid_size,
            ask_size=ask_size,
            source=source,
        )
        self.db.add(quote)
        self.db.commit()
        self.db.refresh(quote)
        return quote

    @_store_call(MarketDataNotFoundError)
    def get_latest_price(self, symbol: str) -> MarketData:
        """Get the most recent bar for a symbol, any time frame."""
        bar = (
            self.db.query(MarketData)
            .filter(MarketData.symbol == symbol)
            .order_by(MarketData.timestamp.desc(), MarketData.id.desc())
            .first()
        )
        if bar is None:
            raise MarketDataNotFoundError(f"no market data for {symbol}")
        return bar

    @_store_call(MarketDataNotFoundError)
    def get_historical_data(self, symbol: str, start: datetime, end: datetime,
                            time_frame: str) -> List[MarketData]:
        """Get bars for a symbol and time frame within [start, end], oldest first."""
        return (
            self.db.query(MarketData)
            .filter(
                and_(
                    MarketData.symbol == symbol,
                    MarketData.time_frame == time_frame,
                    MarketData.timestamp >= start,
                    MarketData.timestamp <= end,
                )
            )
            .order_by(MarketData.timestamp.asc())
            .all()
        )

    @_store_call(MarketDataNotFoundError)
    def get_latest_bars(self, symbol: str, time_frame: str, limit: int) -> List[MarketData]:
        """Get the newest `limit` bars for a symbol and time frame, newest first."""
        return (
            self.db.query(MarketData)
            .filter(and_(MarketData.symbol == symbol, MarketData.time_frame == time_frame))
            .order_by(MarketData.timestamp.desc(), MarketData.id.desc())
            .limit(limit)
            .all()
        )

    @_store_call(MarketDataNotFoundError)
    def get_latest_quote(self, symbol: str) -> Quote:
        """Get the most recent quote for a symbol."""
        quote = (
            self.db.query(Quote)
            .filter(Quote.symbol == symbol)
            .order_by(Quote.timestamp.desc(), Quote.id.desc())
            .first()
        )
        if quote is None:
            raise MarketDataNotFoundError(f"no quote for {symbol}")
        return quote
