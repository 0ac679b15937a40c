"""
Database models for the rule engine.
Defines the schema for trading rules, executions, portfolios, holdings and market data.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Boolean, Text, JSON, Enum as SQLEnum,
    UniqueConstraint, Index,
)

from storage.database import Base


def utc_now() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# Enums for type safety
class RuleStatusEnum(str, enum.Enum):
    """Trading rule status enumeration."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class ExecutionTypeEnum(str, enum.Enum):
    """Execution side enumeration."""
    BUY = "buy"
    SELL = "sell"


class ExecutionStatusEnum(str, enum.Enum):
    """Execution status enumeration."""
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"


# Database Models

class TradingRule(Base):
    """
    TradingRule model - a user-defined trigger/action pair.

    Conditions and actions are stored as versioned JSON blobs; see engine.rules
    for the typed representation.
    """
    __tablename__ = "trading_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    symbol = Column(String(20), nullable=False, index=True)
    rule_type = Column(String(50), nullable=False)  # stop_loss, take_profit, etc.
    conditions = Column(JSON, nullable=True)
    actions = Column(JSON, nullable=True)
    status = Column(SQLEnum(RuleStatusEnum), nullable=False, default=RuleStatusEnum.ACTIVE, index=True)
    is_ai_managed = Column(Boolean, default=False)

    # Trigger bookkeeping written by the execution engine
    last_triggered_at = Column(DateTime, nullable=True)
    trigger_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class Execution(Base):
    """
    Execution model - a realized trade, manual or rule-triggered.
    """
    __tablename__ = "executions"

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    execution_type = Column(SQLEnum(ExecutionTypeEnum), nullable=False)
    quantity = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False, default=0.0)
    status = Column(SQLEnum(ExecutionStatusEnum), nullable=False, default=ExecutionStatusEnum.EXECUTED)
    execution_time = Column(DateTime, nullable=False, index=True)
    exchange = Column(String(50), nullable=True)
    external_order_id = Column(String(100), nullable=True)

    # Dedup key for scheduler-triggered executions
    idempotency_key = Column(String(100), nullable=True, unique=True)

    # Timestamps
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class Portfolio(Base):
    """
    Portfolio model - at most one per user.
    """
    __tablename__ = "portfolios"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, unique=True, index=True)
    total_value = Column(Float, nullable=False, default=0.0)
    cash_balance = Column(Float, nullable=False, default=0.0)

    # Timestamps
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class PortfolioHolding(Base):
    """
    PortfolioHolding model - a portfolio's position in one symbol.
    Never stored with a non-positive quantity.
    """
    __tablename__ = "portfolio_holdings"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "symbol", name="uq_holding_portfolio_symbol"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    portfolio_id = Column(String(36), nullable=False, index=True)
    symbol = Column(String(20), nullable=False)
    quantity = Column(Float, nullable=False)
    average_cost = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)
    last_updated = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utc_now, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


class MarketData(Base):
    """
    MarketData model - one OHLCV bar for a symbol and time frame.
    Written by ingestion outside the core; read by the market data oracle.
    """
    __tablename__ = "market_data"
    __table_args__ = (
        Index("idx_symbol_timestamp", "symbol", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String(20), nullable=False)
    timestamp = Column(DateTime, nullable=False)
    open = Column(Float, nullable=False, default=0.0)
    high = Column(Float, nullable=False, default=0.0)
    low = Column(Float, nullable=False, default=0.0)
    close = Column(Float, nullable=False)
    volume = Column(Integer, nullable=False, default=0)
    source = Column(String(50), nullable=True)
    time_frame = Column(String(10), nullable=False, default="1m")  # 1m, 5m, 1h, 1d


class Quote(Base):
    """
    Quote model - latest bid/ask snapshot for a symbol.
    """
    __tablename__ = "quotes"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    timestamp = Column(DateTime, nullable=False)
    bid = Column(Float, nullable=False)
    ask = Column(Float, nullable=False)
    bid_size = Column(Integer, nullable=False, default=0)
    ask_size = Column(Integer, nullable=False, default=0)
    source = Column(String(50), nullable=True)
