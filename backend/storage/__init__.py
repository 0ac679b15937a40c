"""
Storage module - Database persistence layer.
Provides models, repositories, and services for data storage.
"""
from storage.database import Base, get_db, init_db, SessionLocal
from storage.errors import (
    StoreFailureError, RecordNotFoundError, RuleNotFoundError, ExecutionNotFoundError,
    PortfolioNotFoundError, HoldingNotFoundError, MarketDataNotFoundError,
)
from storage.models import (
    TradingRule, Execution, Portfolio, PortfolioHolding, MarketData, Quote,
    RuleStatusEnum, ExecutionTypeEnum, ExecutionStatusEnum,
)
from storage.repositories import (
    RuleRepository, ExecutionRepository, PortfolioRepository, MarketDataRepository,
)
from storage.service import StorageService

__all__ = [
    # Database
    "Base",
    "get_db",
    "init_db",
    "SessionLocal",
    # Errors
    "StoreFailureError",
    "RecordNotFoundError",
    "RuleNotFoundError",
    "ExecutionNotFoundError",
    "PortfolioNotFoundError",
    "HoldingNotFoundError",
    "MarketDataNotFoundError",
    # Models
    "TradingRule",
    "Execution",
    "Portfolio",
    "PortfolioHolding",
    "MarketData",
    "Quote",
    # Enums
    "RuleStatusEnum",
    "ExecutionTypeEnum",
    "ExecutionStatusEnum",
    # Repositories
    "RuleRepository",
    "ExecutionRepository",
    "PortfolioRepository",
    "MarketDataRepository",
    # Service
    "StorageService",
]
