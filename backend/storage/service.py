"""
Storage service - High-level interface for storage operations.
Bundles the repositories behind one database session.
"""
from typing import List

from sqlalchemy.orm import Session

from storage.database import Base
from storage.models import TradingRule, MarketData
from storage.repositories import (
    RuleRepository, ExecutionRepository, PortfolioRepository, MarketDataRepository,
)


class StorageService:
    """
    Main storage service coordinating all repository operations.
    This is the primary interface for backend services to interact with storage.
    """

    def __init__(self, db: Session):
        """Initialize storage service with database session."""
        self.db = db
        # Ensure schema exists for the active DB bind.
        Base.metadata.create_all(bind=self.db.get_bind())
        self.rules = RuleRepository(db)
        self.executions = ExecutionRepository(db)
        self.portfolios = PortfolioRepository(db)
        self.market_data = MarketDataRepository(db)

    def get_active_rules(self) -> List[TradingRule]:
        """Get every rule the scheduler should evaluate."""
        return self.rules.get_active()

    def record_price(self, symbol: str, price: float, time_frame: str = "1m") -> MarketData:
        """Record a close-only bar for a symbol at the current time."""
        return self.market_data.add_bar(symbol=symbol, close=price, time_frame=time_frame)

    def close(self) -> None:
        """Release the underlying session."""
        self.db.close()
