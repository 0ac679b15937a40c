"""
Portfolio Service.
Maintains per-user portfolios and their holdings with weighted-average cost.
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from storage.errors import HoldingNotFoundError, PortfolioNotFoundError
from storage.models import Portfolio, PortfolioHolding, utc_now
from storage.repositories import PortfolioRepository

logger = logging.getLogger(__name__)

_PORTFOLIO_LOCKS: Dict[str, threading.Lock] = {}
_PORTFOLIO_LOCKS_GUARD = threading.Lock()


def _portfolio_lock(portfolio_id: str) -> threading.Lock:
    """Lock serializing trades against one portfolio."""
    with _PORTFOLIO_LOCKS_GUARD:
        lock = _PORTFOLIO_LOCKS.get(portfolio_id)
        if lock is None:
            lock = threading.Lock()
            _PORTFOLIO_LOCKS[portfolio_id] = lock
        return lock


class PortfolioError(Exception):
    """Base exception for portfolio errors."""
    pass


class InvalidTradeError(PortfolioError):
    """Exception raised when a trade has a zero quantity or a non-positive price."""
    pass


class PortfolioExistsError(PortfolioError):
    """Exception raised when a user already owns a portfolio."""
    pass


class PortfolioService:
    """
    Portfolio management service.

    Responsible for:
    - Applying trades to holdings (weighted-average cost)
    - Portfolio creation and value recalculation
    - Portfolio summaries
    """

    def __init__(
        self,
        db: Optional[Session] = None,
        repository: Optional[PortfolioRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize portfolio service.

        Args:
            db: Database session (if repository not provided)
            repository: PortfolioRepository instance (preferred)
            clock: Returns the current naive UTC time
        """
        if repository is not None:
            self.repository = repository
        elif db is not None:
            self.repository = PortfolioRepository(db)
        else:
            raise ValueError("PortfolioService needs a session or a repository")
        self._clock = clock

    def create_portfolio(self, user_id: str, initial_balance: float = 0.0) -> Portfolio:
        """
        Create the portfolio of a user, funded with initial_balance in cash.

        Raises:
            PortfolioExistsError: If the user already has a portfolio
        """
        try:
            self.repository.get_portfolio_by_user_id(user_id)
        except PortfolioNotFoundError:
            pass
        else:
            raise PortfolioExistsError(f"portfolio already exists for user {user_id}")

        portfolio = Portfolio(
            user_id=user_id,
            total_value=initial_balance,
            cash_balance=initial_balance,
        )
        created = self.repository.create_portfolio(portfolio)
        logger.info("Created portfolio %s for user %s", created.id, user_id)
        return created

    def get_portfolio_by_user_id(self, user_id: str) -> Portfolio:
        """Get the portfolio of a user (PortfolioNotFoundError when missing)."""
        return self.repository.get_portfolio_by_user_id(user_id)

    def update_portfolio(self, portfolio: Portfolio) -> Portfolio:
        """Persist changes to a portfolio."""
        return self.repository.update_portfolio(portfolio)

    def get_holdings(self, user_id: str) -> List[PortfolioHolding]:
        """Get every holding of a user's portfolio."""
        portfolio = self.repository.get_portfolio_by_user_id(user_id)
        return self.repository.get_all_holdings(portfolio.id)

    def apply_trade(self, user_id: str, symbol: str, quantity: float, price: float) -> Optional[PortfolioHolding]:
        """
        Apply a trade to the holding of symbol in the user's portfolio.

        Args:
            user_id: Portfolio owner
            symbol: Stock symbol
            quantity: Quantity change (positive for buy, negative for sell)
            price: Transaction price

        Returns:
            The created or updated holding, or None when the position was closed

        Raises:
            InvalidTradeError: If quantity is zero or price is not positive
            PortfolioNotFoundError: If the user has no portfolio
            HoldingNotFoundError: If reducing a position that does not exist
        """
        if not self._is_finite(quantity) or quantity == 0:
            raise InvalidTradeError(f"trade quantity must be non-zero, got {quantity}")
        if not self._is_finite(price) or price <= 0:
            raise InvalidTradeError(f"trade price must be positive, got {price}")

        portfolio = self.repository.get_portfolio_by_user_id(user_id)
        with _portfolio_lock(portfolio.id):
            now = self._clock()
            try:
                holding = self.repository.get_holding(portfolio.id, symbol)
            except HoldingNotFoundError:
                if quantity < 0:
                    raise HoldingNotFoundError(
                        f"cannot reduce {symbol}: portfolio {portfolio.id} holds none"
                    )
                holding = PortfolioHolding(
                    portfolio_id=portfolio.id,
                    symbol=symbol,
                    quantity=quantity,
                    average_cost=price,
                    current_price=price,
                    last_updated=now,
                )
                created = self.repository.create_holding(holding)
                logger.info("Opened %s x%s @ %s in portfolio %s", symbol, quantity, price, portfolio.id)
                return created

            new_quantity = holding.quantity + quantity
            if new_quantity <= 0:
                self.repository.delete_holding(holding.id)
                logger.info("Closed %s in portfolio %s", symbol, portfolio.id)
                return None

            weighted_cost = (holding.quantity * holding.average_cost + quantity * price) / new_quantity
            holding.quantity = new_quantity
            holding.average_cost = max(weighted_cost, 0.0)
            holding.current_price = price
            holding.last_updated = now
            updated = self.repository.update_holding(holding)
            logger.info(
                "Updated %s in portfolio %s: qty=%s avg_cost=%.4f",
                symbol, portfolio.id, updated.quantity, updated.average_cost,
            )
            return updated

    def remove_holding(self, user_id: str, symbol: str) -> None:
        """
        Delete a holding regardless of its quantity.

        Raises:
            HoldingNotFoundError: If the portfolio holds no such symbol
        """
        portfolio = self.repository.get_portfolio_by_user_id(user_id)
        with _portfolio_lock(portfolio.id):
            holding = self.repository.get_holding(portfolio.id, symbol)
            self.repository.delete_holding(holding.id)

    def recalculate_portfolio(self, user_id: str) -> Portfolio:
        """
        Recompute total value as cash plus the market value of every holding.
        Holdings without a current price are valued at their average cost.
        """
        portfolio = self.repository.get_portfolio_by_user_id(user_id)
        with _portfolio_lock(portfolio.id):
            holdings = self.repository.get_all_holdings(portfolio.id)
            positions_value = sum(self._market_value(h) for h in holdings)
            portfolio.total_value = self._safe_float(portfolio.cash_balance) + positions_value
            return self.repository.update_portfolio(portfolio)

    def get_portfolio_summary(self, user_id: str) -> Dict[str, Any]:
        """
        Get portfolio summary.

        Returns:
            Portfolio summary dict
        """
        portfolio = self.repository.get_portfolio_by_user_id(user_id)
        holdings = self.repository.get_all_holdings(portfolio.id)
        cash_balance = self._safe_float(portfolio.cash_balance)
        positions_value = 0.0
        cost_basis = 0.0
        rows = []
        for holding in holdings:
            market_value = self._market_value(holding)
            basis = holding.quantity * holding.average_cost
            positions_value += market_value
            cost_basis += basis
            rows.append({
                "symbol": holding.symbol,
                "quantity": holding.quantity,
                "average_cost": holding.average_cost,
                "current_price": holding.current_price,
                "market_value": market_value,
                "unrealized_pnl": market_value - basis,
            })
        unrealized_pnl = positions_value - cost_basis
        return {
            "portfolio_id": portfolio.id,
            "user_id": portfolio.user_id,
            "total_value": cash_balance + positions_value,
            "cash_balance": cash_balance,
            "positions_value": positions_value,
            "cost_basis": cost_basis,
            "unrealized_pnl": unrealized_pnl,
            "unrealized_pnl_percent": (unrealized_pnl / cost_basis * 100.0) if cost_basis > 0 else 0.0,
            "holdings": rows,
        }

    def _market_value(self, holding: PortfolioHolding) -> float:
        price = self._safe_float(holding.current_price, 0.0)
        if price <= 0:
            price = self._safe_float(holding.average_cost, 0.0)
        return self._safe_float(holding.quantity, 0.0) * price

    @staticmethod
    def _is_finite(value: Any) -> bool:
        try:
            return math.isfinite(float(value))
        except (TypeError, ValueError):
            return False

    @staticmethod
    def _safe_float(value: Any, default: float = 0.0) -> float:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return default
        if not math.isfinite(parsed):
            return default
        return parsed
