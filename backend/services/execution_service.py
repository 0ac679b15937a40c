"""
Execution Service.

Records realized trades, applies rule trigger bookkeeping and aggregates a
user's trading activity over a look-back window.
"""

from collections import Counter
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging
import math

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from storage.models import (
    Execution, TradingRule, ExecutionTypeEnum, ExecutionStatusEnum, new_id, utc_now,
)
from storage.repositories import ExecutionRepository, RuleRepository

logger = logging.getLogger(__name__)

DEFAULT_STATS_BATCH_SIZE = 1000
TOP_SYMBOLS_LIMIT = 5
RECENT_EXECUTIONS_LIMIT = 5


class ExecutionError(Exception):
    """Base exception for execution accounting errors."""
    pass


class InvalidExecutionError(ExecutionError):
    """Exception raised when an execution fails validation."""
    pass


class DuplicateExecutionError(ExecutionError):
    """Exception raised when an idempotency key was already recorded."""

    def __init__(self, existing: Execution):
        super().__init__(f"execution already recorded under key {existing.idempotency_key}")
        self.existing = existing


class ExecutionRecord(BaseModel):
    """Read-only view of a persisted execution."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_id: Optional[str] = None
    user_id: str
    symbol: str
    execution_type: ExecutionTypeEnum
    quantity: float
    price: float
    total_amount: float
    status: ExecutionStatusEnum
    execution_time: datetime


class SymbolStat(BaseModel):
    """Per-symbol activity within the stats window."""
    symbol: str
    count: int = 0
    volume: float = 0.0
    buy_count: int = 0
    sell_count: int = 0


class DailyActivity(BaseModel):
    """Number of executions on one calendar day."""
    date: date
    count: int


class ExecutionStats(BaseModel):
    """Aggregated trading activity of a user."""
    total_executions: int = 0
    buy_count: int = 0
    sell_count: int = 0
    total_volume: float = 0.0
    average_trade_size: float = 0.0
    symbol_breakdown: Dict[str, int] = {}
    executions_by_day: List[DailyActivity] = []
    top_symbols: List[SymbolStat] = []
    recent_executions: List[ExecutionRecord] = []


class ExecutionService:
    """
    Service for recording executions.

    Responsible for:
    - Validating and defaulting executions before persistence
    - Deduplicating scheduler-triggered executions by idempotency key
    - Updating trigger bookkeeping on the originating rule
    - Execution statistics and queries
    """

    def __init__(
        self,
        db: Optional[Session] = None,
        executions: Optional[ExecutionRepository] = None,
        rules: Optional[RuleRepository] = None,
        stats_batch_size: int = DEFAULT_STATS_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize execution service.

        Args:
            db: Database session (if repositories not provided)
            executions: ExecutionRepository instance
            rules: RuleRepository instance
            stats_batch_size: Most-recent executions scanned by get_user_execution_stats
            clock: Returns the current naive UTC time
        """
        if executions is None or rules is None:
            if db is None:
                raise ValueError("ExecutionService needs a session or both repositories")
            executions = executions or ExecutionRepository(db)
            rules = rules or RuleRepository(db)
        self.executions = executions
        self.rules = rules
        self.stats_batch_size = stats_batch_size
        self._clock = clock

    def _prepare(self, execution: Execution) -> None:
        """Validate required fields and fill defaults in place."""
        if not execution.user_id:
            raise InvalidExecutionError("user id is required")
        if not execution.symbol or not str(execution.symbol).strip():
            raise InvalidExecutionError("symbol is required")
        if not self._is_positive(execution.quantity):
            raise InvalidExecutionError(f"quantity must be positive, got {execution.quantity}")
        if not self._is_positive(execution.price):
            raise InvalidExecutionError(f"price must be positive, got {execution.price}")

        execution_type = execution.execution_type
        if isinstance(execution_type, str) and not isinstance(execution_type, ExecutionTypeEnum):
            try:
                execution_type = ExecutionTypeEnum(execution_type.strip().lower())
            except ValueError:
                raise InvalidExecutionError(f"unknown execution type: {execution.execution_type}")
        if execution_type is None:
            raise InvalidExecutionError("execution type is required")
        execution.execution_type = execution_type

        if not execution.id:
            execution.id = new_id()
        if not execution.total_amount:
            execution.total_amount = execution.price * execution.quantity
        if execution.execution_time is None:
            execution.execution_time = self._clock()
        if execution.status is None:
            execution.status = ExecutionStatusEnum.EXECUTED

    @staticmethod
    def _is_positive(value) -> bool:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return False
        return math.isfinite(parsed) and parsed > 0

    def create_execution(self, execution: Execution) -> Execution:
        """
        Validate and persist an execution.

        Raises:
            InvalidExecutionError: If user, symbol, quantity or price are invalid
            StoreFailureError: If persistence fails
        """
        self._prepare(execution)
        created = self.executions.create(execution)
        logger.info(
            "Recorded execution %s: %s %s %s @ %s",
            created.id, created.execution_type.value, created.quantity, created.symbol, created.price,
        )
        return created

    def process_execution(self, execution: Execution) -> Execution:
        """
        Persist an execution and update the originating rule's trigger bookkeeping.

        Raises:
            InvalidExecutionError: If validation fails (nothing is written)
            DuplicateExecutionError: If the idempotency key was already recorded
            RuleNotFoundError: If rule_id names a missing rule (execution stays recorded)
            StoreFailureError: If persistence fails
        """
        self._prepare(execution)
        if execution.idempotency_key:
            existing = self.executions.get_by_idempotency_key(execution.idempotency_key)
            if existing is not None:
                raise DuplicateExecutionError(existing)

        created = self.executions.create(execution)
        logger.info(
            "Processed execution %s for rule %s: %s %s %s @ %s",
            created.id, created.rule_id, created.execution_type.value,
            created.quantity, created.symbol, created.price,
        )

        if created.rule_id:
            rule = self.rules.get_by_id(created.rule_id)
            self._record_trigger(rule, created.execution_time)
        return created

    def _record_trigger(self, rule: TradingRule, triggered_at: datetime) -> None:
        if rule.last_triggered_at is None or triggered_at > rule.last_triggered_at:
            rule.last_triggered_at = triggered_at
        rule.trigger_count = (rule.trigger_count or 0) + 1
        self.rules.update(rule)

    def get_user_execution_stats(self, user_id: str, lookback: timedelta) -> ExecutionStats:
        """
        Aggregate a user's executions newer than now - lookback.

        Only the most recent `stats_batch_size` executions are scanned.
        Read-only; repeated calls over unchanged data return equal results.
        """
        window_start = self._clock() - lookback
        batch = self.executions.get_by_user_id(user_id, limit=self.stats_batch_size)
        window = [e for e in batch if e.execution_time > window_start]

        stats = ExecutionStats(total_executions=len(window))
        per_symbol: Dict[str, SymbolStat] = {}
        per_day: Counter = Counter()

        for execution in window:
            volume = execution.total_amount or 0.0
            stats.total_volume += volume
            is_buy = execution.execution_type == ExecutionTypeEnum.BUY
            if is_buy:
                stats.buy_count += 1
            elif execution.execution_type == ExecutionTypeEnum.SELL:
                stats.sell_count += 1

            symbol_stat = per_symbol.setdefault(execution.symbol, SymbolStat(symbol=execution.symbol))
            symbol_stat.count += 1
            symbol_stat.volume += volume
            if is_buy:
                symbol_stat.buy_count += 1
            else:
                symbol_stat.sell_count += 1

            per_day[execution.execution_time.date()] += 1

        if window:
            stats.average_trade_size = stats.total_volume / len(window)
        stats.symbol_breakdown = {symbol: s.count for symbol, s in per_symbol.items()}
        stats.executions_by_day = [
            DailyActivity(date=day, count=count) for day, count in sorted(per_day.items())
        ]
        stats.top_symbols = sorted(per_symbol.values(), key=lambda s: (-s.count, s.symbol))[:TOP_SYMBOLS_LIMIT]
        stats.recent_executions = [
            ExecutionRecord.model_validate(e) for e in window[:RECENT_EXECUTIONS_LIMIT]
        ]
        return stats

    # Queries

    def get_execution_by_id(self, execution_id: str) -> Execution:
        """Get an execution (ExecutionNotFoundError when missing)."""
        return self.executions.get_by_id(execution_id)

    def get_user_executions(self, user_id: str, page: int = 1, page_size: int = 10) -> List[Execution]:
        """Get one page of a user's executions, most recent first."""
        if page < 1:
            page = 1
        if page_size < 1:
            page_size = 10
        return self.executions.get_by_user_id(user_id, limit=page_size, offset=(page - 1) * page_size)

    def get_rule_executions(self, rule_id: str) -> List[Execution]:
        """Get executions triggered by a rule, most recent first."""
        return self.executions.get_by_rule_id(rule_id)

    def get_recent_executions(self, limit: int = 10) -> List[Execution]:
        """Get the most recent executions across all users."""
        if limit <= 0:
            limit = 10
        return self.executions.get_recent(limit)

    def update_execution(self, execution: Execution) -> Execution:
        """
        Persist changes to an existing execution.

        Raises:
            InvalidExecutionError: If the execution has no id
        """
        if not execution.id:
            raise InvalidExecutionError("execution id is required for update")
        return self.executions.update(execution)

    def count_user_executions(self, user_id: str) -> int:
        """Count a user's executions."""
        return self.executions.count_by_user_id(user_id)
