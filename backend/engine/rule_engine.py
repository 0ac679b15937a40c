"""
Rule Engine Module.
Scheduler loop that evaluates active trading rules and records their trades.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
import logging
import math
import threading
import time
import uuid

from engine.retry import RetryPolicy
from engine.rules import (
    ObservationKey, RuleDefinition, evaluate_conditions, load_rule_definition, required_observations,
)
from services.execution_service import DuplicateExecutionError, ExecutionService
from services.logging_service import cycle_id_ctx
from services.market_data import MarketDataOracle, PriceObservation
from services.portfolio import PortfolioService
from storage.errors import MarketDataNotFoundError
from storage.models import Execution, ExecutionStatusEnum, ExecutionTypeEnum, TradingRule, utc_now
from storage.repositories import RuleRepository

logger = logging.getLogger(__name__)


class EngineState(Enum):
    """Rule engine state."""
    STOPPED = "stopped"
    IDLE = "idle"
    EVALUATING = "evaluating"


@dataclass
class CycleReport:
    """Outcome of one evaluation cycle."""
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    rules_evaluated: int = 0
    rules_triggered: int = 0
    executions_recorded: int = 0
    duplicates_skipped: int = 0
    orders_not_marketable: int = 0
    rules_failed: int = 0
    aborted: bool = False
    cancelled: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


def idempotency_key(rule_id: str, triggered_at: datetime, tick_interval: float) -> str:
    """Dedup key of a rule trigger: the rule id plus the tick bucket it fell in."""
    epoch = triggered_at.replace(tzinfo=timezone.utc).timestamp()
    return f"{rule_id}:{math.floor(epoch / tick_interval)}"


class RuleEngine:
    """
    Rule evaluation engine with scheduler/runner loop.

    Responsible for:
    - Running one evaluation cycle per tick interval
    - Fetching active rules and the market data their conditions need
    - Recording executions for triggered rules and updating portfolios
    - Isolating per-rule failures from the rest of the cycle
    """

    def __init__(
        self,
        rules: RuleRepository,
        market_data: MarketDataOracle,
        execution_service: ExecutionService,
        portfolio_service: PortfolioService,
        tick_interval: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize rule engine.

        Args:
            rules: Repository listing active rules
            market_data: Market data oracle
            execution_service: Records executions and rule trigger bookkeeping
            portfolio_service: Applies recorded trades to portfolios
            tick_interval: Interval between cycles in seconds (default: 60s)
            retry_policy: Retry applied to market data and rule fetches
        """
        if tick_interval <= 0:
            raise ValueError("tick interval must be positive")
        self.rules = rules
        self.market_data = market_data
        self.execution_service = execution_service
        self.portfolio_service = portfolio_service
        self.tick_interval = tick_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

        self.state = EngineState.STOPPED

        # Scheduler loop control
        self._runner_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()

        self.cycle_count = 0
        self.cycle_error_count = 0
        self.rule_error_count = 0
        self.executions_recorded = 0
        self.last_cycle_error = ""
        self.last_rule_error = ""
        self.last_cycle_at: Optional[datetime] = None
        self.last_cycle: Optional[CycleReport] = None

    def is_running(self) -> bool:
        return bool(self._runner_thread and self._runner_thread.is_alive() and not self._stop_event.is_set())

    def start(self) -> bool:
        """
        Start the scheduler loop on a daemon thread.

        Returns:
            True if started, False if already running
        """
        if self.is_running():
            logger.info("Rule engine already running (%s)", self.state.value)
            return False
        self._stop_event.clear()
        self.state = EngineState.IDLE
        self._runner_thread = threading.Thread(target=self._run_loop, name="rule-engine", daemon=True)
        self._runner_thread.start()
        logger.info("Rule engine started (interval: %ss)", self.tick_interval)
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Stop the scheduler loop. The current cycle finishes the rule in progress
        and skips the rest.

        Returns:
            True if stopped, False if it was not running
        """
        if self.state == EngineState.STOPPED and not self._runner_thread:
            logger.info("Rule engine already stopped")
            return False
        self._stop_event.set()
        if self._runner_thread and self._runner_thread.is_alive():
            self._runner_thread.join(timeout=timeout)
            if self._runner_thread.is_alive():
                logger.warning("Rule engine thread did not exit within %.1fs", timeout)
        self._runner_thread = None
        self.state = EngineState.STOPPED
        logger.info("Rule engine stopped")
        return True

    def _run_loop(self) -> None:
        """
        Main scheduler loop.
        Ticks that elapse while a cycle is running are coalesced into the next one.
        """
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                self.cycle_error_count += 1
                self.last_cycle_error = str(e)
                logger.exception("Rule engine scheduler loop error")
            self._sleep_wait(self.tick_interval - (time.monotonic() - started))
        logger.info("Rule engine loop exited")

    def _sleep_wait(self, seconds: float) -> None:
        """Wait loop that wakes early on stop requests."""
        end_time = time.time() + max(0.1, seconds)
        while not self._stop_event.is_set():
            remaining = max(0.0, end_time - time.time())
            if remaining <= 0:
                break
            self._stop_event.wait(timeout=min(0.5, remaining))

    def run_cycle(self) -> CycleReport:
        """
        Evaluate every active rule once.

        A failure to list rules aborts the cycle. A failure while handling one
        rule is logged and counted, and the cycle moves on to the next rule.
        """
        with self._cycle_lock:
            report = CycleReport(cycle_id=uuid.uuid4().hex[:12], started_at=self._clock())
            token = cycle_id_ctx.set(report.cycle_id)
            self.state = EngineState.EVALUATING
            try:
                try:
                    active_rules = self._retry(self.rules.get_active, description="list active rules")
                except Exception as e:
                    report.aborted = True
                    report.error = str(e)
                    self.cycle_error_count += 1
                    self.last_cycle_error = str(e)
                    logger.exception("Could not list active rules; cycle aborted")
                    return report

                for rule in active_rules:
                    if self._stop_event.is_set():
                        report.cancelled = True
                        logger.info("Stop requested; skipping remaining rules")
                        break
                    rule_id = rule.id
                    report.rules_evaluated += 1
                    try:
                        self._process_rule(rule, report)
                    except Exception as e:
                        report.rules_failed += 1
                        self.rule_error_count += 1
                        self.last_rule_error = f"rule:{rule_id} -> {e}"
                        logger.exception("Evaluation failed for rule %s", rule_id)
                return report
            finally:
                report.finished_at = self._clock()
                self.cycle_count += 1
                self.last_cycle_at = report.finished_at
                self.last_cycle = report
                self.state = EngineState.IDLE if self.is_running() else EngineState.STOPPED
                logger.info(
                    "Cycle finished: evaluated=%d triggered=%d recorded=%d failed=%d%s",
                    report.rules_evaluated, report.rules_triggered, report.executions_recorded,
                    report.rules_failed, " (aborted)" if report.aborted else "",
                )
                cycle_id_ctx.reset(token)

    def _process_rule(self, rule: TradingRule, report: CycleReport) -> None:
        definition = load_rule_definition(rule)
        primary, observations = self._observe(definition)

        if not evaluate_conditions(definition.conditions, observations, definition.symbol):
            logger.debug("Rule %s conditions not met at %s=%s", rule.id, rule.symbol, primary.price)
            return
        report.rules_triggered += 1

        if not definition.actions:
            logger.warning("Rule %s triggered but has no actions", rule.id)
            return
        if len(definition.actions) > 1:
            logger.info("Rule %s has %d actions; only the first is executed", rule.id, len(definition.actions))
        action = definition.actions[0]

        symbol = action.target_symbol(definition.symbol)
        price = primary.price if symbol == definition.symbol else self._fetch_price(symbol).price
        if not action.is_marketable(price):
            report.orders_not_marketable += 1
            logger.info("Rule %s %s order for %s not marketable at %s", rule.id, action.order_type, symbol, price)
            return

        triggered_at = self._clock()
        execution = Execution(
            rule_id=rule.id,
            user_id=rule.user_id,
            symbol=symbol,
            execution_type=ExecutionTypeEnum(action.type.value),
            quantity=action.quantity,
            price=price,
            status=ExecutionStatusEnum.EXECUTED,
            execution_time=triggered_at,
            idempotency_key=idempotency_key(rule.id, triggered_at, self.tick_interval),
        )
        try:
            recorded = self.execution_service.process_execution(execution)
        except DuplicateExecutionError as e:
            report.duplicates_skipped += 1
            logger.info("Rule %s already executed this tick (%s)", rule.id, e.existing.id)
            return
        report.executions_recorded += 1
        self.executions_recorded += 1

        self.portfolio_service.apply_trade(rule.user_id, recorded.symbol, action.signed_quantity(), recorded.price)

    def _observe(self, definition: RuleDefinition) -> Tuple[PriceObservation, Dict[ObservationKey, float]]:
        """
        Fetch the rule symbol's price plus every other value the conditions reference.
        Values the oracle has no data for are left out, which fails their conditions.
        """
        primary = self._fetch_price(definition.symbol)
        observations: Dict[ObservationKey, float] = {ObservationKey.price(definition.symbol): primary.price}
        for key in required_observations(definition.conditions, definition.symbol):
            if key in observations:
                continue
            try:
                observations[key] = self._fetch_observation(key)
            except MarketDataNotFoundError as e:
                logger.debug("No observation for %s: %s", key, e)
        return primary, observations

    def _fetch_observation(self, key: ObservationKey) -> float:
        if key.indicator == "sma":
            return self._retry(
                self.market_data.get_moving_average, key.symbol, key.period, key.time_frame,
                description=f"moving average {key.symbol}",
            )
        return self._fetch_price(key.symbol).price

    def _fetch_price(self, symbol: str) -> PriceObservation:
        return self._retry(self.market_data.get_price, symbol, description=f"price {symbol}")

    def _retry(self, func: Callable[..., Any], *args: Any, description: str = "") -> Any:
        return self.retry_policy.call(func, *args, description=description, stop_event=self._stop_event)

    def get_status(self) -> Dict[str, Any]:
        """
        Get engine status.

        Returns:
            Status dictionary
        """
        return {
            "status": self.state.value,
            "tick_interval": self.tick_interval,
            "cycle_count": self.cycle_count,
            "cycle_error_count": self.cycle_error_count,
            "rule_error_count": self.rule_error_count,
            "executions_recorded": self.executions_recorded,
            "last_cycle_error": self.last_cycle_error,
            "last_rule_error": self.last_rule_error,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "last_cycle": self.last_cycle.to_dict() if self.last_cycle else None,
        }
