"""
Tests for the rule engine.
Tests evaluation cycles, failure isolation, deduplication and runner lifecycle.
"""
import pytest
import time
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from engine.retry import RetryPolicy
from engine.rule_engine import EngineState, RuleEngine, idempotency_key
from engine.rules import encode_actions, encode_conditions
from services.execution_service import ExecutionService
from services.market_data import InMemoryMarketData, PriceObservation
from services.portfolio import PortfolioService
from services.rule_service import RuleService
from storage.database import Base
from storage.errors import MarketDataNotFoundError, StoreFailureError
from storage.service import StorageService


NOW = datetime(2024, 5, 10, 14, 30, 15)
FAST_RETRY = RetryPolicy(max_attempts=2, initial_delay_seconds=0.0, max_delay_seconds=0.0)


# Test fixtures

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
def storage(db_session):
    return StorageService(db_session)


@pytest.fixture
def oracle():
    return InMemoryMarketData()


@pytest.fixture
def rule_service(storage):
    return RuleService(repository=storage.rules)


@pytest.fixture
def portfolio_service(storage):
    service = PortfolioService(repository=storage.portfolios, clock=lambda: NOW)
    service.create_portfolio("user-1", initial_balance=10000.0)
    return service


@pytest.fixture
def rule_engine(storage, oracle, portfolio_service):
    return RuleEngine(
        rules=storage.rules,
        market_data=oracle,
        execution_service=ExecutionService(executions=storage.executions, rules=storage.rules, clock=lambda: NOW),
        portfolio_service=portfolio_service,
        tick_interval=60.0,
        retry_policy=FAST_RETRY,
        clock=lambda: NOW,
    )


def _dip_rule(rule_service, symbol="AAPL", threshold=150, actions=None, conditions=None):
    return rule_service.create_rule(
        user_id="user-1",
        name=f"{symbol} dip",
        symbol=symbol,
        rule_type="entry",
        conditions=conditions or [{"type": "price_below", "value": threshold}],
        actions=actions or [{"type": "buy", "quantity": 10}],
    )


# Cycle behaviour

def test_triggered_rule_records_execution_and_updates_portfolio(rule_engine, rule_service, oracle, storage, portfolio_service):
    rule = _dip_rule(rule_service)
    oracle.set_price("AAPL", 149.0)

    report = rule_engine.run_cycle()

    assert report.rules_evaluated == 1
    assert report.rules_triggered == 1
    assert report.executions_recorded == 1
    assert report.rules_failed == 0

    executions = storage.executions.get_by_rule_id(rule.id)
    assert len(executions) == 1
    assert executions[0].price == 149.0
    assert executions[0].total_amount == pytest.approx(1490.0)
    assert executions[0].idempotency_key == idempotency_key(rule.id, NOW, 60.0)

    holding = portfolio_service.get_holdings("user-1")[0]
    assert holding.quantity == 10
    assert holding.average_cost == 149.0

    refreshed = rule_service.get_rule_by_id(rule.id)
    assert refreshed.trigger_count == 1
    assert refreshed.last_triggered_at == NOW


@pytest.mark.parametrize("price", [150.0, 151.0])
def test_untriggered_rule_records_nothing(rule_engine, rule_service, oracle, storage, price):
    rule = _dip_rule(rule_service)
    oracle.set_price("AAPL", price)

    report = rule_engine.run_cycle()

    assert report.rules_evaluated == 1
    assert report.rules_triggered == 0
    assert storage.executions.get_by_rule_id(rule.id) == []


def test_price_failure_on_one_rule_does_not_block_others(rule_engine, rule_service, oracle, storage):
    """R1 has no price available; R2 still triggers in the same cycle."""
    failing = _dip_rule(rule_service, symbol="GHOST")
    healthy = _dip_rule(rule_service, symbol="AAPL")
    oracle.set_price("AAPL", 100.0)

    report = rule_engine.run_cycle()

    assert report.rules_evaluated == 2
    assert report.rules_failed == 1
    assert report.executions_recorded == 1
    assert storage.executions.get_by_rule_id(failing.id) == []
    assert len(storage.executions.get_by_rule_id(healthy.id)) == 1
    assert failing.id in rule_engine.get_status()["last_rule_error"]


def test_malformed_rule_is_skipped(rule_engine, rule_service, oracle, storage):
    broken = _dip_rule(rule_service)
    broken.conditions = {"schema_version": 7, "items": []}
    storage.rules.update(broken)
    healthy = _dip_rule(rule_service)
    oracle.set_price("AAPL", 100.0)

    report = rule_engine.run_cycle()

    assert report.rules_failed == 1
    assert len(storage.executions.get_by_rule_id(healthy.id)) == 1


def test_same_tick_is_not_executed_twice(rule_engine, rule_service, oracle, portfolio_service):
    _dip_rule(rule_service)
    oracle.set_price("AAPL", 149.0)

    rule_engine.run_cycle()
    report = rule_engine.run_cycle()

    assert report.rules_triggered == 1
    assert report.duplicates_skipped == 1
    assert report.executions_recorded == 0
    assert portfolio_service.get_holdings("user-1")[0].quantity == 10


def test_sell_without_holding_fails_rule_after_recording(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, actions=[{"type": "sell", "quantity": 5}])
    oracle.set_price("AAPL", 149.0)

    report = rule_engine.run_cycle()

    assert report.executions_recorded == 1
    assert report.rules_failed == 1
    assert len(storage.executions.get_by_rule_id(rule.id)) == 1


def test_only_first_action_is_executed(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, actions=[
        {"type": "buy", "quantity": 3},
        {"type": "buy", "quantity": 7, "symbol": "MSFT"},
    ])
    oracle.set_price("AAPL", 149.0)

    rule_engine.run_cycle()

    executions = storage.executions.get_by_rule_id(rule.id)
    assert [(e.symbol, e.quantity) for e in executions] == [("AAPL", 3.0)]


def test_action_on_other_symbol_uses_its_price(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, actions=[{"type": "buy", "quantity": 1, "symbol": "SPY"}])
    oracle.set_price("AAPL", 149.0)
    oracle.set_price("SPY", 500.0)

    rule_engine.run_cycle()

    execution = storage.executions.get_by_rule_id(rule.id)[0]
    assert execution.symbol == "SPY"
    assert execution.price == 500.0


def test_limit_order_not_marketable(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, actions=[{"type": "buy", "quantity": 1, "order_type": "limit", "limit": 140}])
    oracle.set_price("AAPL", 149.0)

    report = rule_engine.run_cycle()

    assert report.rules_triggered == 1
    assert report.orders_not_marketable == 1
    assert storage.executions.get_by_rule_id(rule.id) == []


def test_moving_average_condition(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, conditions=[
        {"type": "moving_average", "operator": "lt", "value": 120, "parameter": "period", "value2": 3},
    ])
    for price in (100.0, 110.0, 120.0):
        oracle.set_price("AAPL", price)

    rule_engine.run_cycle()

    assert len(storage.executions.get_by_rule_id(rule.id)) == 1


def test_unavailable_secondary_observation_fails_closed(rule_engine, rule_service, oracle, storage):
    rule = _dip_rule(rule_service, conditions=[
        {"type": "price_below", "value": 150},
        {"type": "price_above", "value": 10, "symbol": "MSFT"},
    ])
    oracle.set_price("AAPL", 149.0)

    report = rule_engine.run_cycle()

    assert report.rules_failed == 0
    assert report.rules_triggered == 0
    assert storage.executions.get_by_rule_id(rule.id) == []


def test_inactive_rules_are_ignored(rule_engine, rule_service, oracle):
    rule = _dip_rule(rule_service)
    rule_service.deactivate_rule(rule.id)
    oracle.set_price("AAPL", 149.0)

    assert rule_engine.run_cycle().rules_evaluated == 0


# Failure handling with mocked collaborators

def _mock_engine(rules, market_data=None, execution_service=None, portfolio_service=None):
    return RuleEngine(
        rules=rules,
        market_data=market_data or Mock(),
        execution_service=execution_service or Mock(),
        portfolio_service=portfolio_service or Mock(),
        tick_interval=0.05,
        retry_policy=FAST_RETRY,
        clock=lambda: NOW,
    )


def _stub_rule(rule_id, symbol="AAPL"):
    return SimpleNamespace(
        id=rule_id,
        user_id="user-1",
        symbol=symbol,
        conditions=encode_conditions([{"type": "price_below", "value": 150}]),
        actions=encode_actions([{"type": "buy", "quantity": 1}]),
    )


def test_rule_fetch_failure_aborts_cycle():
    rules = Mock()
    rules.get_active.side_effect = StoreFailureError("database is locked")
    engine = _mock_engine(rules)

    report = engine.run_cycle()

    assert report.aborted is True
    assert "database is locked" in report.error
    assert rules.get_active.call_count == FAST_RETRY.max_attempts
    status = engine.get_status()
    assert status["cycle_error_count"] == 1
    assert status["last_cycle"]["aborted"] is True


def test_transient_price_failure_is_retried():
    rules = Mock()
    rules.get_active.return_value = [_stub_rule("r1")]
    market_data = Mock()
    market_data.get_price.side_effect = [
        StoreFailureError("timeout"),
        PriceObservation(symbol="AAPL", price=149.0, timestamp=NOW),
    ]
    execution_service = Mock()
    execution_service.process_execution.side_effect = lambda execution: execution
    engine = _mock_engine(rules, market_data=market_data, execution_service=execution_service)

    report = engine.run_cycle()

    assert report.executions_recorded == 1
    assert market_data.get_price.call_count == 2


def test_missing_price_is_not_retried():
    rules = Mock()
    rules.get_active.return_value = [_stub_rule("r1")]
    market_data = Mock()
    market_data.get_price.side_effect = MarketDataNotFoundError("no data")
    engine = _mock_engine(rules, market_data=market_data)

    report = engine.run_cycle()

    assert report.rules_failed == 1
    assert market_data.get_price.call_count == 1


def test_stop_during_cycle_skips_remaining_rules():
    rules = Mock()
    rules.get_active.return_value = [_stub_rule("r1"), _stub_rule("r2"), _stub_rule("r3")]
    market_data = Mock()
    engine = _mock_engine(rules, market_data=market_data)

    def price_then_stop(symbol):
        engine.stop()
        return PriceObservation(symbol=symbol, price=200.0, timestamp=NOW)

    market_data.get_price.side_effect = price_then_stop

    report = engine.run_cycle()

    assert report.cancelled is True
    assert report.rules_evaluated == 1
    assert engine.state == EngineState.STOPPED


# Runner lifecycle

def test_runner_start_and_stop():
    rules = Mock()
    rules.get_active.return_value = []
    engine = _mock_engine(rules)

    assert engine.get_status()["status"] == "stopped"
    assert engine.start() is True
    assert engine.start() is False

    deadline = time.time() + 2.0
    while engine.cycle_count < 2 and time.time() < deadline:
        time.sleep(0.02)
    assert engine.cycle_count >= 2
    assert engine.get_status()["status"] in ("idle", "evaluating")

    assert engine.stop() is True
    assert engine.get_status()["status"] == "stopped"
    assert engine.stop() is False


def test_rejects_non_positive_tick_interval():
    with pytest.raises(ValueError):
        RuleEngine(rules=Mock(), market_data=Mock(), execution_service=Mock(),
                   portfolio_service=Mock(), tick_interval=0)


def test_idempotency_key_buckets_by_tick():
    start = datetime(2024, 5, 10, 14, 30, 0)
    assert idempotency_key("r1", start, 60.0) == idempotency_key("r1", start + timedelta(seconds=59), 60.0)
    assert idempotency_key("r1", start, 60.0) != idempotency_key("r1", start + timedelta(seconds=60), 60.0)
    assert idempotency_key("r1", start, 60.0).startswith("r1:")
