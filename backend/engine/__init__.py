"""
Rule engine module.

Core components:
- Rule condition/action model and evaluation
- Rule engine with scheduler loop
- Retry policy for store and market data calls
"""

from engine.rules import (
    RuleDefinitionError, RuleDefinition, RuleVerdict, ObservationKey,
    PriceCondition, MovingAverageCondition, MarketAction, LimitAction, StopAction,
    encode_conditions, encode_actions, decode_conditions, decode_actions,
    evaluate_conditions, evaluate_rule, required_observations,
)
from engine.retry import RetryPolicy
from engine.rule_engine import RuleEngine, EngineState, CycleReport

__all__ = [
    "RuleDefinitionError",
    "RuleDefinition",
    "RuleVerdict",
    "ObservationKey",
    "PriceCondition",
    "MovingAverageCondition",
    "MarketAction",
    "LimitAction",
    "StopAction",
    "encode_conditions",
    "encode_actions",
    "decode_conditions",
    "decode_actions",
    "evaluate_conditions",
    "evaluate_rule",
    "required_observations",
    "RetryPolicy",
    "RuleEngine",
    "EngineState",
    "CycleReport",
]
