"""
Rule Condition/Action Model.

Conditions and actions are tagged unions validated with pydantic. They are
persisted on TradingRule as versioned JSON envelopes:

    {"schema_version": 1, "items": [...]}

A bare JSON list is accepted as an unversioned (legacy) envelope.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Mapping, NamedTuple, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

SCHEMA_VERSION = 1
EQUALITY_TOLERANCE = 1e-9
DEFAULT_MA_PERIOD = 20
DEFAULT_MA_TIME_FRAME = "1d"


class RuleDefinitionError(ValueError):
    """Raised when a rule's condition/action blob cannot be decoded."""
    pass


class ComparisonOperator(str, Enum):
    """Comparison applied between an observed value and a threshold."""
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"


class LogicalOperator(str, Enum):
    """How a condition combines with the running verdict of its predecessors."""
    AND = "AND"
    OR = "OR"


_OPERATOR_ALIASES = {
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "==": "eq",
    "=": "eq",
    "!=": "ne",
    "above": "gt",
    "below": "lt",
    "greater_than": "gt",
    "less_than": "lt",
    "equal": "eq",
    "equals": "eq",
    "not_equal": "ne",
}


def compare(observed: float, operator: ComparisonOperator, threshold: float) -> bool:
    """Apply a comparison operator."""
    if operator is ComparisonOperator.GT:
        return observed > threshold
    if operator is ComparisonOperator.GTE:
        return observed >= threshold
    if operator is ComparisonOperator.LT:
        return observed < threshold
    if operator is ComparisonOperator.LTE:
        return observed <= threshold
    if operator is ComparisonOperator.EQ:
        return math.isclose(observed, threshold, rel_tol=0.0, abs_tol=EQUALITY_TOLERANCE)
    return not math.isclose(observed, threshold, rel_tol=0.0, abs_tol=EQUALITY_TOLERANCE)


class ObservationKey(NamedTuple):
    """Identifies one observed value: a symbol's price or a derived indicator."""
    symbol: str
    indicator: str = "price"
    period: Optional[int] = None
    time_frame: Optional[str] = None

    @classmethod
    def price(cls, symbol: str) -> "ObservationKey":
        return cls(symbol=symbol)

    @classmethod
    def moving_average(cls, symbol: str, period: int, time_frame: str) -> "ObservationKey":
        return cls(symbol=symbol, indicator="sma", period=period, time_frame=time_frame)


def price_observations(prices: Mapping[str, float]) -> Dict[ObservationKey, float]:
    """Build an observation map from plain symbol -> price pairs."""
    return {ObservationKey.price(symbol): float(price) for symbol, price in prices.items()}


# ============================================================================
# Conditions
# ============================================================================

class _ConditionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: Optional[str] = None
    operator: Optional[ComparisonOperator] = None
    value: float
    time_frame: Optional[str] = None
    parameter: Optional[str] = None
    value2: Optional[float] = None
    logical_operator: LogicalOperator = LogicalOperator.AND

    @field_validator("symbol", "time_frame", "parameter", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> Any:
        if v is None:
            return None
        raw = str(v).strip().lower()
        if not raw:
            return None
        return _OPERATOR_ALIASES.get(raw, raw)

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _normalize_logical_operator(cls, v: Any) -> Any:
        if v is None:
            return LogicalOperator.AND
        raw = str(v).strip().upper()
        return raw or LogicalOperator.AND

    @field_validator("value")
    @classmethod
    def _finite_value(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("threshold must be a finite number")
        return v

    def target_symbol(self, default_symbol: str) -> str:
        return self.symbol or default_symbol

    def resolved_operator(self) -> ComparisonOperator:
        if self.operator is None:
            raise RuleDefinitionError(f"condition {self!r} has no operator")
        return self.operator

    def observation_key(self, default_symbol: str) -> ObservationKey:
        raise NotImplementedError

    def evaluate(self, observations: Mapping[ObservationKey, float], default_symbol: str) -> bool:
        """
        Compare the observed value against the threshold.
        A missing or non-finite observation never satisfies the condition.
        """
        observed = observations.get(self.observation_key(default_symbol))
        if observed is None:
            return False
        try:
            observed = float(observed)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(observed):
            return False
        return compare(observed, self.resolved_operator(), self.value)


class PriceCondition(_ConditionBase):
    """Compares the latest trade price of a symbol against a threshold."""
    type: Literal["price_above", "price_below", "price"]

    @model_validator(mode="after")
    def _operator_required_for_generic_price(self) -> "PriceCondition":
        if self.type == "price" and self.operator is None:
            raise ValueError("price conditions need an explicit operator")
        return self

    def resolved_operator(self) -> ComparisonOperator:
        if self.operator is not None:
            return self.operator
        if self.type == "price_above":
            return ComparisonOperator.GT
        return ComparisonOperator.LT

    def observation_key(self, default_symbol: str) -> ObservationKey:
        return ObservationKey.price(self.target_symbol(default_symbol))


class MovingAverageCondition(_ConditionBase):
    """
    Compares a simple moving average against a threshold.

    The period comes from the secondary parameter/value pair
    (parameter "period" or "ma_period", value2 = bar count).
    """
    type: Literal["moving_average"]

    @model_validator(mode="after")
    def _check_parameters(self) -> "MovingAverageCondition":
        if self.operator is None:
            raise ValueError("moving average conditions need an explicit operator")
        if self.parameter not in (None, "period", "ma_period"):
            raise ValueError(f"unsupported moving average parameter: {self.parameter}")
        if self.value2 is not None and (not math.isfinite(self.value2) or int(self.value2) < 1):
            raise ValueError("moving average period must be at least 1")
        return self

    @property
    def period(self) -> int:
        return int(self.value2) if self.value2 is not None else DEFAULT_MA_PERIOD

    @property
    def bar_time_frame(self) -> str:
        return self.time_frame or DEFAULT_MA_TIME_FRAME

    def observation_key(self, default_symbol: str) -> ObservationKey:
        return ObservationKey.moving_average(self.target_symbol(default_symbol), self.period, self.bar_time_frame)


Condition = Annotated[Union[PriceCondition, MovingAverageCondition], Field(discriminator="type")]


# ============================================================================
# Actions
# ============================================================================

class ActionType(str, Enum):
    """Trade direction of an action."""
    BUY = "buy"
    SELL = "sell"


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: ActionType
    symbol: Optional[str] = None
    quantity: float = Field(gt=0)

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("symbol", mode="before")
    @classmethod
    def _blank_symbol(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    def target_symbol(self, default_symbol: str) -> str:
        return self.symbol or default_symbol

    def signed_quantity(self) -> float:
        """Quantity as a position delta: positive for buys, negative for sells."""
        return self.quantity if self.type is ActionType.BUY else -self.quantity

    def is_marketable(self, price: float) -> bool:
        """Whether the order would fill at the observed price."""
        return True


class MarketAction(_ActionBase):
    """Fill at the observed price."""
    order_type: Literal["market"] = "market"


class LimitAction(_ActionBase):
    order_type: Literal["limit"] = "limit"
    limit: float = Field(gt=0)

    def is_marketable(self, price: float) -> bool:
        if self.type is ActionType.BUY:
            return price <= self.limit
        return price >= self.limit


class StopAction(_ActionBase):
    """Fill once the price reaches the stop, optionally capped by a limit."""
    order_type: Literal["stop"] = "stop"
    stop: float = Field(gt=0)
    limit: Optional[float] = Field(default=None, gt=0)

    def is_marketable(self, price: float) -> bool:
        if self.type is ActionType.BUY:
            return price >= self.stop and (self.limit is None or price <= self.limit)
        return price <= self.stop and (self.limit is None or price >= self.limit)


Action = Annotated[Union[MarketAction, LimitAction, StopAction], Field(discriminator="order_type")]

_CONDITIONS = TypeAdapter(List[Condition])
_ACTIONS = TypeAdapter(List[Action])


# ============================================================================
# Encoding
# ============================================================================

def _unwrap_envelope(blob: Any, kind: str) -> List[Any]:
    if blob is None:
        return []
    if isinstance(blob, (bytes, bytearray)):
        blob = blob.decode("utf-8")
    if isinstance(blob, str):
        if not blob.strip():
            return []
        try:
            blob = json.loads(blob)
        except json.JSONDecodeError as exc:
            raise RuleDefinitionError(f"{kind} blob is not valid JSON: {exc}") from exc
    if isinstance(blob, list):
        return blob
    if isinstance(blob, dict):
        version = blob.get("schema_version")
        if version != SCHEMA_VERSION:
            raise RuleDefinitionError(f"unsupported {kind} schema version: {version!r}")
        items = blob.get("items")
        if not isinstance(items, list):
            raise RuleDefinitionError(f"{kind} envelope has no item list")
        return items
    raise RuleDefinitionError(f"unexpected {kind} blob type: {type(blob).__name__}")


def decode_conditions(blob: Any) -> List[Union[PriceCondition, MovingAverageCondition]]:
    """Decode a stored conditions blob into typed conditions."""
    items = _unwrap_envelope(blob, "conditions")
    try:
        return _CONDITIONS.validate_python(items)
    except ValidationError as exc:
        raise RuleDefinitionError(f"invalid conditions: {exc}") from exc


def decode_actions(blob: Any) -> List[Union[MarketAction, LimitAction, StopAction]]:
    """Decode a stored actions blob into typed actions."""
    items = _unwrap_envelope(blob, "actions")
    normalized = []
    for item in items:
        if isinstance(item, dict):
            item = dict(item)
            order_type = item.get("order_type") or "market"
            item["order_type"] = str(order_type).strip().lower()
        normalized.append(item)
    try:
        return _ACTIONS.validate_python(normalized)
    except ValidationError as exc:
        raise RuleDefinitionError(f"invalid actions: {exc}") from exc


def encode_conditions(conditions: Iterable[Any]) -> Dict[str, Any]:
    """Validate conditions (models or dicts) and wrap them in a versioned envelope."""
    items = [c.model_dump(mode="json", exclude_none=True) if isinstance(c, BaseModel) else c for c in conditions]
    validated = decode_conditions(items)
    return {
        "schema_version": SCHEMA_VERSION,
        "items": [c.model_dump(mode="json", exclude_none=True) for c in validated],
    }


def encode_actions(actions: Iterable[Any]) -> Dict[str, Any]:
    """Validate actions (models or dicts) and wrap them in a versioned envelope."""
    items = [a.model_dump(mode="json", exclude_none=True) if isinstance(a, BaseModel) else a for a in actions]
    validated = decode_actions(items)
    return {
        "schema_version": SCHEMA_VERSION,
        "items": [a.model_dump(mode="json", exclude_none=True) for a in validated],
    }


# ============================================================================
# Evaluation
# ============================================================================

@dataclass
class RuleDefinition:
    """Decoded conditions and actions of a rule."""
    symbol: str
    conditions: List[Any] = field(default_factory=list)
    actions: List[Any] = field(default_factory=list)


@dataclass
class RuleVerdict:
    """Outcome of evaluating a rule."""
    triggered: bool
    actions: List[Any] = field(default_factory=list)


def load_rule_definition(rule: Any) -> RuleDefinition:
    """
    Decode a stored rule's blobs.

    Raises:
        RuleDefinitionError: If either blob is malformed
    """
    return RuleDefinition(
        symbol=rule.symbol,
        conditions=decode_conditions(rule.conditions),
        actions=decode_actions(rule.actions),
    )


def required_observations(conditions: Sequence[Any], default_symbol: str) -> List[ObservationKey]:
    """Distinct observation keys the conditions need, in first-use order."""
    keys: List[ObservationKey] = []
    for condition in conditions:
        key = condition.observation_key(default_symbol)
        if key not in keys:
            keys.append(key)
    return keys


def evaluate_conditions(
    conditions: Sequence[Any],
    observations: Mapping[ObservationKey, float],
    default_symbol: str,
) -> bool:
    """
    Fold conditions left to right into one verdict.

    The first condition seeds the verdict; each later condition combines with
    it through its own logical operator. A condition whose outcome cannot
    change the verdict (AND after false, OR after true) is not evaluated.
    An empty sequence never triggers.
    """
    if not conditions:
        return False
    verdict = conditions[0].evaluate(observations, default_symbol)
    for condition in conditions[1:]:
        if condition.logical_operator is LogicalOperator.OR:
            if not verdict:
                verdict = condition.evaluate(observations, default_symbol)
        elif verdict:
            verdict = condition.evaluate(observations, default_symbol)
    return verdict


def evaluate_rule(rule: Any, observations: Mapping[ObservationKey, float]) -> RuleVerdict:
    """
    Evaluate a stored rule against observed values.

    Returns:
        RuleVerdict with the rule's actions when triggered

    Raises:
        RuleDefinitionError: If the rule's blobs are malformed
    """
    definition = load_rule_definition(rule)
    triggered = evaluate_conditions(definition.conditions, observations, definition.symbol)
    return RuleVerdict(triggered=triggered, actions=definition.actions if triggered else [])
