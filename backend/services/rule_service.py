"""
Rule Service.
CRUD and activation for user trading rules.
"""

import logging
from typing import Any, Iterable, List, Optional

from sqlalchemy.orm import Session

from engine.rules import RuleDefinition, encode_actions, encode_conditions, load_rule_definition
from storage.models import TradingRule, RuleStatusEnum
from storage.repositories import RuleRepository

logger = logging.getLogger(__name__)


class InvalidRuleError(ValueError):
    """Exception raised when a rule is missing required fields."""
    pass


class RuleService:
    """Service for managing trading rules."""

    def __init__(self, db: Optional[Session] = None, repository: Optional[RuleRepository] = None):
        if repository is not None:
            self.repository = repository
        elif db is not None:
            self.repository = RuleRepository(db)
        else:
            raise ValueError("RuleService needs a session or a repository")

    def create_rule(
        self,
        user_id: str,
        name: str,
        symbol: str,
        rule_type: str,
        conditions: Iterable[Any],
        actions: Iterable[Any],
        description: Optional[str] = None,
        is_ai_managed: bool = False,
        active: bool = True,
    ) -> TradingRule:
        """
        Create a rule. Conditions and actions may be models or plain dicts.

        Raises:
            InvalidRuleError: If user, name, symbol or rule type is blank
            RuleDefinitionError: If conditions or actions fail validation
        """
        for field_name, value in (("user id", user_id), ("name", name), ("symbol", symbol), ("rule type", rule_type)):
            if not value or not str(value).strip():
                raise InvalidRuleError(f"{field_name} is required")

        rule = TradingRule(
            user_id=user_id,
            name=name.strip(),
            description=description,
            symbol=symbol.strip(),
            rule_type=rule_type.strip(),
            conditions=encode_conditions(conditions),
            actions=encode_actions(actions),
            status=RuleStatusEnum.ACTIVE if active else RuleStatusEnum.INACTIVE,
            is_ai_managed=is_ai_managed,
            trigger_count=0,
        )
        created = self.repository.create(rule)
        logger.info("Created rule %s (%s) for user %s", created.id, created.name, user_id)
        return created

    def get_rule_by_id(self, rule_id: str) -> TradingRule:
        """Get a rule (RuleNotFoundError when missing)."""
        return self.repository.get_by_id(rule_id)

    def get_rules_by_user_id(self, user_id: str) -> List[TradingRule]:
        """Get every rule owned by a user."""
        return self.repository.get_by_user_id(user_id)

    def get_rule_definition(self, rule_id: str) -> RuleDefinition:
        """Get the decoded conditions and actions of a rule."""
        return load_rule_definition(self.repository.get_by_id(rule_id))

    def update_rule(self, rule: TradingRule) -> TradingRule:
        """
        Persist changes to a rule. The stored blobs are re-validated and
        re-encoded so a rule can never be saved with an undecodable definition.
        """
        definition = load_rule_definition(rule)
        rule.conditions = encode_conditions(definition.conditions)
        rule.actions = encode_actions(definition.actions)
        return self.repository.update(rule)

    def delete_rule(self, rule_id: str) -> None:
        """Delete a rule (RuleNotFoundError when missing)."""
        self.repository.delete(rule_id)
        logger.info("Deleted rule %s", rule_id)

    def activate_rule(self, rule_id: str) -> TradingRule:
        """Make a rule eligible for evaluation."""
        return self._set_status(rule_id, RuleStatusEnum.ACTIVE)

    def deactivate_rule(self, rule_id: str) -> TradingRule:
        """Stop evaluating a rule."""
        return self._set_status(rule_id, RuleStatusEnum.INACTIVE)

    def _set_status(self, rule_id: str, status: RuleStatusEnum) -> TradingRule:
        rule = self.repository.get_by_id(rule_id)
        rule.status = status
        updated = self.repository.update(rule)
        logger.info("Rule %s is now %s", rule_id, status.value)
        return updated
