"""Branch selection for ``switch`` nodes.

Conditions compare a run's typed process variable against a literal taken from
the graph. Evaluation never raises: errors are logged and count as ``False``,
and a failing group list falls back to the default path.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from .contracts import VariableStore
from .graph import Condition, ConditionGroup
from .persistence.models import ProcessVariable
from .variables import NUMERIC_TYPES, STRING_TYPES

logger = logging.getLogger(__name__)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    return None


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _typed(variable: ProcessVariable, literal: str) -> tuple[Any, Any]:
    """Return (variable value, literal) coerced to the variable's data type."""
    data_type = (variable.data_type or "string").lower()
    if data_type in NUMERIC_TYPES:
        return _to_decimal(variable.value), _to_decimal(literal)
    if data_type == "datetime":
        return _to_datetime(variable.value), _to_datetime(literal)
    if data_type == "boolean":
        return _to_bool(variable.value), _to_bool(literal)
    return _to_text(variable.value), literal


def _equals(variable: ProcessVariable, literal: str) -> bool:
    actual, expected = _typed(variable, literal)
    if actual is None or expected is None:
        return False
    return actual == expected


def _ordered(variable: ProcessVariable, literal: str, greater: bool) -> bool:
    data_type = (variable.data_type or "string").lower()
    if data_type not in NUMERIC_TYPES and data_type != "datetime":
        return False
    actual, expected = _typed(variable, literal)
    if actual is None or expected is None:
        return False
    return actual > expected if greater else actual < expected


def _contains(variable: ProcessVariable, literal: str) -> bool:
    if (variable.data_type or "string").lower() not in STRING_TYPES:
        return False
    text = _to_text(variable.value)
    return bool(text) and literal in text


def _is_empty(variable: ProcessVariable) -> bool:
    actual, _ = _typed(variable, "")
    return actual is None or actual == ""


class ConditionEvaluator:
    """Evaluate switch conditions against a :class:`VariableStore`."""

    def __init__(self, variables: VariableStore) -> None:
        self.variables = variables

    async def evaluate_condition(self, run_id: str, condition: Condition) -> bool:
        try:
            if not condition.variable_name:
                logger.warning(f"Variable name is empty for condition {condition.label!r}")
                return False
            variable = await self.variables.get(run_id, condition.variable_name)
            if variable is None:
                logger.warning(
                    f"Variable {condition.variable_name} not found for run {run_id}"
                )
                return False
            operator = condition.operator.lower()
            if operator == "equals":
                return _equals(variable, condition.value)
            if operator == "notequals":
                return not _equals(variable, condition.value)
            if operator == "greaterthan":
                return _ordered(variable, condition.value, greater=True)
            if operator == "lessthan":
                return _ordered(variable, condition.value, greater=False)
            if operator == "contains":
                return _contains(variable, condition.value)
            if operator == "isempty":
                return _is_empty(variable)
            if operator == "isnotempty":
                return not _is_empty(variable)
            logger.warning(f"Unknown operator {condition.operator!r}")
            return False
        except Exception:
            logger.exception(f"Error evaluating condition {condition.label!r}")
            return False

    async def evaluate_group(self, run_id: str, group: ConditionGroup) -> bool:
        try:
            if not group.conditions:
                logger.info(f"Condition group {group.id} has no conditions")
                return False
            if group.relation.lower() == "and":
                for condition in group.conditions:
                    if not await self.evaluate_condition(run_id, condition):
                        return False
                return True
            for condition in group.conditions:
                if await self.evaluate_condition(run_id, condition):
                    return True
            return False
        except Exception:
            logger.exception(f"Error evaluating condition group {group.id}")
            return False

    async def evaluate_groups(
        self, run_id: str, groups: Sequence[ConditionGroup], default_path: str
    ) -> str:
        """Return the output path of the first satisfied group, else ``default_path``."""
        try:
            for group in groups:
                if await self.evaluate_group(run_id, group):
                    logger.info(
                        f"Condition group {group.id} satisfied, using path {group.output_path}"
                    )
                    return group.output_path
        except Exception:
            logger.exception(f"Error evaluating condition groups for run {run_id}")
            return default_path
        logger.info(f"No condition group satisfied, using default path {default_path}")
        return default_path

    async def evaluate_conditions(
        self, run_id: str, conditions: Sequence[Condition], default_path: str
    ) -> str:
        """Flat condition list: the first satisfied condition's label is the path."""
        try:
            for condition in conditions:
                if await self.evaluate_condition(run_id, condition):
                    return condition.label
        except Exception:
            logger.exception(f"Error evaluating conditions for run {run_id}")
        return default_path
