"""Typed process variables and the repository-backed variable store."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from .persistence.models import ProcessVariable
from .persistence.repository import WorkflowRepository

DATA_TYPES = ("string", "int", "decimal", "boolean", "datetime", "text", "json")
NUMERIC_TYPES = ("int", "decimal")
STRING_TYPES = ("string", "text", "json")


def infer_data_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "int"
    if isinstance(value, (float, Decimal)):
        return "decimal"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, (dict, list)):
        return "json"
    return "string"


def to_storable(value: Any) -> Any:
    """Convert a value into something a JSON column accepts."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def coerce_literal(raw: str, data_type: str) -> Any:
    """Convert text into the Python value for ``data_type``; raises ValueError."""
    if data_type == "int":
        return int(raw)
    if data_type == "decimal":
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ValueError(f"Invalid decimal {raw!r}") from None
    if data_type == "boolean":
        lowered = raw.strip().lower()
        if lowered not in ("true", "false"):
            raise ValueError(f"Invalid boolean {raw!r}")
        return lowered == "true"
    if data_type == "datetime":
        return datetime.fromisoformat(raw)
    if data_type == "json":
        return json.loads(raw)
    return raw


def parse_assignment(text: str) -> tuple[str, Any, str]:
    """Parse ``name=value`` or ``name:type=value`` into (name, value, type)."""
    if "=" not in text:
        raise ValueError(f"Expected name=value, got {text!r}")
    key, raw = text.split("=", 1)
    name, _, data_type = key.partition(":")
    name = name.strip()
    data_type = (data_type or "string").strip()
    if not name:
        raise ValueError(f"Missing variable name in {text!r}")
    if data_type not in DATA_TYPES:
        raise ValueError(f"Unknown data type {data_type!r} for {name}")
    return name, coerce_literal(raw, data_type), data_type


class RepositoryVariableStore:
    """:class:`~flowsentry.contracts.VariableStore` on top of a repository."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def get(self, run_id: str, name: str) -> Optional[ProcessVariable]:
        return await self.repository.get_variable(run_id, name)

    async def set(
        self, run_id: str, name: str, value: Any, data_type: Optional[str] = None
    ) -> ProcessVariable:
        data_type = data_type or infer_data_type(value)
        return await self.repository.set_variable(
            run_id, name, to_storable(value), data_type
        )

    async def all(self, run_id: str) -> list[ProcessVariable]:
        return await self.repository.list_variables(run_id)
