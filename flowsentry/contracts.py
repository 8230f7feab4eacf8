"""Contracts between the engine and its host application."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel

from .graph import EscalationConfig
from .persistence.models import (
    ExecutionRun,
    ImportSchedule,
    ProcessVariable,
    SyncResource,
)

logger = logging.getLogger(__name__)


class RunContext(BaseModel):
    """Where an action originates: passed with every dispatcher call."""

    run_id: str
    step_id: Optional[str] = None
    node_id: Optional[str] = None
    initiated_by: Optional[str] = None
    reason: Optional[str] = None


class TemplateRef(BaseModel):
    template_id: str
    template_name: Optional[str] = None
    is_meta_template: bool = False


class ResolvedRecipient(BaseModel):
    """Concrete addressable target produced by a :class:`RecipientResolver`."""

    phone: str
    name: str = ""
    source: str = ""


class SyncResult(BaseModel):
    total_records: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    records_skipped: int = 0


class ImportResult(BaseModel):
    total_records: int = 0
    success_count: int = 0
    failed_count: int = 0
    error_message: Optional[str] = None


SyncStrategy = Callable[[SyncResource], Awaitable[SyncResult]]
"""Synchronises one resource; raises on failure."""

Importer = Callable[[ImportSchedule], Awaitable[ImportResult]]
"""Runs one scheduled import; raises on failure."""


class ActionDispatcher(Protocol):
    """Performs node side effects. Every method reports success as a bool."""

    async def send_message(
        self, recipient: str, content: str, context: RunContext
    ) -> bool:
        """Deliver a plain text message."""

    async def send_template(
        self,
        recipient: str,
        template: TemplateRef,
        variables: Dict[str, str],
        context: RunContext,
    ) -> bool:
        """Deliver a template message with resolved parameters."""

    async def send_form(
        self, recipient: str, form_name: str, context: RunContext
    ) -> bool:
        """Deliver a form link."""

    async def call_external(self, config: Dict[str, Any], context: RunContext) -> bool:
        """Run a database query or API call described by ``config``."""


class VariableStore(Protocol):
    """Typed key/value store scoped to a run."""

    async def get(self, run_id: str, name: str) -> Optional[ProcessVariable]:
        """Return the named variable or ``None``."""

    async def set(
        self, run_id: str, name: str, value: Any, data_type: Optional[str] = None
    ) -> ProcessVariable:
        """Store a value, inferring the data type when not given."""

    async def all(self, run_id: str) -> list[ProcessVariable]:
        """Return every variable of the run."""


class ContactDirectory(Protocol):
    """Lookups used to expand abstract recipients into phone numbers."""

    async def user_phone(self, user_id: str) -> Optional[str]:
        """Return the phone number of an internal user."""

    async def contact_phone(self, contact_id: str) -> Optional[str]:
        """Return the phone number of a contact."""

    async def group_members(self, group_id: str) -> list[ResolvedRecipient]:
        """Return the contacts in a group."""

    async def hashtag_members(self, hashtag: str) -> list[ResolvedRecipient]:
        """Return the contacts tagged with ``hashtag``."""


class RecipientResolver(Protocol):
    async def resolve(
        self, config: EscalationConfig, run: ExecutionRun
    ) -> list[ResolvedRecipient]:
        """Expand an escalation configuration into concrete recipients."""


class LoggingActionDispatcher:
    """Dispatcher that only logs; used when no delivery backend is configured."""

    async def send_message(
        self, recipient: str, content: str, context: RunContext
    ) -> bool:
        logger.info(f"[{context.run_id}] message to {recipient}: {content}")
        return True

    async def send_template(
        self,
        recipient: str,
        template: TemplateRef,
        variables: Dict[str, str],
        context: RunContext,
    ) -> bool:
        logger.info(
            f"[{context.run_id}] template {template.template_id} to {recipient} "
            f"with {variables}"
        )
        return True

    async def send_form(
        self, recipient: str, form_name: str, context: RunContext
    ) -> bool:
        logger.info(f"[{context.run_id}] form {form_name} to {recipient}")
        return True

    async def call_external(self, config: Dict[str, Any], context: RunContext) -> bool:
        logger.info(f"[{context.run_id}] external call {config.get('type')}: {config}")
        return True


class NullContactDirectory:
    """Directory with no entries: only literal phone numbers resolve."""

    async def user_phone(self, user_id: str) -> Optional[str]:
        return None

    async def contact_phone(self, contact_id: str) -> Optional[str]:
        return None

    async def group_members(self, group_id: str) -> list[ResolvedRecipient]:
        return []

    async def hashtag_members(self, hashtag: str) -> list[ResolvedRecipient]:
        return []


class StaticContactDirectory:
    """Directory backed by in-memory mappings, loaded from configuration or tests."""

    def __init__(
        self,
        users: Optional[Dict[str, str]] = None,
        contacts: Optional[Dict[str, str]] = None,
        groups: Optional[Dict[str, list[str]]] = None,
        hashtags: Optional[Dict[str, list[str]]] = None,
    ) -> None:
        self.users = users or {}
        self.contacts = contacts or {}
        self.groups = groups or {}
        self.hashtags = hashtags or {}

    async def user_phone(self, user_id: str) -> Optional[str]:
        return self.users.get(user_id)

    async def contact_phone(self, contact_id: str) -> Optional[str]:
        return self.contacts.get(contact_id)

    async def group_members(self, group_id: str) -> list[ResolvedRecipient]:
        return [
            ResolvedRecipient(phone=phone, source="group")
            for phone in self.groups.get(group_id, [])
        ]

    async def hashtag_members(self, hashtag: str) -> list[ResolvedRecipient]:
        return [
            ResolvedRecipient(phone=phone, source="hashtag")
            for phone in self.hashtags.get(hashtag.lstrip("#"), [])
        ]
