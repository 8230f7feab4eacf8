"""Recipient resolution and delivery of retry, escalation and overdue messages."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import (
    ActionDispatcher,
    ContactDirectory,
    NullContactDirectory,
    RecipientResolver,
    ResolvedRecipient,
    RunContext,
    TemplateRef,
)
from .graph import (
    EscalationConfig,
    RecipientDetails,
    RetryMessageConfig,
    TemplateVariableMapping,
)
from .persistence.models import (
    ExecutionRun,
    NotificationRecord,
    ProcessVariable,
    StepExecution,
)
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

INITIATOR_TOKEN = "${initiator}"
DEFAULT_RETRY_MESSAGE = "Please reply as soon as possible."
DEFAULT_ESCALATION_MESSAGE = "A workflow step is still waiting for a reply."
DEFAULT_OVERDUE_MESSAGE = "A workflow run has passed its deadline."


class NotificationReason:
    PROMPT = "prompt"
    RETRY = "retry"
    ESCALATION = "escalation"
    OVERDUE = "overdue"


def _initiator(run: ExecutionRun) -> Optional[ResolvedRecipient]:
    if not run.initiated_by:
        return None
    return ResolvedRecipient(
        phone=run.initiated_by,
        name=f"Process initiator ({run.initiated_by})",
        source="initiator",
    )


def dedupe_recipients(recipients: Iterable[ResolvedRecipient]) -> list[ResolvedRecipient]:
    seen: set[str] = set()
    unique = []
    for recipient in recipients:
        phone = recipient.phone.strip()
        if not phone or phone in seen:
            continue
        seen.add(phone)
        unique.append(recipient)
    return unique


def retry_recipients(step: StepExecution, run: ExecutionRun) -> list[ResolvedRecipient]:
    """The waiting user when known, otherwise the run initiator."""
    if step.waiting_for_user:
        return [
            ResolvedRecipient(
                phone=step.waiting_for_user, name=step.waiting_for_user, source="waiting"
            )
        ]
    initiator = _initiator(run)
    return [initiator] if initiator else []


class DefaultRecipientResolver:
    """Resolve escalation recipients from designer selections.

    Structured ``recipientDetails`` win over the legacy comma separated
    ``recipients`` string. Numbers are deduplicated in first-seen order.
    """

    def __init__(self, directory: Optional[ContactDirectory] = None) -> None:
        self.directory = directory or NullContactDirectory()

    async def resolve(
        self, config: EscalationConfig, run: ExecutionRun
    ) -> list[ResolvedRecipient]:
        details = config.recipient_details
        if details is not None and not details.is_empty():
            recipients = await self._from_details(details, run)
        elif config.recipients.strip():
            recipients = self._from_string(config.recipients, run)
        else:
            logger.warning(f"No escalation recipients configured for run {run.id}")
            recipients = []
        return dedupe_recipients(recipients)

    async def _from_details(
        self, details: RecipientDetails, run: ExecutionRun
    ) -> list[ResolvedRecipient]:
        recipients: list[ResolvedRecipient] = []
        for user in details.users:
            phone = user.phone or await self.directory.user_phone(user.id) or ""
            if not phone:
                logger.warning(f"User {user.id} has no phone number, skipping")
                continue
            recipients.append(ResolvedRecipient(phone=phone, name=user.name, source="user"))
        for contact in details.contacts:
            phone = contact.phone or await self.directory.contact_phone(contact.id) or ""
            if not phone:
                logger.warning(f"Contact {contact.id} has no phone number, skipping")
                continue
            recipients.append(
                ResolvedRecipient(phone=phone, name=contact.name, source="contact")
            )
        for group_id in details.groups:
            recipients.extend(await self.directory.group_members(group_id))
        for hashtag in details.hashtags:
            recipients.extend(await self.directory.hashtag_members(hashtag))
        if details.use_initiator:
            initiator = _initiator(run)
            if initiator:
                recipients.append(initiator)
        for phone in details.phone_numbers:
            if phone == INITIATOR_TOKEN:
                if details.use_initiator:
                    continue
                initiator = _initiator(run)
                if initiator:
                    recipients.append(initiator)
                continue
            recipients.append(ResolvedRecipient(phone=phone, name=phone, source="phone"))
        return recipients

    def _from_string(self, value: str, run: ExecutionRun) -> list[ResolvedRecipient]:
        recipients = []
        for part in value.split(","):
            phone = part.strip()
            if not phone:
                continue
            if phone == INITIATOR_TOKEN:
                initiator = _initiator(run)
                if initiator:
                    recipients.append(initiator)
                continue
            recipients.append(ResolvedRecipient(phone=phone, name=phone, source="phone"))
        return recipients


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def resolve_template_params(
    mappings: Sequence[TemplateVariableMapping],
    run: ExecutionRun,
    variables: Sequence[ProcessVariable],
) -> dict[str, str]:
    """Map template parameters onto run input and process variable values.

    Stored process variables override run input of the same name. Each mapping
    is looked up by variable name first, then by variable id.
    """
    values = {str(k): _stringify(v) for k, v in (run.input_data or {}).items()}
    for variable in variables:
        values[variable.name] = _stringify(variable.value)

    params: dict[str, str] = {}
    for mapping in mappings:
        value = ""
        if mapping.process_variable_name:
            value = values.get(mapping.process_variable_name, "")
        if not value and mapping.process_variable_id:
            value = values.get(mapping.process_variable_id, "")
        if not value:
            logger.warning(
                f"Cannot map template variable {mapping.parameter_name or mapping.process_variable_name} "
                f"for run {run.id}"
            )
            continue
        name = (
            mapping.parameter_name
            or mapping.process_variable_name
            or mapping.process_variable_id
        )
        params[name] = value
    return params


class DeliveryOutcome(BaseModel):
    recipients: list[str] = Field(default_factory=list)
    sent_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)


async def deliver(
    dispatcher: ActionDispatcher,
    recipients: Sequence[ResolvedRecipient],
    config: Optional[RetryMessageConfig],
    params: dict[str, str],
    context: RunContext,
    default_message: str,
) -> DeliveryOutcome:
    """Send one message per recipient; a failure is counted, never raised."""
    outcome = DeliveryOutcome(recipients=[r.phone for r in recipients])
    use_template = bool(config and config.use_template and config.template_id)
    for recipient in recipients:
        try:
            if use_template:
                template = TemplateRef(
                    template_id=config.template_id,
                    template_name=config.template_name or None,
                    is_meta_template=config.is_meta_template,
                )
                ok = await dispatcher.send_template(
                    recipient.phone, template, params, context
                )
            else:
                message = (config.message if config else "") or default_message
                ok = await dispatcher.send_message(recipient.phone, message, context)
        except Exception as exc:
            logger.error(f"Sending {context.reason} to {recipient.phone} failed: {exc}")
            outcome.failed_count += 1
            outcome.errors.append(f"{recipient.phone}: {exc}")
            continue
        if ok:
            outcome.sent_count += 1
        else:
            logger.warning(f"Dispatcher rejected {context.reason} to {recipient.phone}")
            outcome.failed_count += 1
            outcome.errors.append(f"{recipient.phone}: rejected")
    return outcome


class Notifier:
    """Deliver monitor notifications and record their outcome."""

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: ActionDispatcher,
        resolver: RecipientResolver,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.resolver = resolver

    async def send_retry(
        self,
        step: StepExecution,
        run: ExecutionRun,
        config: Optional[RetryMessageConfig],
    ) -> NotificationRecord:
        recipients = retry_recipients(step, run)
        return await self._send(
            NotificationReason.RETRY, run, step, recipients, config, DEFAULT_RETRY_MESSAGE
        )

    async def send_escalation(
        self, step: StepExecution, run: ExecutionRun, config: EscalationConfig
    ) -> NotificationRecord:
        recipients = await self.resolver.resolve(config, run)
        return await self._send(
            NotificationReason.ESCALATION,
            run,
            step,
            recipients,
            config,
            DEFAULT_ESCALATION_MESSAGE,
        )

    async def send_overdue(
        self, run: ExecutionRun, config: Optional[EscalationConfig]
    ) -> NotificationRecord:
        recipients = await self.resolver.resolve(config, run) if config else []
        return await self._send(
            NotificationReason.OVERDUE, run, None, recipients, config, DEFAULT_OVERDUE_MESSAGE
        )

    async def _send(
        self,
        reason: str,
        run: ExecutionRun,
        step: Optional[StepExecution],
        recipients: Sequence[ResolvedRecipient],
        config: Optional[RetryMessageConfig],
        default_message: str,
    ) -> NotificationRecord:
        context = RunContext(
            run_id=run.id,
            step_id=step.id if step else None,
            node_id=step.node_id if step else None,
            initiated_by=run.initiated_by,
            reason=reason,
        )
        if not recipients:
            logger.warning(f"No recipients for {reason} on run {run.id}")
            outcome = DeliveryOutcome(errors=["no recipients"])
        else:
            params: dict[str, str] = {}
            if config and config.use_template:
                variables = await self.repository.list_variables(run.id)
                params = resolve_template_params(config.template_variables, run, variables)
            outcome = await deliver(
                self.dispatcher, recipients, config, params, context, default_message
            )
        record = NotificationRecord(
            run_id=run.id,
            step_id=step.id if step else None,
            reason=reason,
            recipients=outcome.recipients,
            sent_count=outcome.sent_count,
            failed_count=outcome.failed_count,
            error_message="; ".join(outcome.errors) or None,
        )
        await self.repository.add_notification(record)
        logger.info(
            f"{reason} for run {run.id}: sent {outcome.sent_count}, "
            f"failed {outcome.failed_count}"
        )
        return record
