"""Tests for recipient resolution and notification delivery."""

import pytest

from flowsentry.contracts import ResolvedRecipient, RunContext, StaticContactDirectory
from flowsentry.graph import EscalationConfig, RetryMessageConfig, TemplateVariableMapping
from flowsentry.notify import (
    DefaultRecipientResolver,
    Notifier,
    deliver,
    resolve_template_params,
    retry_recipients,
)
from flowsentry.persistence import ExecutionRun, ProcessVariable, StepExecution


def _run(initiator="85291111111"):
    return ExecutionRun(id="run-1", initiated_by=initiator, input_data={"order": "A-17"})


@pytest.mark.asyncio
async def test_legacy_recipient_string():
    config = EscalationConfig(recipients=" 111, 222 ,,${initiator}, 111")
    resolved = await DefaultRecipientResolver().resolve(config, _run())
    assert [r.phone for r in resolved] == ["111", "222", "85291111111"]


@pytest.mark.asyncio
async def test_details_take_precedence_over_string():
    directory = StaticContactDirectory(
        users={"u1": "300"},
        contacts={"c1": "400"},
        groups={"g1": ["500", "300"]},
        hashtags={"vip": ["600"]},
    )
    config = EscalationConfig.model_validate(
        {
            "recipients": "999",
            "recipientDetails": {
                "users": [{"id": "u1", "name": "Manager"}, {"id": "u2", "name": "No phone"}],
                "contacts": [{"id": "c1", "name": "Supplier"}, {"id": "c9", "phone": "401"}],
                "groups": ["g1"],
                "hashtags": ["#vip"],
                "phoneNumbers": ["700", "${initiator}"],
            },
        }
    )
    resolved = await DefaultRecipientResolver(directory).resolve(config, _run())
    assert [r.phone for r in resolved] == ["300", "400", "401", "500", "600", "700", "85291111111"]
    assert resolved[0].source == "user"
    assert resolved[-1].source == "initiator"


@pytest.mark.asyncio
async def test_initiator_token_without_initiator_is_dropped():
    config = EscalationConfig(recipients="${initiator}")
    assert await DefaultRecipientResolver().resolve(config, _run(initiator=None)) == []


def test_retry_recipients_prefer_waiting_user():
    run = _run()
    step = StepExecution(run_id=run.id, waiting_for_user="555")
    assert [r.phone for r in retry_recipients(step, run)] == ["555"]
    step.waiting_for_user = None
    assert [r.phone for r in retry_recipients(step, run)] == ["85291111111"]
    assert retry_recipients(step, _run(initiator=None)) == []


def test_template_params_prefer_variables_over_input():
    run = _run()
    variables = [
        ProcessVariable(run_id=run.id, name="order", value="B-99"),
        ProcessVariable(run_id=run.id, name="paid", data_type="boolean", value=True),
    ]
    mappings = [
        TemplateVariableMapping(parameter_name="1", process_variable_name="order"),
        TemplateVariableMapping(process_variable_id="paid"),
        TemplateVariableMapping(parameter_name="3", process_variable_name="missing"),
    ]
    params = resolve_template_params(mappings, run, variables)
    assert params == {"1": "B-99", "paid": "true"}


@pytest.mark.asyncio
async def test_deliver_counts_failures(dispatcher):
    dispatcher.fail_for.add("2")
    dispatcher.reject_for.add("3")
    recipients = [ResolvedRecipient(phone=p) for p in ("1", "2", "3")]
    context = RunContext(run_id="run-1", reason="retry")
    outcome = await deliver(dispatcher, recipients, None, {}, context, "default text")

    assert outcome.sent_count == 1
    assert outcome.failed_count == 2
    assert dispatcher.calls[0][2] == "default text"


@pytest.mark.asyncio
async def test_deliver_uses_template_when_configured(dispatcher):
    config = RetryMessageConfig(use_template=True, template_id="reminder_v1")
    context = RunContext(run_id="run-1", reason="retry")
    await deliver(
        dispatcher, [ResolvedRecipient(phone="1")], config, {"1": "x"}, context, "unused"
    )
    assert dispatcher.calls[0][:3] == ("template", "1", ("reminder_v1", {"1": "x"}))


@pytest.mark.asyncio
async def test_notifier_records_outcome(repo, dispatcher):
    run = _run()
    await repo.create_run(run)
    step = StepExecution(run_id=run.id, node_id="ask", waiting_for_user="555")
    notifier = Notifier(repo, dispatcher, DefaultRecipientResolver())

    record = await notifier.send_retry(step, run, RetryMessageConfig(message="Nudge"))

    assert record.reason == "retry"
    assert record.recipients == ["555"]
    assert record.sent_count == 1
    context = dispatcher.calls[0][3]
    assert context.step_id == step.id
    assert context.node_id == "ask"
    stored = await repo.list_notifications(run.id)
    assert stored[0].id == record.id
