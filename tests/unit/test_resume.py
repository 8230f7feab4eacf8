"""Tests for resuming runs parked at a waitReply node."""

import pytest

from flowsentry.errors import NoWaitingStepError, RunFailedError, RunNotFoundError
from flowsentry.execute import GraphExecutor
from flowsentry.persistence import ExecutionRun, RunStatus, StepStatus


@pytest.mark.asyncio
async def test_resume_continues_after_reply(repo, dispatcher, load_graph):
    executor = GraphExecutor(repo, dispatcher)
    run = await executor.start(load_graph("approval"), initiated_by="85291111111")
    assert run.status == RunStatus.WAITING

    resumed = await executor.resume(run.id, reply="yes")

    assert resumed.status == RunStatus.COMPLETED
    steps = await repo.list_steps(run.id)
    assert [s.node_id for s in steps] == ["start", "ask", "confirm", "end"]
    assert [s.step_index for s in steps] == [1, 2, 3, 4]
    ask = steps[1]
    assert ask.status == StepStatus.COMPLETED
    assert ask.output == {"reply": "yes"}
    # the confirmation goes to the initiator
    assert dispatcher.recipients()[-1] == "85291111111"


@pytest.mark.asyncio
async def test_resume_does_not_revisit_earlier_nodes(repo, dispatcher, load_graph):
    executor = GraphExecutor(repo, dispatcher)
    run = await executor.start(load_graph("approval"), initiated_by="85291111111")
    await executor.resume(run.id, reply="ok")

    with pytest.raises(NoWaitingStepError):
        await executor.resume(run.id, reply="again")
    steps = await repo.list_steps(run.id)
    assert [s.node_id for s in steps].count("start") == 1


@pytest.mark.asyncio
async def test_resume_unknown_run(repo, dispatcher):
    executor = GraphExecutor(repo, dispatcher)
    with pytest.raises(RunNotFoundError):
        await executor.resume("missing")


@pytest.mark.asyncio
async def test_resume_run_without_definition(repo, dispatcher):
    run = ExecutionRun(graph_ref="gone")
    await repo.create_run(run)
    executor = GraphExecutor(repo, dispatcher)
    with pytest.raises(RunNotFoundError):
        await executor.resume(run.id)


@pytest.mark.asyncio
async def test_resume_with_node_filter(repo, dispatcher, load_graph):
    executor = GraphExecutor(repo, dispatcher)
    run = await executor.start(load_graph("approval"))
    with pytest.raises(NoWaitingStepError):
        await executor.resume(run.id, node_id="confirm")
    resumed = await executor.resume(run.id, node_id="ask")
    assert resumed.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_refuses_failed_run(repo, dispatcher, load_graph):
    executor = GraphExecutor(repo, dispatcher)
    run = await executor.start(load_graph("approval"), initiated_by="85291111111")
    run.status = RunStatus.ERROR
    run.error_message = "dispatcher offline"
    await repo.save_run_progress(run)

    with pytest.raises(RunFailedError):
        await executor.resume(run.id, reply="yes")

    ask = [s for s in await repo.list_steps(run.id) if s.node_id == "ask"][0]
    assert ask.status == StepStatus.WAITING
    assert ask.output is None
    assert [s.node_id for s in await repo.list_steps(run.id)] == ["start", "ask"]
    assert (await repo.get_run(run.id)).status == RunStatus.ERROR
