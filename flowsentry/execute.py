"""Graph execution engine for flowsentry workflows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .conditions import ConditionEvaluator
from .contracts import ActionDispatcher, RunContext, TemplateRef, VariableStore
from .errors import (
    GraphTraversalError,
    NoWaitingStepError,
    RunFailedError,
    RunNotFoundError,
    StepConfigError,
)
from .graph import (
    CallApiData,
    DbQueryData,
    Edge,
    EndData,
    Node,
    NodeKind,
    SendFormData,
    SendMessageData,
    SendTemplateData,
    SIDE_EFFECT_TYPES,
    StartData,
    SwitchData,
    UnknownData,
    WaitReplyData,
    WorkflowGraph,
)
from .notify import INITIATOR_TOKEN, NotificationReason, resolve_template_params
from .persistence.models import (
    ExecutionRun,
    NotificationRecord,
    RunStatus,
    StepExecution,
    StepStatus,
    WorkflowDefinition,
)
from .persistence.repository import WorkflowRepository
from .utils.time import utcnow
from .variables import RepositoryVariableStore, to_storable

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    """Traversal bookkeeping for one execute or resume call."""

    run: ExecutionRun
    graph: WorkflowGraph
    start_id: str
    nodes: dict[str, Node]
    adjacency: dict[str, list[str]]
    edges: dict[str, Edge]
    next_index: int = 0
    visited: set[str] = field(default_factory=set)
    decisions: dict[str, Optional[str]] = field(default_factory=dict)
    completed_ends: set[str] = field(default_factory=set)
    waiting: set[str] = field(default_factory=set)
    failed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class GraphExecutor:
    """Walk a workflow graph, persisting one step per visited node.

    Sibling branches run as concurrent tasks. ``waitReply`` nodes park their
    branch and leave the run ``Waiting`` until :meth:`resume` is called. The
    run completes once every ``end`` node still reachable under the recorded
    switch decisions has completed.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: ActionDispatcher,
        variables: Optional[VariableStore] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.variables = variables or RepositoryVariableStore(repository)
        self.evaluator = evaluator or ConditionEvaluator(self.variables)

    # ------------------------------------------------------------------
    # Public API
    async def start(
        self,
        graph: WorkflowGraph,
        definition_id: Optional[str] = None,
        initiated_by: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        variable_types: Optional[Mapping[str, str]] = None,
        name: str = "",
    ) -> ExecutionRun:
        """Create a run for ``graph``, seed its variables and execute it."""
        if definition_id is None:
            definition = WorkflowDefinition(
                name=name, graph=graph.model_dump(mode="json", by_alias=True)
            )
            await self.repository.save_definition(definition)
            definition_id = definition.id
        variables = dict(variables or {})
        run = ExecutionRun(
            graph_ref=definition_id,
            initiated_by=initiated_by,
            input_data={k: to_storable(v) for k, v in variables.items()},
        )
        await self.repository.create_run(run)
        types = variable_types or {}
        for var_name, value in variables.items():
            await self.variables.set(run.id, var_name, value, types.get(var_name))
        logger.info(f"Started run {run.id} for definition {definition_id}")
        return await self.execute(run, graph)

    async def execute(self, run: ExecutionRun, graph: WorkflowGraph) -> ExecutionRun:
        """Traverse ``graph`` from its start node."""
        start = graph.start_node()
        if start is None:
            logger.warning(f"Run {run.id}: graph has no start node, nothing to do")
            return run
        state = await self._prepare(run, graph, start.id)
        await self._traverse(state, [start.id])
        return state.run

    async def resume(
        self, run_id: str, reply: Any = None, node_id: Optional[str] = None
    ) -> ExecutionRun:
        """Complete the waiting step of a run and continue after it."""
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        graph = await self._load_graph(run)
        steps = await self.repository.list_steps(run_id)
        waiting = [
            s
            for s in steps
            if s.status == StepStatus.WAITING
            and (node_id is None or s.node_id == node_id)
        ]
        if not waiting:
            raise NoWaitingStepError(f"Run {run_id} has no waiting step")
        if run.status == RunStatus.ERROR:
            raise RunFailedError(f"Run {run_id} ended in error: {run.error_message}")
        step = waiting[-1]
        step.status = StepStatus.COMPLETED
        step.ended_at = utcnow()
        step.output = {"reply": to_storable(reply)}
        await self.repository.save_step(step)
        logger.info(f"Run {run_id}: resumed at node {step.node_id}")

        run.status = RunStatus.RUNNING
        await self.repository.save_run_progress(run)
        start = graph.start_node()
        state = await self._prepare(run, graph, start.id if start else step.node_id)
        await self._traverse(state, state.adjacency.get(step.node_id, []))
        return state.run

    # ------------------------------------------------------------------
    # Traversal
    async def _load_graph(self, run: ExecutionRun) -> WorkflowGraph:
        definition = (
            await self.repository.get_definition(run.graph_ref) if run.graph_ref else None
        )
        if definition is None:
            raise RunNotFoundError(
                f"Workflow definition {run.graph_ref} for run {run.id} not found"
            )
        return definition.to_graph()

    async def _prepare(
        self, run: ExecutionRun, graph: WorkflowGraph, start_id: str
    ) -> _RunState:
        state = _RunState(
            run=run,
            graph=graph,
            start_id=start_id,
            nodes=graph.node_by_id(),
            adjacency=graph.adjacency(),
            edges=graph.edge_by_id(),
            failed=run.status == RunStatus.ERROR,
        )
        # a resumed run continues numbering and honours earlier visits
        for step in await self.repository.list_steps(run.id):
            state.next_index = max(state.next_index, step.step_index)
            state.visited.add(step.node_id)
            if step.status == StepStatus.WAITING:
                state.waiting.add(step.node_id)
            if step.node_type == NodeKind.SWITCH and step.output:
                state.decisions[step.node_id] = step.output.get("target")
            if step.node_type == NodeKind.END and step.status == StepStatus.COMPLETED:
                state.completed_ends.add(step.node_id)
        return state

    async def _traverse(self, state: _RunState, node_ids: list[str]) -> None:
        await self._visit_all(state, node_ids)
        async with state.lock:
            run = state.run
            if state.failed or run.status in (RunStatus.COMPLETED, RunStatus.ERROR):
                return
            if state.waiting:
                if run.status != RunStatus.WAITING:
                    run.status = RunStatus.WAITING
                    await self.repository.save_run_progress(run)
                return
            await self._check_join(state)

    async def _visit_all(self, state: _RunState, node_ids: list[str]) -> None:
        if not node_ids:
            return
        if len(node_ids) == 1:
            await self._visit(state, node_ids[0])
            return
        tasks = [asyncio.create_task(self._visit(state, node_id)) for node_id in node_ids]
        await asyncio.gather(*tasks)

    async def _visit(self, state: _RunState, node_id: str) -> None:
        node = state.nodes.get(node_id)
        if node is None:
            logger.warning(f"Run {state.run.id}: edge points to unknown node {node_id}")
            return
        async with state.lock:
            if state.failed or node_id in state.visited:
                return
            state.visited.add(node_id)
            state.next_index += 1
            index = state.next_index

        step = StepExecution(
            run_id=state.run.id,
            step_index=index,
            node_id=node.id,
            node_type=node.kind,
            task_name=node.data.task_name or node.data.label,
            status=StepStatus.RUNNING,
        )
        try:
            await self.repository.create_step(step)
            successors = await self._dispatch(state, node, step)
        except Exception as exc:
            await self._fail(state, node, step, exc)
            return
        await self._visit_all(state, successors)

    async def _dispatch(
        self, state: _RunState, node: Node, step: StepExecution
    ) -> list[str]:
        """Run one node; return the successors to visit next."""
        data = node.data
        successors = state.adjacency.get(node.id, [])

        if isinstance(data, StartData):
            await self._complete(step)
            return successors

        if isinstance(data, SIDE_EFFECT_TYPES):
            missing = data.missing_fields()
            if not missing and hasattr(data, "to") and not self._recipient(state, data.to):
                # ${initiator} on a run started without one
                missing = ["to"]
            if missing:
                error = StepConfigError(node.id, missing)
                logger.warning(f"Run {state.run.id}: {error}")
                await self._complete(step, {"skipped": True, "missing": missing})
                return successors
            ok = await self._perform(state, node, step)
            if not ok:
                logger.warning(f"Run {state.run.id}: {node.kind} at node {node.id} failed")
            await self._complete(step, {"success": ok})
            return successors

        if isinstance(data, WaitReplyData):
            await self._wait(state, data, step)
            return []

        if isinstance(data, SwitchData):
            target = await self._choose(state, node, data, step)
            return [target] if target else []

        if isinstance(data, EndData):
            await self._complete(step)
            async with state.lock:
                state.completed_ends.add(node.id)
                await self._check_join(state)
            return []

        if isinstance(data, UnknownData):
            logger.warning(
                f"Run {state.run.id}: unknown step type {node.type or data.type!r} at node {node.id}"
            )
            step.status = StepStatus.UNKNOWN_STEP_TYPE
            step.ended_at = utcnow()
            await self.repository.save_step(step)
            return successors

        raise GraphTraversalError(node.id, f"Unhandled node data {type(data).__name__}")

    async def _complete(
        self, step: StepExecution, output: Optional[dict] = None
    ) -> None:
        step.status = StepStatus.COMPLETED
        step.ended_at = utcnow()
        if output is not None:
            step.output = output
        await self.repository.save_step(step)

    def _context(self, state: _RunState, step: StepExecution) -> RunContext:
        return RunContext(
            run_id=state.run.id,
            step_id=step.id,
            node_id=step.node_id,
            initiated_by=state.run.initiated_by,
        )

    def _recipient(self, state: _RunState, to: Optional[str]) -> Optional[str]:
        if to and to.strip() == INITIATOR_TOKEN:
            return state.run.initiated_by
        return to

    async def _perform(self, state: _RunState, node: Node, step: StepExecution) -> bool:
        data = node.data
        context = self._context(state, step)
        if isinstance(data, SendMessageData):
            return await self.dispatcher.send_message(
                self._recipient(state, data.to), data.message, context
            )
        if isinstance(data, SendTemplateData):
            variables = await self.variables.all(state.run.id)
            params = resolve_template_params(data.template_variables, state.run, variables)
            template = TemplateRef(
                template_id=data.template_id,
                template_name=data.template_name,
                is_meta_template=data.is_meta_template,
            )
            return await self.dispatcher.send_template(
                self._recipient(state, data.to), template, params, context
            )
        if isinstance(data, SendFormData):
            return await self.dispatcher.send_form(
                self._recipient(state, data.to), data.form_name, context
            )
        if isinstance(data, (DbQueryData, CallApiData)):
            config = data.model_dump(mode="json", by_alias=True, exclude_none=True)
            return await self.dispatcher.call_external(config, context)
        raise GraphTraversalError(node.id, f"No action for node type {node.kind}")

    async def _wait(
        self, state: _RunState, data: WaitReplyData, step: StepExecution
    ) -> None:
        run = state.run
        validation = data.validation
        step.status = StepStatus.WAITING
        if validation is not None and validation.enabled:
            step.validation_config = validation.model_dump(mode="json", by_alias=True)
        step.waiting_for_user = self._recipient(state, data.to) or run.initiated_by
        await self.repository.save_step(step)
        async with state.lock:
            state.waiting.add(step.node_id)
            if not state.failed:
                run.status = RunStatus.WAITING
                run.current_step = step.step_index
                await self.repository.save_run_progress(run)
        logger.info(f"Run {run.id}: waiting for reply at node {step.node_id}")

        if data.message and step.waiting_for_user:
            context = self._context(state, step)
            context.reason = NotificationReason.PROMPT
            ok = await self.dispatcher.send_message(
                step.waiting_for_user, data.message, context
            )
            await self.repository.add_notification(
                NotificationRecord(
                    run_id=run.id,
                    step_id=step.id,
                    reason=NotificationReason.PROMPT,
                    recipients=[step.waiting_for_user],
                    sent_count=1 if ok else 0,
                    failed_count=0 if ok else 1,
                )
            )

    async def _choose(
        self, state: _RunState, node: Node, data: SwitchData, step: StepExecution
    ) -> Optional[str]:
        run_id = state.run.id
        if data.condition_groups:
            path = await self.evaluator.evaluate_groups(
                run_id, data.condition_groups, data.default_path
            )
        elif data.conditions:
            path = await self.evaluator.evaluate_conditions(
                run_id, data.conditions, data.default_path
            )
        else:
            path = data.default_path
        target = self._resolve_path(state, node.id, path)
        if target is None:
            logger.info(f"Run {run_id}: switch {node.id} took path {path!r}, branch ends")
        async with state.lock:
            state.decisions[node.id] = target
        await self._complete(step, {"path": path, "target": target})
        return target

    def _resolve_path(self, state: _RunState, node_id: str, path: str) -> Optional[str]:
        """Map a chosen path (edge id, else target node id) to a target node."""
        if not path:
            return None
        edge = state.edges.get(path)
        if edge is not None and edge.source == node_id:
            return edge.target
        for edge in state.graph.outgoing_edges(node_id):
            if edge.target == path:
                return edge.target
        return None

    async def _check_join(self, state: _RunState) -> None:
        """Complete the run once every required end node has completed.

        Caller must hold ``state.lock``.
        """
        run = state.run
        if state.failed or state.waiting:
            return
        if run.status in (RunStatus.COMPLETED, RunStatus.ERROR):
            return
        reachable = state.graph.reachable_from(state.start_id, state.decisions)
        required = {
            node_id
            for node_id in reachable
            if node_id in state.nodes and state.nodes[node_id].kind == NodeKind.END
        }
        if not required or not required <= state.completed_ends:
            return
        run.status = RunStatus.COMPLETED
        run.ended_at = utcnow()
        await self.repository.save_run_progress(run)
        logger.info(f"Run {run.id} completed ({len(required)} end nodes)")

    async def _fail(
        self, state: _RunState, node: Node, step: StepExecution, exc: Exception
    ) -> None:
        message = str(exc) or type(exc).__name__
        logger.exception(f"Run {state.run.id}: node {node.id} failed: {message}")
        now = utcnow()
        step.status = StepStatus.ERROR
        step.ended_at = now
        step.output = {"error": message}
        await self.repository.save_step(step)
        async with state.lock:
            state.failed = True
            run = state.run
            run.status = RunStatus.ERROR
            run.error_message = message
            run.ended_at = now
            await self.repository.save_run_progress(run)
