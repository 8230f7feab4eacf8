import asyncio
from pathlib import Path

import pytest

from flowsentry.graph import WorkflowGraph
from flowsentry.persistence import InMemoryWorkflowRepository

GRAPHS_DIR = Path(__file__).parent / "fixtures" / "graphs"


class RecordingDispatcher:
    """Dispatcher double that records every call.

    ``gates`` maps a recipient to an event the send waits on, ``fail_for``
    lists recipients whose sends raise and ``reject_for`` those that return
    ``False``.
    """

    def __init__(self):
        self.calls = []
        self.gates = {}
        self.fail_for = set()
        self.reject_for = set()

    async def _deliver(self, kind, recipient, payload, context):
        gate = self.gates.get(recipient)
        if gate is not None:
            await gate.wait()
        if recipient in self.fail_for:
            raise RuntimeError(f"boom sending to {recipient}")
        self.calls.append((kind, recipient, payload, context))
        return recipient not in self.reject_for

    async def send_message(self, recipient, content, context):
        return await self._deliver("message", recipient, content, context)

    async def send_template(self, recipient, template, variables, context):
        return await self._deliver(
            "template", recipient, (template.template_id, variables), context
        )

    async def send_form(self, recipient, form_name, context):
        return await self._deliver("form", recipient, form_name, context)

    async def call_external(self, config, context):
        self.calls.append(("external", config.get("type"), config, context))
        return True

    def recipients(self, kind="message"):
        return [call[1] for call in self.calls if call[0] == kind]

    def reasons(self):
        return [call[3].reason for call in self.calls]


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def load_graph():
    def _load(name):
        return WorkflowGraph.from_json((GRAPHS_DIR / f"{name}.json").read_text())

    return _load


async def wait_until(predicate, attempts=200):
    """Yield to the loop until ``predicate`` (a coroutine function) is true."""
    for _ in range(attempts):
        if await predicate():
            return True
        await asyncio.sleep(0)
    return False


@pytest.fixture
def until():
    return wait_until
