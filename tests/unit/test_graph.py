"""Tests for parsing and inspecting workflow graphs."""

import pytest

from flowsentry.errors import GraphValidationError
from flowsentry.graph import (
    NodeKind,
    SendMessageData,
    UnknownData,
    WaitReplyData,
    WorkflowGraph,
)


def test_parses_designer_json_with_aliases(load_graph):
    graph = load_graph("approval")
    nodes = graph.node_by_id()

    ask = nodes["ask"]
    assert ask.kind == NodeKind.WAIT_REPLY
    assert isinstance(ask.data, WaitReplyData)
    assert ask.data.task_name == "Ask manager"
    validation = ask.data.validation
    assert validation.is_time_based
    assert validation.retry_interval_total_minutes == 10
    assert validation.retry_limit == 3
    assert validation.escalation_config.recipient_details.phone_numbers == [
        "85290000999",
        "${initiator}",
    ]

    overdue = nodes["start"].data.overdue_config
    assert overdue.enabled
    assert overdue.threshold_minutes == 60


def test_unknown_and_missing_data_become_unknown_nodes():
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                {"id": "a", "type": "fancyWidget", "data": {"type": "fancyWidget"}},
                {"id": "b", "type": "sendMessage"},
                {"id": "c", "type": "sendMessage", "data": {"to": "1", "message": "hi"}},
            ],
            "edges": None,
        }
    )
    nodes = graph.node_by_id()
    assert isinstance(nodes["a"].data, UnknownData)
    assert nodes["a"].kind == NodeKind.UNKNOWN
    assert nodes["b"].kind == NodeKind.UNKNOWN
    # the node level type fills in for a missing data type
    assert isinstance(nodes["c"].data, SendMessageData)
    assert graph.edges == []


def test_missing_fields_reports_aliases():
    data = SendMessageData(message="hello")
    assert data.missing_fields() == ["to"]
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                {"id": "t", "data": {"type": "sendTemplate", "to": "1"}},
            ]
        }
    )
    assert graph.nodes[0].data.missing_fields() == ["templateId"]


def test_edges_get_default_ids(load_graph):
    graph = load_graph("switch")
    ids = [edge.id for edge in graph.edges]
    assert "to-review" in ids
    assert "start->route" in ids


def test_reachable_from_honours_switch_decisions(load_graph):
    graph = load_graph("switch")
    everything = graph.reachable_from("start")
    assert {"review", "auto", "end-review", "end-auto"} <= everything

    chosen = graph.reachable_from("start", {"route": "auto"})
    assert "end-auto" in chosen
    assert "end-review" not in chosen

    dead_end = graph.reachable_from("start", {"route": None})
    assert dead_end == {"start", "route"}


def test_validate_structure_accepts_fixture_graphs(load_graph):
    for name in ("linear", "parallel", "diamond", "approval", "switch"):
        assert load_graph(name).validate_structure() == [], name


def test_validate_structure_reports_problems():
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                {"id": "s1", "data": {"type": "start"}},
                {"id": "s2", "data": {"type": "start"}},
                {"id": "x", "data": {"type": "sendMessage", "to": "1", "message": "m"}},
                {"id": "y", "data": {"type": "sendMessage", "to": "1", "message": "m"}},
            ],
            "edges": [
                {"source": "x", "target": "y"},
                {"source": "y", "target": "x"},
                {"source": "s1", "target": "ghost"},
            ],
        }
    )
    problems = graph.validate_structure()
    joined = "\n".join(problems)
    assert "exactly one start node, found 2" in joined
    assert "no end node" in joined
    assert "unknown node ghost" in joined
    assert "cycle" in joined

    with pytest.raises(GraphValidationError) as exc_info:
        graph.ensure_valid()
    assert exc_info.value.problems == problems


def test_unreachable_nodes_are_reported():
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                {"id": "start", "data": {"type": "start"}},
                {"id": "end", "data": {"type": "end"}},
                {"id": "island", "data": {"type": "end"}},
            ],
            "edges": [{"source": "start", "target": "end"}],
        }
    )
    assert graph.validate_structure() == ["nodes unreachable from start: island"]


def test_round_trips_through_definition_json(load_graph):
    graph = load_graph("approval")
    dumped = graph.model_dump(mode="json", by_alias=True)
    assert dumped["nodes"][1]["data"]["taskName"] == "Ask manager"
    again = WorkflowGraph.model_validate(dumped)
    assert again.node_by_id()["ask"].data.validation.retry_limit == 3
