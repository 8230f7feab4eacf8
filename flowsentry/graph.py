"""Workflow graph model: nodes, edges and per-node configuration.

Graphs arrive as designer JSON (camelCase keys, loosely typed). Parsing is
permissive: unknown keys are ignored and absent fields default to disabled or
empty. Node ``data`` is a closed tagged union keyed by node type; anything the
engine does not recognise becomes :class:`UnknownData`.
"""

from __future__ import annotations

from collections import deque
from typing import Annotated, Any, ClassVar, Iterable, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import GraphValidationError
from .utils.time import total_minutes


class NodeKind:
    START = "start"
    SEND_MESSAGE = "sendMessage"
    SEND_TEMPLATE = "sendTemplate"
    SEND_FORM = "sendForm"
    DB_QUERY = "dbQuery"
    CALL_API = "callApi"
    WAIT_REPLY = "waitReply"
    SWITCH = "switch"
    END = "end"
    UNKNOWN = "unknown"


KNOWN_NODE_TYPES = frozenset(
    {
        NodeKind.START,
        NodeKind.SEND_MESSAGE,
        NodeKind.SEND_TEMPLATE,
        NodeKind.SEND_FORM,
        NodeKind.DB_QUERY,
        NodeKind.CALL_API,
        NodeKind.WAIT_REPLY,
        NodeKind.SWITCH,
        NodeKind.END,
    }
)

# Names emitted by older versions of the workflow designer.
NODE_TYPE_ALIASES = {
    "sendWhatsApp": NodeKind.SEND_MESSAGE,
    "sendWhatsAppTemplate": NodeKind.SEND_TEMPLATE,
    "waitForUserReply": NodeKind.WAIT_REPLY,
    "sendEForm": NodeKind.SEND_FORM,
    "sendeform": NodeKind.SEND_FORM,
}


class GraphModel(BaseModel):
    """Base for designer JSON models: camelCase aliases, extra keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


def _as_str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return value


# ---------------------------------------------------------------------------
# Recipients and message configuration


class RecipientEntry(GraphModel):
    id: str = ""
    name: str = ""
    phone: str = ""

    @field_validator("id", "phone", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        return "" if value is None else str(value)


class RecipientDetails(GraphModel):
    """Abstract recipient selection made in the designer."""

    users: list[RecipientEntry] = Field(default_factory=list)
    contacts: list[RecipientEntry] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)
    use_initiator: bool = False
    phone_numbers: list[str] = Field(default_factory=list)

    @field_validator("groups", "hashtags", "phone_numbers", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> Any:
        return _as_str_list(value)

    def is_empty(self) -> bool:
        return not (
            self.users
            or self.contacts
            or self.groups
            or self.hashtags
            or self.use_initiator
            or self.phone_numbers
        )


class TemplateVariableMapping(GraphModel):
    parameter_name: str = ""
    process_variable_id: str = ""
    process_variable_name: str = ""


class RetryMessageConfig(GraphModel):
    use_template: bool = False
    message: str = ""
    template_id: str = ""
    template_name: str = ""
    is_meta_template: bool = False
    template_variables: list[TemplateVariableMapping] = Field(default_factory=list)


class EscalationConfig(RetryMessageConfig):
    recipients: str = ""
    recipient_details: Optional[RecipientDetails] = None


class ValidationConfig(GraphModel):
    """Reply validation attached to a ``waitReply`` node."""

    enabled: bool = False
    validator_type: Optional[str] = None
    retry_interval_days: Optional[int] = None
    retry_interval_hours: Optional[int] = None
    retry_interval_minutes: Optional[int] = None
    retry_limit: Optional[int] = Field(default=None, ge=0)
    retry_message_config: Optional[RetryMessageConfig] = None
    escalation_config: Optional[EscalationConfig] = None

    @property
    def is_time_based(self) -> bool:
        return (self.validator_type or "").lower() == "time"

    @property
    def retry_interval_total_minutes(self) -> int:
        return total_minutes(
            self.retry_interval_days,
            self.retry_interval_hours,
            self.retry_interval_minutes,
        )


class OverdueConfig(GraphModel):
    """Run-level deadline attached to the ``start`` node."""

    enabled: bool = False
    days: Optional[int] = None
    hours: Optional[int] = None
    minutes: Optional[int] = None
    escalation_config: Optional[EscalationConfig] = None

    @property
    def threshold_minutes(self) -> int:
        return total_minutes(self.days, self.hours, self.minutes)


class Condition(GraphModel):
    id: str = ""
    variable_name: str = ""
    operator: str = ""
    value: str = ""
    label: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        return value


class ConditionGroup(GraphModel):
    id: str = ""
    relation: str = "and"
    conditions: list[Condition] = Field(default_factory=list)
    output_path: str = ""


# ---------------------------------------------------------------------------
# Node data variants


class NodeData(GraphModel):
    type: str
    task_name: Optional[str] = None
    label: Optional[str] = None

    required_fields: ClassVar[tuple[str, ...]] = ()

    def missing_fields(self) -> list[str]:
        """Return the aliases of required fields that are empty."""
        missing = []
        for name in self.required_fields:
            if not getattr(self, name):
                missing.append(type(self).model_fields[name].alias or name)
        return missing


class StartData(NodeData):
    type: Literal["start"] = NodeKind.START
    overdue_config: Optional[OverdueConfig] = None


class SendMessageData(NodeData):
    type: Literal["sendMessage"] = NodeKind.SEND_MESSAGE
    to: Optional[str] = None
    message: Optional[str] = None

    required_fields: ClassVar[tuple[str, ...]] = ("to", "message")


class SendTemplateData(NodeData):
    type: Literal["sendTemplate"] = NodeKind.SEND_TEMPLATE
    to: Optional[str] = None
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    is_meta_template: bool = False
    template_variables: list[TemplateVariableMapping] = Field(default_factory=list)

    required_fields: ClassVar[tuple[str, ...]] = ("to", "template_id")


class SendFormData(NodeData):
    type: Literal["sendForm"] = NodeKind.SEND_FORM
    to: Optional[str] = None
    form_name: Optional[str] = None
    form_id: Optional[str] = None

    required_fields: ClassVar[tuple[str, ...]] = ("to", "form_name")


class DbQueryData(NodeData):
    type: Literal["dbQuery"] = NodeKind.DB_QUERY
    sql: Optional[str] = None

    required_fields: ClassVar[tuple[str, ...]] = ("sql",)


class CallApiData(NodeData):
    type: Literal["callApi"] = NodeKind.CALL_API
    url: Optional[str] = None
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None

    required_fields: ClassVar[tuple[str, ...]] = ("url",)


class WaitReplyData(NodeData):
    type: Literal["waitReply"] = NodeKind.WAIT_REPLY
    to: Optional[str] = None
    message: Optional[str] = None
    reply_type: Optional[str] = None
    validation: Optional[ValidationConfig] = None


class SwitchData(NodeData):
    type: Literal["switch"] = NodeKind.SWITCH
    condition_groups: list[ConditionGroup] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    default_path: str = "default"


class EndData(NodeData):
    type: Literal["end"] = NodeKind.END


class UnknownData(NodeData):
    type: str = ""


SIDE_EFFECT_TYPES = (
    SendMessageData,
    SendTemplateData,
    SendFormData,
    DbQueryData,
    CallApiData,
)


def _node_kind(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in KNOWN_NODE_TYPES else NodeKind.UNKNOWN


AnyNodeData = Annotated[
    Union[
        Annotated[StartData, Tag(NodeKind.START)],
        Annotated[SendMessageData, Tag(NodeKind.SEND_MESSAGE)],
        Annotated[SendTemplateData, Tag(NodeKind.SEND_TEMPLATE)],
        Annotated[SendFormData, Tag(NodeKind.SEND_FORM)],
        Annotated[DbQueryData, Tag(NodeKind.DB_QUERY)],
        Annotated[CallApiData, Tag(NodeKind.CALL_API)],
        Annotated[WaitReplyData, Tag(NodeKind.WAIT_REPLY)],
        Annotated[SwitchData, Tag(NodeKind.SWITCH)],
        Annotated[EndData, Tag(NodeKind.END)],
        Annotated[UnknownData, Tag(NodeKind.UNKNOWN)],
    ],
    Discriminator(_node_kind),
]


class Node(GraphModel):
    id: str
    type: Optional[str] = None
    data: AnyNodeData

    @model_validator(mode="before")
    @classmethod
    def _resolve_data_type(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        value = dict(value)
        raw = value.get("data")
        if not isinstance(raw, dict):
            # no data at all: nothing to dispatch on
            value["data"] = {"type": ""}
            return value
        data = dict(raw)
        kind = data.get("type") or value.get("type") or ""
        data["type"] = NODE_TYPE_ALIASES.get(kind, kind)
        value["data"] = data
        return value

    @property
    def kind(self) -> str:
        if isinstance(self.data, UnknownData):
            return NodeKind.UNKNOWN
        return self.data.type


class Edge(GraphModel):
    id: str = ""
    source: str
    target: str

    @model_validator(mode="after")
    def _default_id(self) -> "Edge":
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self


class WorkflowGraph(GraphModel):
    """Immutable description of a workflow: nodes plus directed edges."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    @field_validator("nodes", "edges", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @classmethod
    def from_json(cls, data: str | bytes) -> "WorkflowGraph":
        return cls.model_validate_json(data)

    def node_by_id(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def edge_by_id(self) -> dict[str, Edge]:
        return {edge.id: edge for edge in self.edges}

    def adjacency(self) -> dict[str, list[str]]:
        """Map each source node to its targets, in edge declaration order."""
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)
        return adjacency

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def start_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.kind == NodeKind.START]

    def end_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.kind == NodeKind.END]

    def start_node(self) -> Optional[Node]:
        starts = self.start_nodes()
        return starts[0] if starts else None

    def reachable_from(
        self,
        node_id: str,
        decisions: Mapping[str, Optional[str]] | None = None,
    ) -> set[str]:
        """Return node ids reachable from ``node_id`` (inclusive).

        ``decisions`` maps a switch node id to the single target it selected
        (``None`` when it selected no edge); such nodes only expand along
        their decision.
        """
        decisions = decisions or {}
        adjacency = self.adjacency()
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            if current in decisions:
                chosen = decisions[current]
                targets: Iterable[str] = [chosen] if chosen else []
            else:
                targets = adjacency.get(current, [])
            for target in targets:
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return seen

    def validate_structure(self) -> list[str]:
        """Return a list of structural problems; empty when the graph is valid."""
        problems: list[str] = []
        nodes = self.node_by_id()
        starts = self.start_nodes()
        if len(starts) != 1:
            problems.append(f"expected exactly one start node, found {len(starts)}")
        if not self.end_nodes():
            problems.append("graph has no end node")
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in nodes:
                    problems.append(f"edge {edge.id} references unknown node {endpoint}")
        if len(starts) == 1:
            reachable = self.reachable_from(starts[0].id)
            unreachable = sorted(set(nodes) - reachable)
            if unreachable:
                problems.append(
                    f"nodes unreachable from start: {', '.join(unreachable)}"
                )
        if self._has_cycle():
            problems.append("graph contains a cycle")
        return problems

    def ensure_valid(self) -> None:
        problems = self.validate_structure()
        if problems:
            raise GraphValidationError(problems)

    def _has_cycle(self) -> bool:
        adjacency = self.adjacency()
        indegree = {node.id: 0 for node in self.nodes}
        for targets in adjacency.values():
            for target in targets:
                if target in indegree:
                    indegree[target] += 1
        queue = deque(node_id for node_id, deg in indegree.items() if deg == 0)
        visited = 0
        while queue:
            current = queue.popleft()
            visited += 1
            for target in adjacency.get(current, []):
                if target not in indegree:
                    continue
                indegree[target] -= 1
                if indegree[target] == 0:
                    queue.append(target)
        return visited != len(indegree)
