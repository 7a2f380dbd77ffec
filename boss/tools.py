from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, List, Literal, Optional, Tuple, get_args

from .errors import InvalidArguments
from .ir import ToolCall


ToolName = Literal[
    "assistant.help",
    "core.summarize",
    "assistant.answer",
    "skills.catalog",
    "record.search",
    "record.create",
    "task.run",
    "skill.run",
    "record.delete",
    "record.append",
    "record.replace",
]

TOOL_NAMES: Tuple[str, ...] = get_args(ToolName)

# Calls that change stored records or run user-defined actions.
MUTATING_TOOLS = frozenset({"record.create", "record.delete", "record.append", "record.replace", "task.run", "skill.run"})
# Calls that answer the user directly from context.
RESPONSE_TOOLS = frozenset({"assistant.answer", "assistant.help", "core.summarize", "skills.catalog"})


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ToolSpec:
    """
    Static description of one callable assistant tool.

    `required_arguments` must all be present and non-empty on a ToolCall before
    it is executed; `optional_arguments` are only advertised to the planner.
    """

    name: str
    description: str
    required_arguments: Tuple[str, ...] = ()
    optional_arguments: Tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.LOW

    def __post_init__(self) -> None:
        if self.name not in TOOL_NAMES:
            raise ValueError(f"ToolSpec.name must be one of {TOOL_NAMES}; got {self.name!r}")
        if set(self.required_arguments) & set(self.optional_arguments):
            raise ValueError(f"ToolSpec {self.name}: argument listed as both required and optional")

    def missing_arguments(self, call: ToolCall) -> List[str]:
        return [k for k in self.required_arguments if not call.arg(k)]

    def to_prompt_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "required_arguments": list(self.required_arguments),
            "optional_arguments": list(self.optional_arguments),
            "risk": self.risk_level.value,
        }


TOOL_SPECS: Tuple[ToolSpec, ...] = (
    ToolSpec("assistant.help", "Show what the assistant can do."),
    ToolSpec("core.summarize", "Summarize the long-term Core memory."),
    ToolSpec("assistant.answer", "Answer a question grounded in Core memory and recent audit logs.", ("question",)),
    ToolSpec("skills.catalog", "Show the skill manifest and base interfaces."),
    ToolSpec("record.search", "Full-text search over records.", ("query",)),
    ToolSpec("record.create", "Create a new text record.", ("content",), ("filename",)),
    ToolSpec("task.run", "Run a stored task by id or name.", ("task_ref",), risk_level=RiskLevel.HIGH),
    ToolSpec("skill.run", "Run an assistant skill by id or name.", ("skill_ref",), ("input",), RiskLevel.MEDIUM),
    ToolSpec("record.delete", "Delete a record. Irreversible.", ("record_id",), risk_level=RiskLevel.HIGH),
    ToolSpec("record.append", "Append text to a text record (id, TODAY, TOMORROW or a date).", ("record_id", "content"), risk_level=RiskLevel.MEDIUM),
    ToolSpec("record.replace", "Replace the whole text of a text record.", ("record_id", "content"), risk_level=RiskLevel.HIGH),
)


class ToolRegistry:
    """Immutable name -> ToolSpec catalog shared by planner and executor."""

    def __init__(self, specs: Tuple[ToolSpec, ...] = TOOL_SPECS):
        self._tools: Dict[str, ToolSpec] = {}
        for spec in specs:
            if spec.name in self._tools:
                raise ValueError(f"Tool already registered: {spec.name}")
            self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __getitem__(self, name: str) -> ToolSpec:
        return self._tools[name]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def list_tools(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def prompt_catalog(self) -> List[Dict[str, object]]:
        return [spec.to_prompt_dict() for spec in self._tools.values()]

    def validate(self, call: ToolCall) -> ToolSpec:
        spec = self._tools.get(call.name)
        if spec is None:
            raise InvalidArguments(f"Unknown tool: {call.name}")
        missing = spec.missing_arguments(call)
        if missing:
            raise InvalidArguments(f"{call.name} is missing required argument(s): {', '.join(missing)}")
        return spec

    def is_high_risk(self, call: ToolCall) -> bool:
        spec = self._tools.get(call.name)
        return spec is not None and spec.risk_level is RiskLevel.HIGH

    def has_high_risk(self, calls: List[ToolCall]) -> bool:
        return any(self.is_high_risk(c) for c in calls)
