"""IR models that flow through the assistant kernel.

- planner output (ToolCall/PlannedCalls)
- confirmation payloads (PendingConfirmation)
- retrieval context (ContextItem)
- executor and kernel output (ExecutionOutcome/KernelResult)
- skill and task action definitions (closed unions discriminated by `type`)
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from .errors import InvalidData
from .util import jload


class ToolCall(BaseModel):
    name: str
    arguments: Dict[str, str] = Field(default_factory=dict)

    def arg(self, key: str) -> str:
        return (self.arguments.get(key) or "").strip()


class PlannedCalls(BaseModel):
    """Planner output. A clarifying question and a non-empty call list never coexist."""

    calls: List[ToolCall] = Field(default_factory=list)
    planner_source: str = "rule"
    planner_note: Optional[str] = None
    tool_plan: List[str] = Field(default_factory=list)
    clarify_question: Optional[str] = None

    @model_validator(mode="after")
    def _clarify_excludes_calls(self) -> "PlannedCalls":
        if self.clarify_question and self.calls:
            raise ValueError("clarify_question and calls are mutually exclusive")
        return self


class PendingConfirmation(BaseModel):
    token: str
    tool_calls: List[ToolCall]
    source: str = ""
    request: str = ""
    tool_plan: List[str] = Field(default_factory=list)
    created_at: float
    expires_at: float


class ContextItem(BaseModel):
    id: str
    filename: str
    snippet: str
    updated_at: float
    score: int = 0


class ExecutionOutcome(BaseModel):
    reply: str = ""
    actions: List[str] = Field(default_factory=list)
    related_record_ids: List[str] = Field(default_factory=list)


class KernelResult(BaseModel):
    """Final result of one kernel cycle. Field names double as the CLI JSON keys."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    source: str
    request: str
    intent: str
    planner_source: str
    planner_note: Optional[str] = None
    tool_plan: List[str] = Field(default_factory=list)
    confirmation_required: bool = False
    confirmation_token: Optional[str] = None
    confirmation_expires_at: Optional[float] = None
    reply: str
    actions: List[str] = Field(default_factory=list)
    related_record_ids: List[str] = Field(default_factory=list)
    core_context_record_ids: List[str] = Field(default_factory=list)
    core_memory_record_id: Optional[str] = None
    audit_record_id: Optional[str] = None
    started_at: float
    finished_at: float
    succeeded: bool


class TurnState(BaseModel):
    """Mutable per-request state the kernel fills in before freezing it into a KernelResult."""

    request_id: str
    source: str
    request: str
    started_at: float
    intent: str = "unknown"
    planner_source: str = "rule"
    planner_note: Optional[str] = None
    tool_plan: List[str] = Field(default_factory=list)
    confirmation_required: bool = False
    confirmation_token: Optional[str] = None
    confirmation_expires_at: Optional[float] = None
    reply: str = ""
    actions: List[str] = Field(default_factory=list)
    related_record_ids: List[str] = Field(default_factory=list)
    core_context_record_ids: List[str] = Field(default_factory=list)
    core_memory_record_id: Optional[str] = None
    audit_record_id: Optional[str] = None
    merge_strategy: str = "versioned"
    conflict_record_id: Optional[str] = None
    conflict_score: Optional[float] = None
    succeeded: bool = False

    def to_result(self, finished_at: float) -> KernelResult:
        return KernelResult(
            **self.model_dump(exclude={"merge_strategy", "conflict_record_id", "conflict_score"}),
            finished_at=finished_at,
        )


# ---- skill actions ----


class SkillLLMPrompt(BaseModel):
    type: Literal["llm_prompt"] = "llm_prompt"
    system_prompt: str = ""
    user_prompt_template: str = "{{input}}"
    model: str = ""


class SkillShellCommand(BaseModel):
    type: Literal["shell_command"] = "shell_command"
    command: str


class SkillCreateRecord(BaseModel):
    type: Literal["create_record"] = "create_record"
    filename_template: str = ""
    content_template: str = "{{input}}"


class SkillAppendToRecord(BaseModel):
    type: Literal["append_to_record"] = "append_to_record"
    record_ref: str = "TODAY"
    content_template: str = "{{input}}"


SkillAction = Annotated[
    Union[SkillLLMPrompt, SkillShellCommand, SkillCreateRecord, SkillAppendToRecord],
    Field(discriminator="type"),
]


# ---- task actions ----


class TaskCreateRecord(BaseModel):
    type: Literal["create_record"] = "create_record"
    title: str = ""
    content_template: str = ""


class TaskAppendToRecord(BaseModel):
    type: Literal["append_to_record"] = "append_to_record"
    record_id: str
    content_template: str


class TaskShellCommand(BaseModel):
    type: Literal["shell_command"] = "shell_command"
    command: str


class TaskModelPrompt(BaseModel):
    type: Literal["model_prompt"] = "model_prompt"
    system_prompt: str = ""
    user_prompt_template: str
    model: str = ""


TaskAction = Annotated[
    Union[TaskCreateRecord, TaskAppendToRecord, TaskShellCommand, TaskModelPrompt],
    Field(discriminator="type"),
]


# ---- task triggers (stored only; no scheduler here) ----


class TriggerManual(BaseModel):
    type: Literal["manual"] = "manual"


class TriggerCron(BaseModel):
    type: Literal["cron"] = "cron"
    expression: str


class TriggerOnRecordCreate(BaseModel):
    type: Literal["on_record_create"] = "on_record_create"
    tag_filter: List[str] = Field(default_factory=list)


class TriggerOnRecordUpdate(BaseModel):
    type: Literal["on_record_update"] = "on_record_update"
    tag_filter: List[str] = Field(default_factory=list)


TaskTrigger = Annotated[
    Union[TriggerManual, TriggerCron, TriggerOnRecordCreate, TriggerOnRecordUpdate],
    Field(discriminator="type"),
]


_skill_action_adapter: TypeAdapter[Any] = TypeAdapter(SkillAction)
_task_action_adapter: TypeAdapter[Any] = TypeAdapter(TaskAction)
_task_trigger_adapter: TypeAdapter[Any] = TypeAdapter(TaskTrigger)


def _coerce(raw: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    data = jload(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict):
        raise InvalidData(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_skill_action(raw: Union[str, Dict[str, Any]]) -> Union[SkillLLMPrompt, SkillShellCommand, SkillCreateRecord, SkillAppendToRecord]:
    try:
        return _skill_action_adapter.validate_python(_coerce(raw))
    except (ValidationError, ValueError) as e:
        raise InvalidData(f"Cannot decode skill action: {e}") from e


def parse_task_action(raw: Union[str, Dict[str, Any]]) -> Union[TaskCreateRecord, TaskAppendToRecord, TaskShellCommand, TaskModelPrompt]:
    try:
        return _task_action_adapter.validate_python(_coerce(raw))
    except (ValidationError, ValueError) as e:
        raise InvalidData(f"Cannot decode task action: {e}") from e


def parse_task_trigger(raw: Union[str, Dict[str, Any], None]) -> Union[TriggerManual, TriggerCron, TriggerOnRecordCreate, TriggerOnRecordUpdate]:
    if not raw:
        return TriggerManual()
    try:
        return _task_trigger_adapter.validate_python(_coerce(raw))
    except (ValidationError, ValueError) as e:
        raise InvalidData(f"Cannot decode task trigger: {e}") from e
