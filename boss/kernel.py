"""Assistant kernel.

This module wires the context loader, planner, confirmation gate, tool executor and
memory writer into a single `AssistantKernel` façade: one call to `handle` is one
request/response cycle and always yields a `KernelResult`.
"""

from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass, field
from typing import Callable, List, Literal, Optional, final

from .confirm import (
    ConfirmationGate,
    ConfirmationStore,
    SQLiteConfirmationStore,
    confirmation_reply,
    invalid_confirmation_reply,
    related_record_ids,
)
from .context import ContextLoader
from .errors import ConfirmationInvalid
from .executor import ToolExecutor
from .extract import clean_request, extract_confirmation_token, extract_merge_directive
from .ir import ContextItem, KernelResult, PlannedCalls, TurnState
from .llm import DEFAULT_MODEL, ModelProvider, StubProvider
from .logging_utils import log, setup_logging
from .memory import MemoryWriter, resolve_merge_strategy, should_persist
from .planner import FallbackPlanner, LLMPlanner, RulePlanner, default_tool_plan, describe_calls
from .storage import Storage
from .tags import ensure_audit_tag, ensure_core_tag
from .tools import ToolRegistry
from .util import new_record_id, short, utc_ts


STUB_MODEL = "stub"


def _env(name: str, default: str) -> Callable[[], str]:
    return lambda: os.environ.get(name) or default


@dataclass
class KernelConfig:
    """Configuration for `AssistantKernel`."""

    storage: str = field(default_factory=_env("BOSS_STORAGE_PATH", "~/.boss"))
    model: str = field(default_factory=_env("BOSS_ASSISTANT_MODEL", DEFAULT_MODEL))
    planner: Literal["llm", "rule"] = "llm"
    llm_timeout_s: float = 30.0
    confirm_ttl_s: float = 300.0
    context_limit: int = 20
    context_token_cap: int = 8
    # A past memory conflicts when the requests overlap and the replies diverge.
    conflict_request_min: float = 0.34
    conflict_reply_max: float = 0.62
    conflict_score_min: float = 0.22
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: str = ""
    log_file_level: str = "DEBUG"
    log_file_max_bytes: int = 5_000_000
    log_file_backup_count: int = 3
    ollama_host: str = "http://localhost:11434"
    llama_ctx: int = 4096


@final
class AssistantKernel:
    """Main runtime: context → plan → confirm or execute → remember → audit."""

    def __init__(
        self,
        storage: Storage,
        provider: ModelProvider,
        confirm_store: ConfirmationStore,
        config: Optional[KernelConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        today: Optional[Callable[[], dt.date]] = None,
    ):
        self.cfg = config or KernelConfig()
        self.storage = storage
        self.provider = provider
        self.registry = registry or ToolRegistry()
        self._today = today or dt.date.today

        self.context = ContextLoader(storage, token_cap=self.cfg.context_token_cap)
        self.gate = ConfirmationGate(confirm_store, ttl_s=self.cfg.confirm_ttl_s)
        self.executor = ToolExecutor(storage, provider, self.registry, model=self.cfg.model, today=self._today)
        self.memory = MemoryWriter(
            storage,
            request_min=self.cfg.conflict_request_min,
            reply_max=self.cfg.conflict_reply_max,
            score_min=self.cfg.conflict_score_min,
            today=self._today,
        )

        llm: Optional[LLMPlanner] = None
        if self.cfg.planner == "llm" and not isinstance(provider, StubProvider):
            llm = LLMPlanner(provider, self.registry, model=self.cfg.model)
        self.planner = FallbackPlanner(RulePlanner(), llm)

    @classmethod
    def from_config(cls, config: KernelConfig) -> "AssistantKernel":
        """Build the default collaborators (SQLite storage, HTTP model provider) for a CLI process."""
        setup_logging(
            config.log_level,
            json_logs=config.json_logs,
            storage_root=config.storage,
            log_file=config.log_file,
            log_file_level=config.log_file_level,
            log_file_max_bytes=config.log_file_max_bytes,
            log_file_backup_count=config.log_file_backup_count,
        )
        storage = Storage(config.storage)
        provider: ModelProvider
        if config.model.strip().lower() == STUB_MODEL:
            provider = StubProvider()
        else:
            provider = ModelProvider(
                config.model,
                timeout_s=config.llm_timeout_s,
                ollama_host=config.ollama_host,
                llama_ctx=config.llama_ctx,
            )
        log.info(
            "kernel started (storage=%s, model=%s, planner=%s, fts=%s)",
            storage.root,
            config.model,
            config.planner,
            storage.fts_ok,
            extra={
                "extra": {
                    "storage": str(storage.root),
                    "model": config.model,
                    "planner": config.planner,
                    "fts": storage.fts_ok,
                }
            },
        )
        return cls(storage, provider, SQLiteConfirmationStore(storage), config)

    def close(self) -> None:
        self.storage.close()
        log.info("kernel stopped")

    # ---- request cycle ----

    def handle(self, request: str, source: str = "runtime") -> KernelResult:
        text = clean_request(request)
        turn = TurnState(request_id=new_record_id(), source=source, request=text, started_at=utc_ts())
        log.info("request start", extra={"extra": {"request_id": turn.request_id, "source": source, "request": short(text, 120)}})
        try:
            self._run(turn)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log.exception("request failed", extra={"extra": {"request_id": turn.request_id, "error": str(e)}})
            turn.reply = f"Execution failed: {e}"
            turn.actions.append(f"error:{e}")
            turn.succeeded = False
            self._write_failure_audit(turn)
        finished_at = utc_ts()
        log.info(
            "request finish",
            extra={
                "extra": {
                    "request_id": turn.request_id,
                    "intent": turn.intent,
                    "planner_source": turn.planner_source,
                    "succeeded": turn.succeeded,
                    "duration_ms": int((finished_at - turn.started_at) * 1000),
                }
            },
        )
        return turn.to_result(finished_at)

    def _run(self, turn: TurnState) -> None:
        core_tag_id = ensure_core_tag(self.storage)
        audit_tag_id = ensure_audit_tag(self.storage)
        turn.actions += ["tag.ensure:Core", "tag.ensure:AuditLog"]

        context = self.context.load(core_tag_id, turn.request, limit=self.cfg.context_limit)
        turn.core_context_record_ids = [it.id for it in context]
        turn.actions.append(f"context.load:{len(context)}")

        self._plan_and_act(turn, context)
        self._remember(turn, core_tag_id, context)

        finished_at = utc_ts()
        turn.audit_record_id = self.memory.write_audit(audit_tag_id, turn, finished_at=finished_at)
        turn.actions.append(f"audit.append:{turn.audit_record_id}")

    def _plan_and_act(self, turn: TurnState, context: List[ContextItem]) -> None:
        confirmed = False
        request = turn.request
        token = extract_confirmation_token(request)
        if token:
            try:
                pending = self.gate.redeem(token, source=turn.source)
            except ConfirmationInvalid as e:
                log.warning("confirmation rejected", extra={"extra": {"token": e.token, "reason": e.reason}})
                turn.intent = f"confirm.invalid({e.token})"
                turn.planner_source = "confirmation-token"
                turn.planner_note = f"confirmation token rejected: {e.reason}"
                turn.tool_plan = ["validate-confirmation-token"]
                turn.reply = invalid_confirmation_reply(e)
                turn.actions.append(f"confirm.invalid:{e.token}")
                turn.succeeded = False
                return
            confirmed = True
            request = pending.request or request
            planned = PlannedCalls(
                calls=pending.tool_calls,
                planner_source="confirmation-token",
                planner_note="used confirmation token",
                tool_plan=default_tool_plan(pending.tool_calls),
            )
            turn.intent = f"{describe_calls(planned.calls, request)} [confirmed]"
            turn.actions.append(f"confirm.consume:{pending.token}")
        else:
            planned = self.planner.plan(request, context)
            turn.intent = describe_calls(planned.calls, request)
            turn.actions.append(f"plan:{planned.planner_source}")

        turn.planner_source = planned.planner_source
        turn.planner_note = planned.planner_note
        turn.tool_plan = list(planned.tool_plan)

        if planned.clarify_question and not planned.calls:
            turn.reply = planned.clarify_question
            turn.actions.append("clarify.ask")
            turn.succeeded = True
            return

        if not confirmed and self.registry.has_high_risk(planned.calls):
            pending = self.gate.create(planned.calls, source=turn.source, request=request, tool_plan=turn.tool_plan)
            turn.confirmation_required = True
            turn.confirmation_token = pending.token
            turn.confirmation_expires_at = pending.expires_at
            turn.related_record_ids = related_record_ids(planned.calls, lambda ref: self.executor.resolve_record_id(ref, request))
            turn.reply = confirmation_reply(pending, self.executor.preview(planned.calls, request))
            turn.actions += [f"confirm.required:{pending.token}", f"dryrun.preview:{len(planned.calls)}"]
            turn.succeeded = True
            return

        outcome = self.executor.execute(planned.calls, request, context)
        turn.reply = outcome.reply
        turn.actions += outcome.actions
        turn.related_record_ids = list(outcome.related_record_ids)
        turn.succeeded = True

    def _remember(self, turn: TurnState, core_tag_id: str, context: List[ContextItem]) -> None:
        explicit = extract_merge_directive(turn.request)
        if explicit:
            turn.actions.append(f"memory.merge.requested:{explicit}")

        conflict = None
        if turn.succeeded and not turn.confirmation_required:
            conflict = self.memory.detect_conflict(turn.request, turn.reply, context)
        if conflict is not None:
            turn.conflict_record_id = conflict.record_id
            turn.conflict_score = round(conflict.score, 4)
        turn.merge_strategy = resolve_merge_strategy(explicit, conflict)
        turn.actions.append(f"memory.merge.use:{turn.merge_strategy}")

        persist = should_persist(
            request=turn.request,
            reply=turn.reply,
            actions=turn.actions,
            related_record_ids=turn.related_record_ids,
            confirmation_required=turn.confirmation_required,
            succeeded=turn.succeeded,
            explicit_merge=explicit,
        )
        if not persist:
            turn.actions.append("memory.skip:low_signal")
            return
        turn.core_memory_record_id = self.memory.write_memory(core_tag_id, turn)
        turn.actions.append(f"memory.append:{turn.core_memory_record_id}")

    def _write_failure_audit(self, turn: TurnState) -> None:
        try:
            audit_tag_id = ensure_audit_tag(self.storage)
            turn.audit_record_id = self.memory.write_audit(audit_tag_id, turn, finished_at=utc_ts())
        except Exception as e:  # pylint: disable=broad-exception-caught
            log.warning("failure audit not written", extra={"extra": {"request_id": turn.request_id, "error": str(e)}})
