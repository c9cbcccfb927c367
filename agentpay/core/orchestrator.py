"""AgentOrchestrator: drives one agent's workflow graph from trigger to end.

FULL EXECUTION LOOP (per run):

1. LOAD: fetch the agent, refuse to start unless it can execute
2. CONTEXT: graph defaults + caller variables, descriptive metadata
3. VALIDATE: structural checks; an invalid graph fails with zero steps
4. WALK from the trigger, one step at a time:
   a. cancellation / overall deadline checks
   b. resolve ``${...}`` parameters against current variables
   c. mandate gate for APPROVAL steps and ``requires_authorization``
   d. tool call raced against the step timeout (sandbox)
   e. success → merge dict output into variables, pick next step
      failure → STOP / CONTINUE / RETRY / ROLLBACK
5. FINISH: final status, metrics, agent metrics, terminal event

Steps within a run are strictly sequential.  Runs share nothing mutable
except the in-flight registry used for cancellation, which is lock-guarded
because ``cancel`` may arrive from another thread.
"""

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from agentpay.config import AgentPayConfig
from agentpay.events.bus import (
    EXECUTION_CANCELLED, EXECUTION_COMPLETED, EXECUTION_FAILED, EXECUTION_ROLLEDBACK,
    EXECUTION_STARTED, STEP_COMPLETED, STEP_FAILED, STEP_STARTED,
)
from agentpay.exceptions import (
    AgentNotExecutable, AgentNotFound, MandateError, MandateGateError,
    RollbackPartialFailureError, StepTimeoutError, ToolError, ToolNotFoundError,
)
from agentpay.tools.executor import ToolExecutor
from agentpay.tools.registry import ToolRegistry
from agentpay.types import (
    AgentDefinition, ErrorStrategy, ExecutionContext, ExecutionMetrics, ExecutionResult,
    ExecutionStatus, MandateAuthorization, MandateContent, MandateExecutionResult,
    MandateIntent, MandateType, StepResult, StepStatus, StepType, WorkflowGraph, WorkflowStep,
    utcnow,
)
from agentpay.workflows.dag import get_trigger, next_step, step_map
from agentpay.workflows.expressions import ExpressionEvaluator
from agentpay.workflows.validator import WorkflowValidator
from agentpay.workflows.variables import resolve_parameters

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
        if n == 0:
            return out


def new_execution_id() -> str:
    """``exec_<base36 epoch ms>_<8 random>``"""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"exec_{_base36(int(time.time() * 1000))}_{suffix}"


@dataclass
class ExecutionHandle:
    """In-flight bookkeeping for one run; the only cross-run shared state."""
    execution_id: str
    agent_id: str
    started_at: datetime
    status: ExecutionStatus = ExecutionStatus.CREATED
    cancel_requested: bool = False
    current_step_id: Optional[str] = None


@dataclass
class _Attempt:
    output: Any = None
    error: Optional[Exception] = None
    mandate_id: Optional[str] = None
    clamped: bool = False              # timeout cut short by the run deadline


@dataclass
class _RunState:
    steps: list[StepResult] = field(default_factory=list)
    rollback_failures: list[str] = field(default_factory=list)
    deadline: Optional[float] = None       # time.monotonic() value
    cancelled: bool = False
    timed_out: bool = False
    abort_error: Optional[str] = None

    def remaining_ms(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, (self.deadline - time.monotonic()) * 1000)


class AgentOrchestrator:
    """Executes agents' workflow graphs.

    Args:
        agent_repository: AgentRepository (get_agent, load_graph, record_metrics)
        tool_registry:    Registry resolving each step's ``tool_type``
        mandate_chain:    Optional MandateChain; without one, gated steps always fail
        event_sink:       Optional EventSink for lifecycle events
        validator:        WorkflowValidator (defaults to one built from config)
        evaluator:        ExpressionEvaluator used for branch conditions
        config:           AgentPayConfig
    """

    def __init__(
        self,
        agent_repository,
        tool_registry: ToolRegistry,
        mandate_chain=None,
        event_sink=None,
        validator: Optional[WorkflowValidator] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        config: Optional[AgentPayConfig] = None,
        executor: Optional[ToolExecutor] = None,
    ):
        self.config = config or AgentPayConfig()
        self.agents = agent_repository
        self.registry = tool_registry
        self.mandate_chain = mandate_chain
        self.event_sink = event_sink
        self.validator = validator or WorkflowValidator(self.config)
        self.evaluator = evaluator or ExpressionEvaluator()
        self.executor = executor or ToolExecutor(tool_registry)
        self._running: dict[str, ExecutionHandle] = {}
        self._running_lock = threading.Lock()

    # ── In-flight registry ───────────────────────────────────────────────

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation.  The in-flight step finishes; no further step starts.

        Returns:
            False if no such execution is running.
        """
        with self._running_lock:
            handle = self._running.get(execution_id)
            if handle is None:
                logger.warning("[Orchestrator] Cancel for unknown execution %s", execution_id)
                return False
            handle.cancel_requested = True
        logger.info("[Orchestrator] Cancellation requested for %s", execution_id)
        return True

    def get_execution_status(self, execution_id: str) -> Optional[dict]:
        with self._running_lock:
            handle = self._running.get(execution_id)
            if handle is None:
                return None
            return {
                "execution_id": handle.execution_id,
                "agent_id": handle.agent_id,
                "status": handle.status.value,
                "started_at": handle.started_at.isoformat(),
                "cancel_requested": handle.cancel_requested,
                "current_step_id": handle.current_step_id,
            }

    def list_running(self) -> list[str]:
        with self._running_lock:
            return list(self._running)

    def _register(self, handle: ExecutionHandle) -> None:
        with self._running_lock:
            self._running[handle.execution_id] = handle

    def _unregister(self, execution_id: str) -> None:
        with self._running_lock:
            self._running.pop(execution_id, None)

    # ── Events ───────────────────────────────────────────────────────────

    def _publish(self, topic: str, ctx: ExecutionContext, **data: Any) -> None:
        if self.event_sink is None:
            return
        payload = {
            "execution_id": ctx.execution_id,
            "agent_id": ctx.agent_id,
            "tenant_id": ctx.tenant_id,
            "timestamp": utcnow().isoformat(),
            "data": data,
        }
        try:
            self.event_sink.publish(topic, payload)
        except Exception as exc:
            logger.warning("[Orchestrator] Event sink failed on '%s': %s", topic, exc)

    # ── Entry point ──────────────────────────────────────────────────────

    async def execute(
        self,
        agent_id: str,
        context: Optional[dict] = None,
        variables: Optional[dict] = None,
    ) -> ExecutionResult:
        """Run an agent's workflow to a terminal state.

        Args:
            agent_id:  Agent to run
            context:   Caller context: ``tenant_id``, ``initiator_id``,
                       ``session_id`` and ``metadata`` (all optional)
            variables: Caller variables; override the graph defaults

        Returns:
            ExecutionResult; step failures never raise out of here.

        Raises:
            AgentNotFound:      no such agent
            AgentNotExecutable: agent is not ACTIVE, or deleted
        """
        execution_id = new_execution_id()
        agent = await self.agents.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(f"Agent '{agent_id}' not found", agent_id=agent_id)
        if not agent.can_execute():
            raise AgentNotExecutable(
                f"Agent '{agent_id}' cannot execute (status={agent.status.value}, "
                f"deleted={agent.is_deleted})",
                agent_id=agent_id,
                status=agent.status.value,
            )

        graph = (await self.agents.load_graph(agent_id)).model_copy(deep=True)
        caller = context or {}
        ctx = ExecutionContext(
            execution_id=execution_id,
            agent_id=agent_id,
            tenant_id=caller.get("tenant_id") or agent.tenant_id,
            initiator_id=caller.get("initiator_id") or agent.created_by,
            session_id=caller.get("session_id"),
            variables={**graph.variables, **(variables or {})},
            metadata={
                "agent_name": agent.name,
                "agent_type": agent.type.value,
                "agent_version": agent.version,
                **(caller.get("metadata") or {}),
            },
        )

        started_at = utcnow()
        start = time.monotonic()
        handle = ExecutionHandle(execution_id=execution_id, agent_id=agent_id, started_at=started_at)
        self._register(handle)
        try:
            handle.status = ExecutionStatus.RUNNING
            logger.info("[Orchestrator] %s started for agent %s", execution_id, agent_id)
            self._publish(EXECUTION_STARTED, ctx, agent_name=agent.name, variables=list(ctx.variables))

            run = _RunState()
            limit_ms = self._time_limit_ms(agent)
            if limit_ms is not None:
                run.deadline = start + limit_ms / 1000

            validation = self.validator.validate(graph, registry=self.registry)
            if not validation.valid:
                logger.warning(
                    "[Orchestrator] %s: invalid workflow: %s", execution_id, validation.errors
                )
                run.abort_error = "Workflow validation failed: " + "; ".join(validation.errors)
            else:
                for warning in validation.warnings:
                    logger.info("[Orchestrator] %s: %s", execution_id, warning)
                await self._walk(agent, graph, ctx, handle, run)

            return await self._finish(ctx, handle, run, started_at, start, limit_ms)
        finally:
            self._unregister(execution_id)

    def _time_limit_ms(self, agent: AgentDefinition) -> Optional[float]:
        minutes = agent.constraints.max_execution_minutes
        if minutes is not None:
            return minutes * 60_000
        return self.config.max_execution_ms

    # ── Step loop ────────────────────────────────────────────────────────

    async def _walk(
        self,
        agent: AgentDefinition,
        graph: WorkflowGraph,
        ctx: ExecutionContext,
        handle: ExecutionHandle,
        run: _RunState,
    ) -> None:
        steps = step_map(graph)
        visited: set[str] = set()
        current: Optional[WorkflowStep] = get_trigger(graph)

        while current is not None:
            if handle.cancel_requested:
                run.cancelled = True
                break
            if run.deadline is not None and time.monotonic() >= run.deadline:
                run.timed_out = True
                break
            if current.id in visited:
                # Validation rejects cycles; this only guards against a graph
                # mutated after validation.
                logger.error("[Orchestrator] %s: step '%s' revisited", ctx.execution_id, current.id)
                break
            visited.add(current.id)
            handle.current_step_id = current.id

            if not current.enabled:
                run.steps.append(StepResult(
                    step_id=current.id, step_name=current.name, status=StepStatus.SKIPPED,
                    attempts=0,
                ))
                current = steps.get(current.connections.success_step_id or "")
                continue

            step_start = time.monotonic()
            try:
                attempt, attempts = await self._run_with_retries(agent, current, ctx, handle, run)
            except ToolNotFoundError as exc:
                run.steps.append(StepResult(
                    step_id=current.id, step_name=current.name, status=StepStatus.FAILURE,
                    error=str(exc), duration_ms=(time.monotonic() - step_start) * 1000,
                ))
                self._publish(STEP_FAILED, ctx, step_id=current.id, error=str(exc))
                run.abort_error = str(exc)
                break
            duration_ms = (time.monotonic() - step_start) * 1000

            if attempt.error is None:
                if isinstance(attempt.output, dict):
                    ctx.variables.update(attempt.output)
                run.steps.append(StepResult(
                    step_id=current.id, step_name=current.name, status=StepStatus.SUCCESS,
                    output=attempt.output, duration_ms=duration_ms, attempts=attempts,
                ))
                self._publish(
                    STEP_COMPLETED, ctx, step_id=current.id, duration_ms=duration_ms,
                    attempts=attempts,
                )
                if attempt.mandate_id:
                    await self._mark_mandate_executed(attempt.mandate_id, current, ctx)
                current = next_step(current, graph, ctx.variables, self.evaluator)
                continue

            error_text = str(attempt.error)
            run.steps.append(StepResult(
                step_id=current.id, step_name=current.name, status=StepStatus.FAILURE,
                output=attempt.output, duration_ms=duration_ms, error=error_text,
                attempts=attempts,
            ))
            self._publish(
                STEP_FAILED, ctx, step_id=current.id, error=error_text, attempts=attempts,
                strategy=current.error_handling.strategy.value,
            )
            logger.warning(
                "[Orchestrator] %s: step '%s' failed after %d attempt(s): %s",
                ctx.execution_id, current.id, attempts, error_text,
            )

            timed_out = isinstance(attempt.error, StepTimeoutError)
            if timed_out and (attempt.clamped or self._deadline_hit(run)):
                run.timed_out = True
                break
            current = await self._after_failure(current, steps, ctx, run)

    def _deadline_hit(self, run: _RunState) -> bool:
        return run.deadline is not None and time.monotonic() >= run.deadline

    async def _after_failure(
        self,
        step: WorkflowStep,
        steps: dict[str, WorkflowStep],
        ctx: ExecutionContext,
        run: _RunState,
    ) -> Optional[WorkflowStep]:
        """Apply the step's error strategy; returns the next step or None to end the run."""
        strategy = step.error_handling.strategy
        if strategy == ErrorStrategy.CONTINUE:
            target = step.connections.failure_step_id or step.connections.success_step_id
            return steps.get(target) if target else None
        if strategy == ErrorStrategy.RETRY:
            fallback = step.error_handling.fallback_step_id
            return steps.get(fallback) if fallback else None
        if strategy == ErrorStrategy.ROLLBACK:
            await self._rollback(steps, ctx, run)
        return None

    async def _run_with_retries(
        self,
        agent: AgentDefinition,
        step: WorkflowStep,
        ctx: ExecutionContext,
        handle: ExecutionHandle,
        run: _RunState,
    ) -> tuple[_Attempt, int]:
        """Run one step; under RETRY re-invoke it up to ``max_retries`` more times.

        Gate failures are not retried: the engine never waits for a human.
        """
        attempts = 1
        attempt = await self._attempt(agent, step, ctx, run)
        if step.error_handling.strategy != ErrorStrategy.RETRY:
            return attempt, attempts
        while (
            attempt.error is not None
            and attempts <= step.error_handling.max_retries
            and not isinstance(attempt.error, MandateError)
            and not handle.cancel_requested
            and not self._deadline_hit(run)
        ):
            logger.info(
                "[Orchestrator] %s: retrying step '%s' (%d/%d)",
                ctx.execution_id, step.id, attempts, step.error_handling.max_retries,
            )
            attempts += 1
            attempt = await self._attempt(agent, step, ctx, run)
        return attempt, attempts

    async def _attempt(
        self,
        agent: AgentDefinition,
        step: WorkflowStep,
        ctx: ExecutionContext,
        run: _RunState,
    ) -> _Attempt:
        params = resolve_parameters(step.parameters, ctx.variables)

        mandate_id = None
        if self._is_gated(agent, step):
            try:
                mandate_id = await self._check_gate(step, params, ctx)
            except MandateGateError as exc:
                output = {"mandate_id": exc.mandate_id, "reason": exc.reason} if exc.mandate_id else None
                return _Attempt(output=output, error=exc)
            except MandateError as exc:
                logger.error(
                    "[Orchestrator] %s: mandate check for step '%s' failed: %s",
                    ctx.execution_id, step.id, exc,
                )
                return _Attempt(error=exc)

        timeout_ms = step.timeout_ms
        remaining = run.remaining_ms()
        clamped = remaining is not None and remaining < timeout_ms
        if clamped:
            timeout_ms = remaining

        self._publish(STEP_STARTED, ctx, step_id=step.id, tool_type=step.tool_type)
        output, error = await self.executor.execute(
            step.tool_type, params, ctx, timeout_ms, step_id=step.id
        )
        return _Attempt(output=output, error=error, mandate_id=mandate_id, clamped=clamped)

    # ── Mandate gate ─────────────────────────────────────────────────────

    def _is_gated(self, agent: AgentDefinition, step: WorkflowStep) -> bool:
        if step.is_gated:
            return True
        return agent.constraints.approval_required and step.type == StepType.ACTION

    async def _check_gate(self, step: WorkflowStep, params: dict, ctx: ExecutionContext) -> str:
        """Return the id of the mandate authorizing ``step``.

        Without a ``mandate_id`` parameter a PENDING approval mandate is
        created and the step fails; the caller approves it and re-runs.

        Raises:
            MandateGateError: missing, invalid, expired or unapproved mandate
        """
        if self.mandate_chain is None:
            raise MandateGateError(
                f"Step '{step.id}' requires a mandate but no mandate chain is configured",
                reason="mandate_not_approved",
            )

        mandate_id = params.get("mandate_id")
        if not mandate_id:
            mandate = await self.mandate_chain.create(
                MandateContent(
                    intent=MandateIntent(
                        action=step.tool_type,
                        description=f"Authorize step '{step.name}' of agent {ctx.agent_id}"[:1000],
                        context={
                            "execution_id": ctx.execution_id,
                            "step_id": step.id,
                            "step_name": step.name,
                        },
                    ),
                    authorization=MandateAuthorization(requires_approval=True),
                ),
                creator_id=ctx.initiator_id,
                type=MandateType.APPROVAL,
                tenant_id=ctx.tenant_id,
                agent_id=ctx.agent_id,
                ttl_seconds=self.config.mandate_default_ttl_seconds,
            )
            logger.info(
                "[Orchestrator] %s: step '%s' awaits approval of %s",
                ctx.execution_id, step.id, mandate.mandate_id,
            )
            raise MandateGateError(
                f"mandate_not_approved: mandate {mandate.mandate_id} created for step "
                f"'{step.id}' and awaits approval",
                reason="mandate_not_approved",
                mandate_id=mandate.mandate_id,
            )

        try:
            await self.mandate_chain.check_gate(mandate_id)
        except MandateGateError as exc:
            raise MandateGateError(
                f"{exc.reason}: {exc}", reason=exc.reason, mandate_id=mandate_id
            ) from exc
        return mandate_id

    async def _mark_mandate_executed(
        self, mandate_id: str, step: WorkflowStep, ctx: ExecutionContext
    ) -> None:
        try:
            await self.mandate_chain.execute(
                mandate_id,
                ctx.initiator_id,
                MandateExecutionResult(
                    success=True,
                    metadata={"execution_id": ctx.execution_id, "step_id": step.id},
                ),
            )
        except MandateError as exc:
            logger.error(
                "[Orchestrator] %s: could not mark mandate %s executed: %s",
                ctx.execution_id, mandate_id, exc,
            )

    # ── Rollback ─────────────────────────────────────────────────────────

    async def _rollback(
        self, steps: dict[str, WorkflowStep], ctx: ExecutionContext, run: _RunState
    ) -> None:
        """Best-effort compensation, newest successful step first.  Never raises."""
        attempted = 0
        for result in reversed(run.steps):
            if result.status != StepStatus.SUCCESS:
                continue
            step = steps.get(result.step_id)
            tool = self.registry.get(step.tool_type) if step else None
            if tool is None or tool.rollback is None:
                continue
            attempted += 1
            try:
                await self.executor.sandbox.run(
                    tool.rollback, result.output, ctx, step.timeout_ms,
                    tool_name=tool.name, step_id=step.id,
                )
                logger.info("[Orchestrator] %s: rolled back step '%s'", ctx.execution_id, step.id)
            except ToolError as exc:
                failure = RollbackPartialFailureError(
                    f"Rollback of step '{step.id}' failed: {exc}",
                    step_id=step.id,
                    tool_name=tool.name,
                )
                logger.error("[Orchestrator] %s: %s", ctx.execution_id, failure)
                run.rollback_failures.append(str(failure))

        self._publish(
            EXECUTION_ROLLEDBACK, ctx,
            attempted=attempted, failed=len(run.rollback_failures),
        )

    # ── Completion ───────────────────────────────────────────────────────

    async def _finish(
        self,
        ctx: ExecutionContext,
        handle: ExecutionHandle,
        run: _RunState,
        started_at: datetime,
        start: float,
        limit_ms: Optional[float],
    ) -> ExecutionResult:
        duration_ms = (time.monotonic() - start) * 1000
        metrics = ExecutionMetrics.from_steps(run.steps)

        error = run.abort_error
        if run.cancelled:
            status = ExecutionStatus.CANCELLED
            error = error or "Execution cancelled"
        elif run.timed_out:
            status = ExecutionStatus.TIMEOUT
            error = error or f"Execution exceeded its time limit of {limit_ms:.0f}ms"
        elif metrics.failed or run.abort_error:
            status = ExecutionStatus.FAILED
            if error is None:
                last = next(s for s in reversed(run.steps) if s.status == StepStatus.FAILURE)
                error = f"Step '{last.step_id}' failed: {last.error}"
        else:
            status = ExecutionStatus.COMPLETED
        handle.status = status

        result = ExecutionResult(
            execution_id=ctx.execution_id,
            agent_id=ctx.agent_id,
            status=status,
            steps=list(run.steps),
            variables=dict(ctx.variables),
            duration_ms=duration_ms,
            started_at=started_at,
            completed_at=utcnow(),
            metrics=metrics,
            error=error,
            rollback_failures=list(run.rollback_failures),
        )

        cost = metrics.total * self.config.cost_per_step + (duration_ms / 1000) * self.config.cost_per_second
        try:
            await self.agents.record_metrics(
                ctx.agent_id, status == ExecutionStatus.COMPLETED, duration_ms, cost
            )
        except Exception as exc:
            logger.warning("[Orchestrator] %s: recording metrics failed: %s", ctx.execution_id, exc)

        topic = {
            ExecutionStatus.COMPLETED: EXECUTION_COMPLETED,
            ExecutionStatus.CANCELLED: EXECUTION_CANCELLED,
        }.get(status, EXECUTION_FAILED)
        self._publish(
            topic, ctx,
            status=status.value, duration_ms=duration_ms, cost=cost,
            metrics=metrics.model_dump(), error=error,
        )
        logger.info(
            "[Orchestrator] %s finished %s in %.1fms (%d steps, %d failed)",
            ctx.execution_id, status.value, duration_ms, metrics.total, metrics.failed,
        )
        return result
