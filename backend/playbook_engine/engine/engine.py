"""
Workflow Engine - Interprets playbook definitions against runs

=============================================================================
MODULE STRUCTURE
=============================================================================

1. ENTRY POINTS
   - publish_definition / validate_definition: publish-time checks
   - start_run: create a run and drive it
   - advance: drive a run until terminal, paused, cancelled or suspended
   - complete_step: accept the result of a suspended user_action step
   - handle_wait_elapsed / handle_timeout: scheduler re-entry
   - release_suspension: settle a pending step when its run is cancelled

2. DRIVE LOOP
   - _drive: hold the run's driving lease, so steps run one at a time
   - _drive_steps: re-read the run before every step (cooperative cancel/pause)
   - _settle: persist a step outcome and pick the next step

3. STEP EXECUTION
   - _run_step: guardrails, dispatch by step type, StepExecution row
   - _run_actions / _run_parallel / _run_loop
   - _suspend_for_user / _suspend_for_wait

4. BOOKKEEPING
   - _record: write StepExecution rows (after the step finishes)
   - _commit: compare-and-swap instance updates
   - log: WORKFLOW_LOG lines

=============================================================================
DEPENDENCIES
=============================================================================

    - WorkflowRepository: definitions, runs, step executions, run logs
    - StatusTransitionManager: set_status actions and status guardrails
    - GuardrailEvaluator: step preconditions
    - ActionExecutor: closed action dispatch
    - ConditionEvaluator: conditional steps

=============================================================================
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .action_executor import ActionExecutor
from .condition_evaluator import ConditionEvaluator
from .guardrails import GuardrailEvaluator
from .status_manager import StatusTransitionManager
from .variable_resolver import (
    VariableResolver, TOKEN_PATTERN, get_path, unresolved_references, root_name
)
from ..domain.models import (
    ActorContext, StepExecution, StepGuardrail, WorkflowDefinition,
    WorkflowInstance, WorkflowStep, RunLogEntry, SetVariableAction
)
from ..domain.enums import (
    RunStatus, StepExecutionStatus, StepType, LogLevel, EntityType,
    RelationshipType, SmartCode
)
from ..domain.errors import (
    DomainError, EngineError, ValidationError, WorkflowValidationError,
    StepNotFoundError, InvalidStatusError, ConcurrencyError, ConflictError,
    StepTimeoutError, StoreError, ActionExecutionError
)
from ..config.settings import settings
from ..repositories.store import StoreAdapter
from ..repositories.workflow_repo import WorkflowRepository
from ..services.notification_service import Notifier
from ..utils.idgen import (
    generate_run_id, generate_step_execution_id, generate_log_id, generate_task_code, generate_driver_lease
)
from ..utils.time import utc_now, add_minutes, add_seconds, parse_iso, is_past, format_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)

RESERVED_VARIABLES = ("run_id", "subject_entity_id", "started_by", "organization_id")

# Upper bound on steps driven by one advance call; error handlers can route backwards
MAX_STEPS_PER_ADVANCE = 1000

_COMMIT_ATTEMPTS = 5
_TERMINAL_FIELDS = {"status", "completed_at", "error"}
_SUSPENSION_FIELDS = {"pending_execution_id", "wake_at", "timeout_at"}
_LEASE_FIELDS = ("driver_lease", "driver_lease_expires_at")
_BRANCH_STEP_TYPES = (StepType.ACTION, StepType.CONDITIONAL)
_ENVELOPE_FIELDS = {"action_type", "name", "output_variable"}


@dataclass
class StepOutcome:
    """Result of executing one step (or one branch/iteration)"""
    status: StepExecutionStatus
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[DomainError] = None
    wake_at: Optional[datetime] = None
    timeout_at: Optional[datetime] = None
    task_entity_id: Optional[str] = None
    execution_id: Optional[str] = None
    # False when the step wrote its own rows (loop iterations)
    record: bool = True


@dataclass
class RunContext:
    """In-flight state of one drive of one run"""
    instance: WorkflowInstance
    definition: WorkflowDefinition
    variables: Dict[str, Any]
    sequence: int = 0
    attempts: Dict[Tuple[str, Optional[int], Optional[int]], int] = field(default_factory=dict)

    @property
    def reserved(self) -> Dict[str, Any]:
        return {
            "run_id": self.instance.id,
            "subject_entity_id": self.instance.subject_entity_id,
            "started_by": self.instance.started_by,
            "organization_id": self.instance.organization_id,
        }

    def context(self) -> Dict[str, Any]:
        return {**self.variables, **self.reserved}

    def next_sequence(self) -> int:
        self.sequence += 1
        return self.sequence

    def next_attempt(self, step_id: str, branch_index: Optional[int], iteration: Optional[int]) -> int:
        key = (step_id, branch_index, iteration)
        self.attempts[key] = self.attempts.get(key, 0) + 1
        return self.attempts[key]


class WorkflowEngine:
    """
    The Workflow Engine - drives runs of published definitions

    Responsibilities:
    - Walk steps in definition order (or next_step_id / error handler routing)
    - Enforce guardrails before any action executes (fail closed)
    - Execute actions through the closed action set
    - Record one StepExecution row per step, branch and loop iteration
    - Suspend on user_action and wait steps; re-enter on external events
    - Honour pause/cancel cooperatively by re-reading the run before every step
    """

    def __init__(
        self,
        store: StoreAdapter,
        organization_id: str,
        notifier: Optional[Notifier] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.store = store
        self.organization_id = organization_id
        self.repo = WorkflowRepository(store, organization_id)
        self.status_manager = StatusTransitionManager(store, organization_id)
        self.guardrails = GuardrailEvaluator(store, organization_id, self.status_manager)
        self.executor = ActionExecutor(store, organization_id, self.status_manager, notifier, http_client)
        self.conditions = ConditionEvaluator()

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    async def publish_definition(self, definition: WorkflowDefinition) -> List[str]:
        """
        Validate and persist a definition

        Returns:
            Publish-time warnings (unresolved variable references)
        """
        warnings = self.validate_definition(definition)
        for warning in warnings:
            logger.warning(
                f"Definition {definition.id}: {warning}",
                extra={"definition_id": definition.id}
            )
        await self.repo.save_definition(definition)
        return warnings

    def validate_definition(self, definition: WorkflowDefinition) -> List[str]:
        """
        Check definition structure

        Structural problems raise WorkflowValidationError. Variable
        references that no declared variable, output variable or reserved
        name can satisfy are returned as warnings: at run time they pass
        through literally.
        """
        errors: List[str] = []
        step_ids = [step.id for step in definition.steps]
        known_steps = set(step_ids)

        if not definition.steps:
            errors.append("Definition has no steps")
        duplicates = sorted({step_id for step_id in step_ids if step_ids.count(step_id) > 1})
        if duplicates:
            errors.append(f"Duplicate step ids: {', '.join(duplicates)}")

        for target in definition.exception_handlers.values():
            if target not in known_steps:
                errors.append(f"Exception handler targets unknown step '{target}'")

        for step in definition.steps:
            errors.extend(self._validate_step(step, known_steps))

        known_roots = set(RESERVED_VARIABLES) | {v.name for v in definition.variables}
        for step in self._all_steps(definition.steps):
            for action in step.actions:
                if action.output_variable:
                    known_roots.add(root_name(action.output_variable))
                if isinstance(action, SetVariableAction):
                    known_roots.add(root_name(action.variable))
            if step.loop:
                known_roots.update({step.loop.item_variable, step.loop.index_variable})

        warnings: List[str] = []
        for step in self._all_steps(definition.steps):
            templated: List[Any] = [step.assignee_id, step.task_title, step.wait_until]
            templated.extend(action.model_dump(exclude=_ENVELOPE_FIELDS) for action in step.actions)
            for reference in unresolved_references(templated, known_roots):
                warnings.append(f"Step '{step.id}' references unknown variable ${{{reference}}}")
            if step.condition:
                for condition in step.condition.conditions:
                    if root_name(condition.field) not in known_roots:
                        warnings.append(f"Step '{step.id}' condition reads unknown variable '{condition.field}'")

        if errors:
            raise WorkflowValidationError(
                f"Workflow definition {definition.id} is invalid",
                details={"errors": errors, "warnings": warnings},
            )
        return warnings

    def _validate_step(self, step: WorkflowStep, known_steps: set, in_branch: bool = False) -> List[str]:
        errors: List[str] = []
        label = f"Step '{step.id}'"

        if step.next_step_id and step.next_step_id not in known_steps:
            errors.append(f"{label} next_step_id targets unknown step '{step.next_step_id}'")
        for target in step.error_handler.values():
            if target not in known_steps:
                errors.append(f"{label} error handler targets unknown step '{target}'")
        if step.timeout and step.timeout.fallback_step_id and step.timeout.fallback_step_id not in known_steps:
            errors.append(f"{label} timeout fallback targets unknown step '{step.timeout.fallback_step_id}'")

        if in_branch and step.step_type not in _BRANCH_STEP_TYPES:
            errors.append(f"{label} parallel branches must be action or conditional steps")
        if step.step_type == StepType.PARALLEL:
            if not step.branches:
                errors.append(f"{label} parallel step has no branches")
            for branch in step.branches:
                errors.extend(self._validate_step(branch, known_steps, in_branch=True))
        elif step.branches:
            errors.append(f"{label} only parallel steps may declare branches")
        if step.step_type == StepType.LOOP and step.loop is None:
            errors.append(f"{label} loop step has no loop specification")
        if step.step_type == StepType.WAIT and step.wait_minutes is None and not step.wait_until:
            errors.append(f"{label} wait step needs wait_minutes or wait_until")
        return errors

    def _all_steps(self, steps: List[WorkflowStep]) -> List[WorkflowStep]:
        flattened: List[WorkflowStep] = []
        for step in steps:
            flattened.append(step)
            flattened.extend(self._all_steps(step.branches))
        return flattened

    # =========================================================================
    # RUN ENTRY POINTS
    # =========================================================================

    async def start_run(
        self,
        definition: WorkflowDefinition,
        actor: ActorContext,
        variables: Optional[Dict[str, Any]] = None,
        subject_entity_id: Optional[str] = None,
        retry_of: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Create a run and drive it until it completes, fails or suspends

        Raises:
            ValidationError: required variables missing
        """
        inputs = dict(variables or {})
        seeded = {var.name: var.default_value for var in definition.variables}
        seeded.update(inputs)

        missing = [
            var.name for var in definition.variables
            if var.required and seeded.get(var.name) in (None, "")
        ]
        if missing:
            raise ValidationError(
                f"Missing required variables: {', '.join(missing)}",
                details={"missing": missing},
            )

        now = utc_now()
        instance = WorkflowInstance(
            id=generate_run_id(),
            organization_id=self.organization_id,
            definition_id=definition.id,
            definition_version=definition.version,
            status=RunStatus.RUNNING,
            current_step_id=definition.steps[0].id if definition.steps else None,
            variables=seeded,
            input_variables=inputs,
            subject_entity_id=subject_entity_id,
            started_by=actor.user_id,
            started_at=now,
            retry_of=retry_of,
        )
        instance = await self.repo.create_instance(instance)

        logger.info(
            f"Started run {instance.id} of {definition.id}",
            extra={"run_id": instance.id, "definition_id": definition.id, "user_id": actor.user_id}
        )
        await self.log(instance.id, LogLevel.INFO, f"Run started by {actor.user_id}")

        return await self.advance(instance.id, definition)

    async def advance(self, instance_id: str, definition: Optional[WorkflowDefinition] = None) -> WorkflowInstance:
        """Drive a run from its persisted state"""
        instance = await self.repo.get_instance_or_raise(instance_id)
        if instance.status != RunStatus.RUNNING:
            return instance
        if instance.pending_execution_id:
            logger.debug(f"Run {instance_id} is suspended on {instance.current_step_id}")
            return instance
        run = await self._load_context(instance, definition)
        return await self._drive(run)

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        actor: ActorContext,
        outputs: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        """
        Accept the result of a suspended user_action step and continue

        Raises:
            InvalidStatusError: run not running or step not awaiting completion
            StepNotFoundError: step not in definition
            ConflictError: a concurrent completion won
        """
        instance = await self.repo.get_instance_or_raise(instance_id)
        if instance.status != RunStatus.RUNNING:
            raise InvalidStatusError(
                f"Run {instance_id} is {instance.status.value}",
                details={"status": instance.status.value},
            )
        run = await self._load_context(instance)
        step = run.definition.get_step(step_id)
        if step is None:
            raise StepNotFoundError(f"Step {step_id} not found in {run.definition.id}")
        if (
            step.step_type != StepType.USER_ACTION
            or instance.current_step_id != step_id
            or not instance.pending_execution_id
        ):
            raise InvalidStatusError(
                f"Step {step_id} is not awaiting completion",
                details={"current_step_id": instance.current_step_id},
            )

        outputs = outputs or {}
        run.variables.update(outputs)
        pending_id = instance.pending_execution_id

        # Claiming the pending step with a compare-and-swap settles concurrent completions
        claimed = await self._claim_pending(
            instance, self._next_step_updates(run, step, {"pending_execution_id": None, "timeout_at": None})
        )
        if claimed is None:
            raise ConflictError(
                f"Step {step_id} of run {instance_id} was completed or changed concurrently",
                details={"step_id": step_id},
            )
        instance = run.instance = claimed

        execution = await self._settle_pending_row(
            pending_id, StepExecutionStatus.COMPLETED, output=outputs
        )
        if execution and execution.task_entity_id:
            await self._close_task(execution.task_entity_id, "completed", actor.user_id)

        await self.log(instance.id, LogLevel.INFO, f"Step '{step.name}' completed by {actor.user_id}", step.id)
        return await self._continue(run, instance)

    async def handle_wait_elapsed(self, instance_id: str) -> WorkflowInstance:
        """Scheduler re-entry: a wait step's wake-up time has passed"""
        instance = await self.repo.get_instance_or_raise(instance_id)
        if instance.status != RunStatus.RUNNING or not instance.pending_execution_id or not is_past(instance.wake_at):
            return instance
        run = await self._load_context(instance)
        step = run.definition.get_step(instance.current_step_id or "")
        if step is None or step.step_type != StepType.WAIT:
            return instance

        pending_id = instance.pending_execution_id
        claimed = await self._claim_pending(
            instance, self._next_step_updates(run, step, {"pending_execution_id": None, "wake_at": None})
        )
        if claimed is None:
            logger.info(f"Run {instance_id} changed while waking; skipping", extra={"run_id": instance_id})
            return await self.repo.get_instance_or_raise(instance_id)
        instance = run.instance = claimed

        await self._settle_pending_row(pending_id, StepExecutionStatus.COMPLETED, output={"woke_at": format_iso(utc_now())})
        await self.log(instance.id, LogLevel.INFO, f"Step '{step.name}' wait elapsed", step.id)
        return await self._continue(run, instance)

    async def handle_timeout(self, instance_id: str, step_id: Optional[str] = None) -> WorkflowInstance:
        """
        Scheduler re-entry: a suspended step exceeded its timeout

        The step is recorded as failed. The run routes to the step's timeout
        fallback when one is declared, otherwise the run fails.
        """
        instance = await self.repo.get_instance_or_raise(instance_id)
        if instance.status != RunStatus.RUNNING or not instance.pending_execution_id or not is_past(instance.timeout_at):
            return instance
        if step_id is not None and instance.current_step_id != step_id:
            return instance
        run = await self._load_context(instance)
        step = run.definition.get_step(instance.current_step_id or "")
        if step is None:
            return instance

        error = StepTimeoutError(
            f"Step '{step.name}' timed out",
            details={"step_id": step.id, "timeout_at": format_iso(instance.timeout_at)},
        )
        fallback = step.timeout.fallback_step_id if step.timeout else None
        cleared = {"pending_execution_id": None, "timeout_at": None, "wake_at": None}
        if fallback:
            updates = {**cleared, "variables": run.variables, "current_step_id": fallback}
        else:
            updates = {
                **cleared,
                "status": RunStatus.FAILED,
                "error": error.message,
                "completed_at": utc_now(),
            }

        pending_id = instance.pending_execution_id
        claimed = await self._claim_pending(instance, updates)
        if claimed is None:
            logger.info(f"Run {instance_id} changed while timing out; skipping", extra={"run_id": instance_id})
            return await self.repo.get_instance_or_raise(instance_id)
        instance = run.instance = claimed

        execution = await self._settle_pending_row(pending_id, StepExecutionStatus.FAILED, error=error)
        if execution and execution.task_entity_id:
            await self._close_task(execution.task_entity_id, "expired", None)

        await self.log(instance.id, LogLevel.WARNING, error.message, step.id)
        if not fallback:
            await self.log(instance.id, LogLevel.ERROR, f"Run failed: {error.message}")
            return instance
        logger.info(
            f"Run {instance_id} timed out on {step.id}; routing to {fallback}",
            extra={"run_id": instance_id, "step_id": step.id}
        )
        return await self._drive(run)

    async def release_suspension(self, instance: WorkflowInstance, reason: str) -> None:
        """Settle the pending step of a run that will not resume (cancel)"""
        if instance.pending_execution_id:
            await self._release_execution(instance.pending_execution_id, reason)

    async def _release_execution(self, execution_id: str, reason: str) -> None:
        execution = await self._settle_pending_row(
            execution_id,
            StepExecutionStatus.SKIPPED,
            error=EngineError(reason, error_code="RUN_CANCELLED"),
        )
        if execution and execution.task_entity_id:
            await self._close_task(execution.task_entity_id, "cancelled", None)

    # =========================================================================
    # DRIVE LOOP
    # =========================================================================

    async def _load_context(
        self, instance: WorkflowInstance, definition: Optional[WorkflowDefinition] = None
    ) -> RunContext:
        if definition is None:
            definition = await self.repo.get_definition_or_raise(instance.definition_id)
        run = RunContext(instance=instance, definition=definition, variables=dict(instance.variables))
        for execution in await self.repo.list_step_executions(instance.id):
            run.sequence = max(run.sequence, execution.sequence)
            key = (execution.step_id, execution.branch_index, execution.iteration)
            run.attempts[key] = run.attempts.get(key, 0) + 1
        return run

    async def _continue(self, run: RunContext, instance: WorkflowInstance) -> WorkflowInstance:
        if instance.status == RunStatus.COMPLETED:
            await self.log(instance.id, LogLevel.INFO, "Run completed")
            return instance
        return await self._drive(run)

    async def _drive(self, run: RunContext) -> WorkflowInstance:
        """
        Drive the run while holding its lease

        Only the lease holder executes steps. A caller that finds the lease
        held returns at once; the holder re-checks the run after letting go
        and picks up a resume or completion that landed meanwhile.
        """
        while True:
            lease = await self._claim_lease(run.instance.id)
            if lease is None:
                return await self.repo.get_instance_or_raise(run.instance.id)
            try:
                instance = await self._drive_steps(run)
            finally:
                instance = await self._release_lease(run.instance.id, lease)
            if instance.status != RunStatus.RUNNING or instance.pending_execution_id:
                return instance
            run = await self._load_context(instance, run.definition)

    async def _claim_lease(self, instance_id: str) -> Optional[str]:
        lease = generate_driver_lease()
        for _ in range(_COMMIT_ATTEMPTS):
            instance = await self.repo.get_instance_or_raise(instance_id)
            if instance.driver_lease:
                if not is_past(instance.driver_lease_expires_at):
                    logger.debug(
                        f"Run {instance_id} is being driven under {instance.driver_lease}",
                        extra={"run_id": instance_id}
                    )
                    return None
                logger.warning(
                    f"Taking over expired lease {instance.driver_lease} on run {instance_id}",
                    extra={"run_id": instance_id}
                )
            try:
                await self.repo.update_instance(instance, {
                    "driver_lease": lease,
                    "driver_lease_expires_at": add_seconds(utc_now(), settings.run_driver_lease_seconds),
                })
                return lease
            except ConcurrencyError:
                continue
        raise ConcurrencyError(f"Run {instance_id} kept changing; could not claim it for driving")

    async def _release_lease(self, instance_id: str, lease: str) -> WorkflowInstance:
        for _ in range(_COMMIT_ATTEMPTS):
            instance = await self.repo.get_instance_or_raise(instance_id)
            if instance.driver_lease != lease:
                return instance
            try:
                return await self.repo.update_instance(instance, {name: None for name in _LEASE_FIELDS})
            except ConcurrencyError:
                continue
        raise ConcurrencyError(f"Run {instance_id} kept changing; could not release lease {lease}")

    async def _claim_pending(
        self, instance: WorkflowInstance, updates: Dict[str, Any]
    ) -> Optional[WorkflowInstance]:
        """Clear the pending step; None when another caller settled it first"""
        pending_id = instance.pending_execution_id
        for _ in range(_COMMIT_ATTEMPTS):
            try:
                return await self.repo.update_instance(instance, updates)
            except ConcurrencyError:
                instance = await self.repo.get_instance_or_raise(instance.id)
                if instance.status != RunStatus.RUNNING or instance.pending_execution_id != pending_id:
                    return None
        return None

    async def _drive_steps(self, run: RunContext) -> WorkflowInstance:
        instance = run.instance
        steps_run = 0

        while True:
            instance = await self.repo.get_instance_or_raise(instance.id)
            run.instance = instance
            if instance.status != RunStatus.RUNNING:
                logger.info(
                    f"Run {instance.id} is {instance.status.value}; not advancing",
                    extra={"run_id": instance.id, "status": instance.status.value}
                )
                return instance
            if instance.pending_execution_id:
                return instance

            if instance.current_step_id is None:
                instance = await self._commit(instance, {
                    "status": RunStatus.COMPLETED,
                    "completed_at": utc_now(),
                })
                if instance.status == RunStatus.COMPLETED:
                    await self.log(instance.id, LogLevel.INFO, "Run completed")
                return instance

            step = run.definition.get_step(instance.current_step_id)
            steps_run += 1
            if step is None or steps_run > MAX_STEPS_PER_ADVANCE:
                error: DomainError = (
                    StepNotFoundError(f"Step {instance.current_step_id} not found in {run.definition.id}")
                    if step is None
                    else EngineError(f"Run exceeded {MAX_STEPS_PER_ADVANCE} steps without finishing")
                )
                return await self._fail_run(run, error)

            outcome = await self._run_step(run, step)
            instance = await self._settle(run, step, outcome)
            if instance.status != RunStatus.RUNNING:
                return instance

    async def _settle(self, run: RunContext, step: WorkflowStep, outcome: StepOutcome) -> WorkflowInstance:
        """Persist a step outcome on the run and move current_step_id"""
        if outcome.status in (StepExecutionStatus.COMPLETED, StepExecutionStatus.SKIPPED):
            instance = await self._commit(run.instance, self._next_step_updates(run, step))
            if instance.status == RunStatus.COMPLETED:
                await self.log(instance.id, LogLevel.INFO, "Run completed")
            return instance

        if outcome.status == StepExecutionStatus.PENDING:
            instance = await self._commit(run.instance, {
                "variables": run.variables,
                "pending_execution_id": outcome.execution_id,
                "wake_at": outcome.wake_at,
                "timeout_at": outcome.timeout_at,
            })
            if instance.status == RunStatus.CANCELLED and outcome.execution_id:
                # Cancelled while suspending: nothing will ever resume this step
                await self._release_execution(outcome.execution_id, f"Run cancelled during step '{step.name}'")
            return instance

        error = outcome.error or EngineError(f"Step {step.id} failed")
        handler_step_id = self._find_error_handler(run.definition, step, error)
        if handler_step_id:
            logger.info(
                f"Routing {error.error_code} from {step.id} to {handler_step_id}",
                extra={"run_id": run.instance.id, "step_id": step.id, "error_code": error.error_code}
            )
            await self.log(
                run.instance.id, LogLevel.WARNING,
                f"Error handler routes {error.error_code} to step '{handler_step_id}'", step.id
            )
            return await self._commit(run.instance, {
                "variables": run.variables,
                "current_step_id": handler_step_id,
            })
        return await self._fail_run(run, error)

    def _next_step_updates(
        self, run: RunContext, step: WorkflowStep, extra: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        updates: Dict[str, Any] = {"variables": run.variables, **(extra or {})}
        next_step_id = self._next_step_id(run.definition, step)
        updates["current_step_id"] = next_step_id
        if next_step_id is None:
            updates["status"] = RunStatus.COMPLETED
            updates["completed_at"] = utc_now()
        return updates

    def _next_step_id(self, definition: WorkflowDefinition, step: WorkflowStep) -> Optional[str]:
        if step.next_step_id:
            return step.next_step_id
        index = definition.step_index(step.id)
        if 0 <= index < len(definition.steps) - 1:
            return definition.steps[index + 1].id
        return None

    def _find_error_handler(
        self, definition: WorkflowDefinition, step: WorkflowStep, error: DomainError
    ) -> Optional[str]:
        """Most specific error code first, then parent codes, then `default`"""
        codes: List[str] = [error.error_code]
        for cls in type(error).__mro__:
            code = getattr(cls, "error_code", None)
            if isinstance(code, str) and code not in codes:
                codes.append(code)
        codes.append("default")

        for handlers in (step.error_handler, definition.exception_handlers):
            for code in codes:
                target = handlers.get(code)
                if target and definition.get_step(target):
                    return target
        return None

    async def _fail_run(self, run: RunContext, error: DomainError) -> WorkflowInstance:
        instance = await self._commit(run.instance, {
            "variables": run.variables,
            "status": RunStatus.FAILED,
            "error": error.message,
            "completed_at": utc_now(),
        })
        if instance.status == RunStatus.FAILED:
            logger.warning(
                f"Run {instance.id} failed: {error.message}",
                extra={"run_id": instance.id, "error_code": error.error_code}
            )
            await self.log(instance.id, LogLevel.ERROR, f"Run failed: {error.message}")
        return instance

    # =========================================================================
    # STEP EXECUTION
    # =========================================================================

    async def _run_step(self, run: RunContext, step: WorkflowStep) -> StepOutcome:
        started_at = utc_now()
        sequence = run.next_sequence()
        await self.log(run.instance.id, LogLevel.INFO, f"Step '{step.name}' started", step.id)

        guardrails = list(run.definition.guardrails) + list(step.guardrails)
        if step.step_type == StepType.LOOP:
            body = lambda: self._run_loop(run, step, sequence)
        elif step.step_type == StepType.PARALLEL:
            body = lambda: self._run_parallel(run, step)
        elif step.step_type == StepType.USER_ACTION:
            body = lambda: self._suspend_for_user(run, step)
        elif step.step_type == StepType.WAIT:
            body = lambda: self._suspend_for_wait(run, step)
        else:
            body = lambda: self._run_actions(run, step)

        outcome = await self._attempt(run, step, guardrails, body)
        if outcome.record:
            execution = await self._record(run, step, sequence, started_at, outcome)
            outcome.execution_id = execution.id

        if outcome.status == StepExecutionStatus.FAILED:
            message = outcome.error.message if outcome.error else "unknown error"
            await self.log(run.instance.id, LogLevel.ERROR, f"Step '{step.name}' failed: {message}", step.id)
        elif outcome.status == StepExecutionStatus.PENDING:
            await self.log(run.instance.id, LogLevel.INFO, f"Step '{step.name}' suspended", step.id)
        else:
            await self.log(run.instance.id, LogLevel.INFO, f"Step '{step.name}' {outcome.status.value}", step.id)
        return outcome

    async def _attempt(
        self,
        run: RunContext,
        step: WorkflowStep,
        guardrails: List[StepGuardrail],
        body: Callable[[], Awaitable[StepOutcome]]
    ) -> StepOutcome:
        """Run guardrails then the step body, turning errors into a failed outcome"""
        try:
            await self.guardrails.enforce(guardrails, run.instance.subject_entity_id, run.variables)
            return await body()
        except StoreError as e:
            return StepOutcome(
                StepExecutionStatus.FAILED,
                error=ActionExecutionError(
                    f"Step {step.id} failed ({e.error_code})",
                    details={"cause": e.error_code, "reason": e.message},
                ),
            )
        except DomainError as e:
            return StepOutcome(StepExecutionStatus.FAILED, error=e)
        except Exception as e:
            logger.error(
                f"Step {step.id} crashed: {e}",
                exc_info=True,
                extra={"run_id": run.instance.id, "step_id": step.id}
            )
            return StepOutcome(
                StepExecutionStatus.FAILED,
                error=EngineError(f"Step {step.id} crashed", details={"reason": f"{type(e).__name__}: {e}"}),
            )

    async def _run_actions(self, run: RunContext, step: WorkflowStep) -> StepOutcome:
        if step.step_type == StepType.CONDITIONAL and step.condition is not None:
            if not self.conditions.evaluate(step.condition, run.context()):
                logger.debug(f"Condition of {step.id} not met", extra={"run_id": run.instance.id})
                return StepOutcome(StepExecutionStatus.COMPLETED, output={"condition_met": False})

        results = []
        for action in step.actions:
            results.append(await self.executor.execute(action, run.variables, run.reserved))
        output: Dict[str, Any] = {"actions": results}
        if step.step_type == StepType.CONDITIONAL:
            output["condition_met"] = True
        return StepOutcome(StepExecutionStatus.COMPLETED, output=output)

    async def _run_parallel(self, run: RunContext, step: WorkflowStep) -> StepOutcome:
        """Fan out branches concurrently, fan in before the run advances"""
        sequences = [run.next_sequence() for _ in step.branches]
        outcomes = await asyncio.gather(*[
            self._run_branch(run, branch, index, sequences[index])
            for index, branch in enumerate(step.branches)
        ])
        output = {"branches": [o.output for o in outcomes]}
        failed = [o for o in outcomes if o.status == StepExecutionStatus.FAILED]
        if failed:
            return StepOutcome(StepExecutionStatus.FAILED, output=output, error=failed[0].error)
        return StepOutcome(StepExecutionStatus.COMPLETED, output=output)

    async def _run_branch(self, run: RunContext, branch: WorkflowStep, index: int, sequence: int) -> StepOutcome:
        started_at = utc_now()
        if branch.step_type in _BRANCH_STEP_TYPES:
            body = lambda: self._run_actions(run, branch)
        else:
            async def body() -> StepOutcome:
                raise ValidationError(f"Branch {branch.id} has unsupported type {branch.step_type.value}")
        outcome = await self._attempt(run, branch, list(branch.guardrails), body)
        await self._record(run, branch, sequence, started_at, outcome, branch_index=index)
        return outcome

    async def _run_loop(self, run: RunContext, step: WorkflowStep, sequence: int) -> StepOutcome:
        """Run the step's actions once per item, one row per iteration"""
        loop = step.loop
        if loop is None:
            raise ValidationError(f"Loop step {step.id} has no loop specification")

        match = TOKEN_PATTERN.fullmatch(loop.items.strip())
        items_path = match.group(1) if match else loop.items.strip()
        items = get_path(items_path, run.context())
        if items is None:
            items = []
        if not isinstance(items, list):
            raise ValidationError(
                f"Loop step {step.id} expects a list in '{loop.items}'",
                details={"items": loop.items},
            )
        if len(items) > loop.max_iterations:
            logger.warning(
                f"Loop {step.id} capped at {loop.max_iterations} of {len(items)} items",
                extra={"run_id": run.instance.id, "step_id": step.id}
            )
            items = items[:loop.max_iterations]
        if not items:
            return StepOutcome(StepExecutionStatus.SKIPPED, output={"iterations": 0})

        results = []
        for index, item in enumerate(items):
            run.variables[loop.item_variable] = item
            run.variables[loop.index_variable] = index
            started_at = utc_now()
            iteration_sequence = sequence if index == 0 else run.next_sequence()
            outcome = await self._attempt(run, step, [], lambda: self._run_actions(run, step))
            await self._record(run, step, iteration_sequence, started_at, outcome, iteration=index)
            if outcome.status == StepExecutionStatus.FAILED:
                outcome.record = False
                return outcome
            results.append(outcome.output)

        return StepOutcome(
            StepExecutionStatus.COMPLETED,
            output={"iterations": len(results)},
            record=False,
        )

    async def _suspend_for_user(self, run: RunContext, step: WorkflowStep) -> StepOutcome:
        """Create a task for a human worker; the run waits for complete_step"""
        resolver = VariableResolver(run.context())
        assignee_id = resolver.resolve(step.assignee_id) if step.assignee_id else None
        if isinstance(assignee_id, str) and TOKEN_PATTERN.search(assignee_id):
            logger.warning(f"Unresolved assignee {assignee_id} on {step.id}", extra={"run_id": run.instance.id})
            assignee_id = None
        title = resolver.resolve(step.task_title or step.name)
        timeout_at = add_minutes(utc_now(), step.timeout.duration_minutes) if step.timeout else None

        task = await self.store.create_entity(
            self.organization_id,
            entity_type=EntityType.TASK.value,
            entity_name=str(title),
            entity_code=generate_task_code(),
            smart_code=SmartCode.TASK.value,
            metadata={
                "run_id": run.instance.id,
                "step_id": step.id,
                "assignee_id": assignee_id,
                "due_at": timeout_at,
                "status": "open",
            },
        )
        if assignee_id:
            await self.store.create_relationship(
                self.organization_id,
                from_entity_id=task.id,
                to_entity_id=str(assignee_id),
                relationship_type=RelationshipType.ASSIGNED_TO.value,
                smart_code=SmartCode.TASK_ASSIGNMENT.value,
            )

        return StepOutcome(
            StepExecutionStatus.PENDING,
            output={"task_entity_id": task.id, "assignee_id": assignee_id},
            task_entity_id=task.id,
            timeout_at=timeout_at,
        )

    async def _suspend_for_wait(self, run: RunContext, step: WorkflowStep) -> StepOutcome:
        """Record the wake-up time; the scheduler re-enters the engine"""
        if step.wait_until:
            raw = VariableResolver(run.context()).resolve(step.wait_until)
            try:
                wake_at = parse_iso(raw)
            except (TypeError, ValueError):
                raise ValidationError(
                    f"Wait step {step.id} has invalid wait_until: {raw}",
                    details={"wait_until": str(raw)},
                )
        else:
            wake_at = add_minutes(utc_now(), step.wait_minutes or 0)

        return StepOutcome(
            StepExecutionStatus.PENDING,
            output={"wake_at": format_iso(wake_at)},
            wake_at=wake_at,
        )

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    async def _record(
        self,
        run: RunContext,
        step: WorkflowStep,
        sequence: int,
        started_at: datetime,
        outcome: StepOutcome,
        branch_index: Optional[int] = None,
        iteration: Optional[int] = None
    ) -> StepExecution:
        """Write the StepExecution row once the step has finished or suspended"""
        error = outcome.error
        execution = StepExecution(
            id=generate_step_execution_id(),
            instance_id=run.instance.id,
            step_id=step.id,
            step_name=step.name,
            step_type=step.step_type,
            status=outcome.status,
            sequence=sequence,
            attempt=run.next_attempt(step.id, branch_index, iteration),
            branch_index=branch_index,
            iteration=iteration,
            started_at=started_at,
            completed_at=None if outcome.status == StepExecutionStatus.PENDING else utc_now(),
            error=error.message if error else None,
            error_code=error.error_code if error else None,
            error_detail=self._error_detail(error),
            output=outcome.output,
            task_entity_id=outcome.task_entity_id,
        )
        return await self.repo.create_step_execution(execution)

    async def _settle_pending_row(
        self,
        execution_id: str,
        status: StepExecutionStatus,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[DomainError] = None
    ) -> Optional[StepExecution]:
        execution = await self.repo.get_step_execution(execution_id)
        if execution is None:
            logger.warning(f"Pending step execution {execution_id} not found")
            return None
        updates: Dict[str, Any] = {"status": status, "completed_at": utc_now()}
        if output is not None:
            updates["output"] = {**execution.output, **output}
        if error is not None:
            updates.update({
                "error": error.message,
                "error_code": error.error_code,
                "error_detail": self._error_detail(error),
            })
        return await self.repo.update_step_execution(execution, updates)

    async def _close_task(self, task_entity_id: str, status: str, closed_by: Optional[str]) -> None:
        task = await self.store.get_entity(self.organization_id, task_entity_id)
        if task is None:
            return
        await self.store.update_entity(
            self.organization_id,
            task_entity_id,
            {
                "metadata.status": status,
                "metadata.closed_by": closed_by,
                "metadata.closed_at": utc_now(),
            },
        )

    def _error_detail(self, error: Optional[DomainError]) -> Optional[str]:
        if error is None:
            return None
        return f"{type(error).__name__}: {error.message} {error.details}"

    async def _commit(self, instance: WorkflowInstance, updates: Dict[str, Any]) -> WorkflowInstance:
        """
        Compare-and-swap instance updates

        On a lost race the run is re-read and the updates re-applied. Once
        the run left `running` (paused/cancelled concurrently), status
        changes are dropped but the step's results are still recorded.
        A finished run is never marked suspended.
        """
        for _ in range(_COMMIT_ATTEMPTS):
            try:
                return await self.repo.update_instance(instance, updates)
            except ConcurrencyError:
                instance = await self.repo.get_instance_or_raise(instance.id)
                if instance.status != RunStatus.RUNNING:
                    dropped = _TERMINAL_FIELDS | (_SUSPENSION_FIELDS if instance.status.is_terminal else set())
                    updates = {k: v for k, v in updates.items() if k not in dropped}
                    if not updates:
                        return instance
        raise ConcurrencyError(f"Run {instance.id} kept changing; giving up after {_COMMIT_ATTEMPTS} attempts")

    async def log(self, instance_id: str, level: LogLevel, message: str, step_id: Optional[str] = None) -> None:
        """Append a line to the run log"""
        await self.repo.append_log(RunLogEntry(
            id=generate_log_id(),
            instance_id=instance_id,
            level=level,
            message=message,
            step_id=step_id,
            timestamp=utc_now(),
        ))
