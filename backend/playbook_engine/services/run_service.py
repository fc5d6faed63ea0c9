"""Run Service - Query and control surface for playbook runs"""
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import (
    ActorContext, AuditEvent, RunDetailOptions, SecurityContext, StepExecution,
    WorkflowDefinition, WorkflowInstance
)
from ..domain.enums import (
    RunStatus, RunPriority, RunControlAction, StepExecutionStatus, Permission, LogLevel,
    AuditAction, AuditOutcome
)
from ..domain.errors import (
    PermissionDeniedError, InvalidActionError, InvalidStatusError, AlreadyCancelledError,
    CancellationFailedError, ConcurrencyError, StoreError, ValidationError
)
from ..engine.audit_writer import AuditWriter
from ..engine.engine import WorkflowEngine
from ..engine.permission_guard import PermissionGuard
from ..repositories.store import StoreAdapter
from ..repositories.workflow_repo import WorkflowRepository
from .idempotency_service import IdempotencyService, IdempotentResult
from .notification_service import get_default_notifier
from ..utils.time import utc_now, add_seconds, seconds_between
from ..utils.logger import get_logger

logger = get_logger(__name__)

RUN_RESOURCE = "workflow_run"
START_RUN_ENDPOINT = "POST /runs"
RETRY_RUN_ENDPOINT = "POST /runs/{run_id}/retry"

_TRANSITION_ATTEMPTS = 5
_DONE_STEP_STATUSES = (StepExecutionStatus.COMPLETED, StepExecutionStatus.SKIPPED)


class RunService:
    """
    Service for run operations

    Every entry point checks permissions against freshly resolved
    security context. Denials and control actions are audited.
    """

    def __init__(self, store: StoreAdapter, organization_id: str, engine: Optional[WorkflowEngine] = None):
        self.store = store
        self.organization_id = organization_id
        self.repo = WorkflowRepository(store, organization_id)
        self.guard = PermissionGuard(store, organization_id)
        self.audit = AuditWriter(store, organization_id)
        self.engine = engine or WorkflowEngine(store, organization_id, notifier=get_default_notifier())

    # =========================================================================
    # Start / Retry
    # =========================================================================

    async def start_run(
        self,
        definition_id: str,
        actor: ActorContext,
        variables: Optional[Dict[str, Any]] = None,
        subject_entity_id: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> IdempotentResult:
        """Start a run of a definition; deduplicated when a key is supplied"""
        security = await self.guard.resolve_security_context(actor.user_id)
        if not self.guard.has_permission(security, Permission.PLAYBOOK_EXECUTE.value):
            await self._deny(actor, Permission.PLAYBOOK_EXECUTE, "workflow_definition", definition_id, "start_run")

        definition = await self.repo.get_definition_or_raise(definition_id)
        variables = variables or {}

        async def handler() -> Dict[str, Any]:
            instance = await self.engine.start_run(
                definition, actor, variables, subject_entity_id=subject_entity_id
            )
            await self.audit.write_run_action(
                actor, AuditAction.RUN_STARTED, instance.id,
                context={"definition_id": definition.id, "status": instance.status.value},
            )
            return instance.model_dump(mode="json")

        return await IdempotencyService(self.store, self.organization_id).process_request(
            idempotency_key,
            START_RUN_ENDPOINT,
            {"definition_id": definition_id, "variables": variables, "subject_entity_id": subject_entity_id},
            handler,
            actor_id=actor.user_id,
            success_status=201,
        )

    async def retry_run(
        self,
        run_id: str,
        actor: ActorContext,
        idempotency_key: Optional[str] = None
    ) -> IdempotentResult:
        """Start a fresh run with the inputs of a failed or cancelled one"""
        instance = await self.repo.get_instance_or_raise(run_id)
        security = await self.guard.resolve_security_context(actor.user_id)
        if not self._can_execute(security):
            await self._deny(actor, Permission.PLAYBOOK_EXECUTE, RUN_RESOURCE, run_id, "retry_run")
        if instance.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            raise InvalidStatusError(
                f"Only failed or cancelled runs can be retried; run is {instance.status.value}",
                details={"status": instance.status.value},
            )
        definition = await self.repo.get_definition_or_raise(instance.definition_id)

        async def handler() -> Dict[str, Any]:
            retried = await self.engine.start_run(
                definition,
                actor,
                instance.input_variables,
                subject_entity_id=instance.subject_entity_id,
                retry_of=instance.id,
            )
            await self.audit.write_run_action(
                actor, AuditAction.RUN_RETRIED, instance.id, context={"new_run_id": retried.id}
            )
            return retried.model_dump(mode="json")

        return await IdempotencyService(self.store, self.organization_id).process_request(
            idempotency_key,
            RETRY_RUN_ENDPOINT.format(run_id=run_id),
            {"run_id": run_id},
            handler,
            actor_id=actor.user_id,
            success_status=201,
        )

    # =========================================================================
    # Run Detail
    # =========================================================================

    async def get_run_detail(
        self,
        run_id: str,
        actor: ActorContext,
        options: Optional[RunDetailOptions] = None
    ) -> Dict[str, Any]:
        """
        Run plus requested enrichments, progress/ETA and permitted actions

        Raises:
            RunNotFoundError / WorkflowNotFoundError: 404
            PermissionDeniedError: caller can neither execute nor manage runs
        """
        options = options or RunDetailOptions()
        instance = await self.repo.get_instance_or_raise(run_id)
        definition = await self.repo.get_definition_or_raise(instance.definition_id)
        security = await self.guard.resolve_security_context(actor.user_id)

        can_view = self._can_execute(security) or self.guard.has_permission(
            security, "playbook_run:read", {"owner_id": instance.started_by}
        )
        if not can_view:
            await self._deny(actor, Permission.PLAYBOOK_EXECUTE, RUN_RESOURCE, run_id, "get_run_detail")

        permitted = self._permitted_actions(security, instance, actor)
        read_sensitive = self.guard.has_permission(security, Permission.READ_SENSITIVE.value)

        executions = await self.repo.list_step_executions(instance.id)
        detail: Dict[str, Any] = {
            "run": instance.model_dump(mode="json"),
            "definition": {
                "id": definition.id,
                "name": definition.name,
                "version": definition.version,
            },
            "progress": self._progress(instance, definition, executions),
            "permitted_actions": permitted,
        }

        if options.include_steps:
            detail["steps"] = [
                self._step_view(execution, options.include_step_details, read_sensitive)
                for execution in executions[:options.step_limit]
            ]
            detail["steps_truncated"] = len(executions) > options.step_limit

        if options.include_logs:
            if permitted["can_view_logs"]:
                logs = await self.repo.list_logs(instance.id, min_level=options.log_level)
                detail["logs"] = [log.model_dump(mode="json") for log in logs]
            else:
                detail["logs"] = None

        if options.include_metrics:
            detail["metrics"] = self._metrics(executions)

        if options.include_timeline:
            detail["timeline"] = self._timeline(instance, executions)

        return detail

    def _permitted_actions(
        self, security: SecurityContext, instance: WorkflowInstance, actor: ActorContext
    ) -> Dict[str, bool]:
        can_manage = self.guard.has_permission(security, Permission.RUN_MANAGE.value)
        is_initiator = instance.started_by == actor.user_id
        terminal = instance.status.is_terminal
        return {
            "can_cancel": not terminal and (
                is_initiator or can_manage
                or self.guard.has_permission(security, Permission.RUN_CANCEL.value)
            ),
            "can_retry": instance.status in (RunStatus.FAILED, RunStatus.CANCELLED) and self._can_execute(security),
            "can_view_logs": can_manage or self.guard.has_permission(security, Permission.RUN_VIEW_LOGS.value),
            "can_modify": can_manage and not terminal,
        }

    def _progress(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, executions: List[StepExecution]
    ) -> Dict[str, Any]:
        """completed_steps/total_steps with an ETA extrapolated from elapsed time"""
        latest: Dict[str, StepExecution] = {}
        for execution in executions:
            if execution.branch_index is not None:
                continue
            current = latest.get(execution.step_id)
            if current is None or execution.sequence >= current.sequence:
                latest[execution.step_id] = execution

        total_steps = len(definition.steps)
        completed_steps = sum(
            1 for step in definition.steps
            if step.id in latest and latest[step.id].status in _DONE_STEP_STATUSES
        )
        ratio = completed_steps / total_steps if total_steps else 0.0

        estimated_completion = None
        if ratio > 0 and not instance.status.is_terminal:
            elapsed = seconds_between(instance.started_at)
            estimated_completion = add_seconds(instance.started_at, elapsed / ratio)

        return {
            "completed_steps": completed_steps,
            "total_steps": total_steps,
            "percent_complete": round(ratio * 100, 1),
            "current_step_id": instance.current_step_id,
            "estimated_completion": estimated_completion.isoformat() if estimated_completion else None,
        }

    def _step_view(self, execution: StepExecution, include_details: bool, read_sensitive: bool) -> Dict[str, Any]:
        view = execution.model_dump(
            mode="json",
            include={
                "id", "step_id", "step_name", "step_type", "status", "sequence", "attempt",
                "branch_index", "iteration", "started_at", "completed_at", "error", "error_code",
            },
        )
        view["duration_seconds"] = execution.duration_seconds
        if include_details:
            view["output"] = execution.output
            view["task_entity_id"] = execution.task_entity_id
            view["error_detail"] = execution.error_detail if read_sensitive else None
        return view

    def _metrics(self, executions: List[StepExecution]) -> Dict[str, Any]:
        durations = [
            (execution.step_id, execution.duration_seconds)
            for execution in executions
            if execution.duration_seconds is not None
        ]
        by_status: Dict[str, int] = {}
        for execution in executions:
            by_status[execution.status.value] = by_status.get(execution.status.value, 0) + 1

        finished = by_status.get(StepExecutionStatus.COMPLETED.value, 0) + by_status.get(StepExecutionStatus.FAILED.value, 0)
        longest = max(durations, key=lambda item: item[1]) if durations else None
        total_duration = sum(duration for _, duration in durations)
        return {
            "total_executions": len(executions),
            "by_status": by_status,
            "total_duration_seconds": round(total_duration, 3),
            "average_step_duration_seconds": round(total_duration / len(durations), 3) if durations else None,
            "longest_step": {"step_id": longest[0], "duration_seconds": longest[1]} if longest else None,
            "failure_rate": (
                round(by_status.get(StepExecutionStatus.FAILED.value, 0) / finished, 3) if finished else 0.0
            ),
        }

    def _timeline(self, instance: WorkflowInstance, executions: List[StepExecution]) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = [
            {"timestamp": instance.started_at, "event": "run_started", "step_id": None}
        ]
        for execution in executions:
            events.append({
                "timestamp": execution.started_at,
                "event": "step_started",
                "step_id": execution.step_id,
            })
            if execution.completed_at:
                events.append({
                    "timestamp": execution.completed_at,
                    "event": f"step_{execution.status.value}",
                    "step_id": execution.step_id,
                })
        if instance.completed_at and instance.status.is_terminal:
            events.append({
                "timestamp": instance.completed_at,
                "event": f"run_{instance.status.value}",
                "step_id": None,
            })
        events.sort(key=lambda event: event["timestamp"])
        return [{**event, "timestamp": event["timestamp"].isoformat()} for event in events]

    # =========================================================================
    # Control
    # =========================================================================

    async def update_run(
        self,
        run_id: str,
        actor: ActorContext,
        action: str,
        priority: Optional[str] = None
    ) -> WorkflowInstance:
        """
        Pause, resume or re-prioritise a run

        Raises:
            PermissionDeniedError: caller lacks playbook_run:manage
            InvalidActionError: unknown action
            InvalidStatusError: transition not legal from the current status
        """
        await self.repo.get_instance_or_raise(run_id)
        security = await self.guard.resolve_security_context(actor.user_id)
        if not self.guard.has_permission(security, Permission.RUN_MANAGE.value):
            await self._deny(actor, Permission.RUN_MANAGE, RUN_RESOURCE, run_id, f"update_run:{action}")

        try:
            control = RunControlAction(action)
        except ValueError:
            raise InvalidActionError(
                f"Unknown action: {action}",
                details={"allowed": [a.value for a in RunControlAction]},
            )

        if control == RunControlAction.PAUSE:
            instance = await self._transition(
                run_id, self._require_status(RunStatus.RUNNING, "pause"), {"status": RunStatus.PAUSED}
            )
            await self.audit.write_run_action(actor, AuditAction.RUN_PAUSED, run_id)
            await self.engine.log(run_id, LogLevel.INFO, f"Run paused by {actor.user_id}")
            return instance

        if control == RunControlAction.RESUME:
            await self._transition(
                run_id, self._require_status(RunStatus.PAUSED, "resume"), {"status": RunStatus.RUNNING}
            )
            await self.audit.write_run_action(actor, AuditAction.RUN_RESUMED, run_id)
            await self.engine.log(run_id, LogLevel.INFO, f"Run resumed by {actor.user_id}")
            return await self.engine.advance(run_id)

        try:
            new_priority = RunPriority(priority) if priority else None
        except ValueError:
            new_priority = None
        if new_priority is None:
            raise ValidationError(
                f"Invalid priority: {priority}",
                details={"allowed": [p.value for p in RunPriority]},
            )

        def not_terminal(instance: WorkflowInstance) -> None:
            if instance.status.is_terminal:
                raise InvalidStatusError(
                    f"Cannot change priority of a {instance.status.value} run",
                    details={"status": instance.status.value},
                )

        instance = await self._transition(run_id, not_terminal, {"priority": new_priority})
        await self.audit.write_run_action(
            actor, AuditAction.RUN_PRIORITY_UPDATED, run_id, context={"priority": new_priority.value}
        )
        return instance

    async def cancel_run(self, run_id: str, actor: ActorContext, reason: Optional[str] = None) -> WorkflowInstance:
        """
        Cancel a run (initiator or manager)

        Raises:
            PermissionDeniedError: neither initiator nor holder of playbook_run:cancel
            AlreadyCancelledError: run already cancelled
            InvalidStatusError: run already completed or failed
            CancellationFailedError: the cancel write did not go through
        """
        instance = await self.repo.get_instance_or_raise(run_id)
        if instance.started_by != actor.user_id:
            security = await self.guard.resolve_security_context(actor.user_id)
            if not (
                self.guard.has_permission(security, Permission.RUN_CANCEL.value)
                or self.guard.has_permission(security, Permission.RUN_MANAGE.value)
            ):
                await self._deny(actor, Permission.RUN_CANCEL, RUN_RESOURCE, run_id, "cancel_run")

        def cancellable(current: WorkflowInstance) -> None:
            if current.status == RunStatus.CANCELLED:
                raise AlreadyCancelledError(f"Run {run_id} is already cancelled")
            if current.status.is_terminal:
                raise InvalidStatusError(
                    f"Cannot cancel a {current.status.value} run",
                    details={"status": current.status.value},
                )

        try:
            instance = await self._transition(
                run_id, cancellable, {"status": RunStatus.CANCELLED, "completed_at": utc_now()}
            )
        except (ConcurrencyError, StoreError) as e:
            logger.error(f"Cancel of {run_id} failed: {e}", extra={"run_id": run_id})
            await self.audit.write_run_action(
                actor, AuditAction.RUN_CANCELLED, run_id, outcome=AuditOutcome.FAILURE,
                context={"reason": reason, "error": str(e)},
            )
            raise CancellationFailedError(f"Failed to cancel run {run_id}")

        await self.engine.release_suspension(instance, f"Run cancelled by {actor.user_id}")
        await self.engine.log(run_id, LogLevel.INFO, f"Run cancelled by {actor.user_id}" + (f": {reason}" if reason else ""))
        await self.audit.write_run_action(actor, AuditAction.RUN_CANCELLED, run_id, context={"reason": reason})
        logger.info(f"Run {run_id} cancelled", extra={"run_id": run_id, "user_id": actor.user_id})
        return instance

    async def complete_step(
        self,
        run_id: str,
        step_id: str,
        actor: ActorContext,
        outputs: Optional[Dict[str, Any]] = None
    ) -> WorkflowInstance:
        """Complete a suspended user_action step (assignee or manager)"""
        instance = await self.repo.get_instance_or_raise(run_id)
        security = await self.guard.resolve_security_context(actor.user_id)

        assignee_id = None
        if instance.pending_execution_id:
            pending = await self.repo.get_step_execution(instance.pending_execution_id)
            if pending and pending.task_entity_id:
                task = await self.store.get_entity(self.organization_id, pending.task_entity_id)
                assignee_id = task.metadata.get("assignee_id") if task else None

        allowed = self.guard.has_permission(security, Permission.RUN_MANAGE.value) or (
            actor.user_id == assignee_id
            if assignee_id
            else self.guard.has_permission(security, Permission.PLAYBOOK_EXECUTE.value)
        )
        if not allowed:
            await self._deny(actor, Permission.RUN_MANAGE, RUN_RESOURCE, run_id, f"complete_step:{step_id}")

        instance = await self.engine.complete_step(run_id, step_id, actor, outputs)
        await self.audit.write_run_action(
            actor, AuditAction.STEP_COMPLETED_EXTERNALLY, run_id, context={"step_id": step_id}
        )
        return instance

    # =========================================================================
    # Audit
    # =========================================================================

    async def list_audit_events(self, actor: ActorContext, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        """Filtered audit trail (requires audit:read)"""
        security = await self.guard.resolve_security_context(actor.user_id)
        if not self.guard.has_permission(security, Permission.AUDIT_READ.value):
            await self._deny(actor, Permission.AUDIT_READ, "audit_log", None, "list_audit_events")

        filters = {key: value for key, value in (filters or {}).items() if value is not None}
        events = await self.audit.query_events(**filters)
        await self.audit.write_event(
            actor_id=actor.user_id,
            action=AuditAction.AUDIT_QUERIED,
            resource_type="audit_log",
            resource_id=None,
            outcome=AuditOutcome.SUCCESS,
            context={"filters": {k: str(v) for k, v in filters.items()}, "returned": len(events)},
        )
        return events

    # =========================================================================
    # Helpers
    # =========================================================================

    def _can_execute(self, security: SecurityContext) -> bool:
        return self.guard.has_permission(security, Permission.PLAYBOOK_EXECUTE.value) or self.guard.has_permission(
            security, Permission.RUN_MANAGE.value
        )

    async def _deny(
        self,
        actor: ActorContext,
        permission: Permission,
        resource_type: str,
        resource_id: Optional[str],
        attempted_action: str
    ) -> None:
        """Audit a denial and raise"""
        await self.audit.write_permission_denied(actor, permission.value, resource_type, resource_id, attempted_action)
        raise PermissionDeniedError(permission.value)

    def _require_status(self, expected: RunStatus, action: str) -> Callable[[WorkflowInstance], None]:
        def check(instance: WorkflowInstance) -> None:
            if instance.status != expected:
                raise InvalidStatusError(
                    f"Cannot {action} a {instance.status.value} run; it must be {expected.value}",
                    details={"status": instance.status.value, "required": expected.value},
                )
        return check

    async def _transition(
        self,
        run_id: str,
        check: Callable[[WorkflowInstance], None],
        updates: Dict[str, Any]
    ) -> WorkflowInstance:
        """Re-read, validate and compare-and-swap until the write lands"""
        for _ in range(_TRANSITION_ATTEMPTS):
            instance = await self.repo.get_instance_or_raise(run_id)
            check(instance)
            try:
                return await self.repo.update_instance(instance, updates)
            except ConcurrencyError:
                logger.debug(f"Run {run_id} changed during transition; retrying", extra={"run_id": run_id})
        raise ConcurrencyError(f"Run {run_id} kept changing; try again")
