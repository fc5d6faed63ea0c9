"""Workflow Engine - Playbook execution core"""
from .engine import WorkflowEngine
from .permission_guard import PermissionGuard
from .status_manager import StatusTransitionManager
from .condition_evaluator import ConditionEvaluator
from .audit_writer import AuditWriter
from .guardrails import GuardrailEvaluator
from .action_executor import ActionExecutor

__all__ = [
    "WorkflowEngine",
    "PermissionGuard",
    "StatusTransitionManager",
    "ConditionEvaluator",
    "AuditWriter",
    "GuardrailEvaluator",
    "ActionExecutor",
]
