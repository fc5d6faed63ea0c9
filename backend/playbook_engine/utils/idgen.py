"""ID Generation Utilities"""
import uuid
from datetime import datetime
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'RUN', 'STEP', 'REL')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('RUN')
        'RUN-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_entity_id() -> str:
    """Generate entity ID"""
    return generate_id("ENT")


def generate_relationship_id() -> str:
    """Generate relationship ID"""
    return generate_id("REL")


def generate_transaction_id() -> str:
    """Generate transaction ID"""
    return generate_id("TXN")


def generate_run_id() -> str:
    """Generate workflow instance (run) ID"""
    return generate_id("RUN")


def generate_step_execution_id() -> str:
    """Generate step execution ID"""
    return generate_id("STEP")


def generate_audit_event_id() -> str:
    """Generate audit event ID"""
    return generate_id("AUD")


def generate_log_id() -> str:
    """Generate run log line ID"""
    return generate_id("LOG")


def generate_task_code() -> str:
    """Generate human task code"""
    return generate_id("TASK")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"


def generate_driver_lease() -> str:
    """Generate run driver lease token"""
    return generate_id("DRV")
