from platformcore.services.workflows.engine import (
    BehaviorContext,
    BehaviorDefinition,
    BehaviorRegistry,
    BehaviorResult,
    RuntimeContext,
    WorkflowExecution,
    default_registry,
    execute_behaviors,
    execute_workflow,
)
from platformcore.services.workflows import crm_sync, pricing

__all__ = [
    "BehaviorContext",
    "BehaviorDefinition",
    "BehaviorRegistry",
    "BehaviorResult",
    "RuntimeContext",
    "WorkflowExecution",
    "crm_sync",
    "default_registry",
    "execute_behaviors",
    "execute_workflow",
    "pricing",
]
