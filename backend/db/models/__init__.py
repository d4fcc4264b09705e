"""Database models for the CRM automation engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowDefinition
from db.models.run import RunInstance
from db.models.node_execution import NodeExecutionRecord

__all__ = [
    "WorkflowDefinition",
    "RunInstance",
    "NodeExecutionRecord",
]
