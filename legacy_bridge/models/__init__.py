"""
Database models package
"""

from .base import BaseModel, db
from .migration import MigrationRun, MigrationRunStatus, MigrationStepRun, MigrationStepStatus

__all__ = [
    "db",
    "BaseModel",
    "MigrationRun",
    "MigrationRunStatus",
    "MigrationStepRun",
    "MigrationStepStatus",
]
