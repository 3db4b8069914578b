from .schema import MigrationRun, MigrationRunStatus, MigrationStepRun, MigrationStepStatus

__all__ = ["MigrationRun", "MigrationRunStatus", "MigrationStepRun", "MigrationStepStatus"]
