"""
Restore module: selective restore, dry runs and point-in-time recovery.
"""

from .engine import RecoveryPlan, RestoreEngine, RestoreResult

__all__ = ["RecoveryPlan", "RestoreEngine", "RestoreResult"]
