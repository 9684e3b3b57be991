"""Reconciliation core.

- **translator**: PipelineRun record -> Tekton PipelineRun
- **finalizers**: finalizer add/remove with conflict re-fetch
- **reconciler**: the active/deleting state machine and its outcome type
"""

from runbridge.controller.reconcile.finalizers import FinalizerManager
from runbridge.controller.reconcile.reconciler import WATCH_KIND, PipelineRunReconciler, ReconcileOutcome
from runbridge.controller.reconcile.translator import derived_key, translate

__all__ = [
    "WATCH_KIND",
    "FinalizerManager",
    "PipelineRunReconciler",
    "ReconcileOutcome",
    "derived_key",
    "translate",
]
