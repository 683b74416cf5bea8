"""Scheduled work: the reconciliation sweep and its cron triggers."""

from circle.scheduler.reconcile import Reconciler, SweepResult

__all__ = ["Reconciler", "SweepResult"]
