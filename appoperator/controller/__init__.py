"""Reconciliation engine: reconciler, status updater, work queue and trigger watchers."""
