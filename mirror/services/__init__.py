"""Sync, reconciliation and visibility services."""
