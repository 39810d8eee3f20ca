"""
Sync Module

Change detection and reconciliation between a tenant's Source and its
providers:
- Change detection (drift, dual-modification conflicts, checksums)
- Reconciliation strategies and manual review
- Per-pair sync direction
- Scheduled polling with backoff and alerts
"""
