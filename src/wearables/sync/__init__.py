"""Polling side of the sync engine.

Modules:
    backfill  — Historical sync per provider (date-ranged, paginated, per-type isolation)
    scheduler — Periodic reconciliation over every connection
    dedup     — Dedup keys and idempotent upsert queries
"""
