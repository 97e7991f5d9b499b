"""Sync orchestration for the activity engine.

Modules:
    run       — In-memory run state (stage, unit progress, per-unit errors)
    backfill  — Resumable historical backfill (one day at a time, oldest first)
    scheduler — Recurring fast-refresh pass, readiness gate, operational surface
"""
