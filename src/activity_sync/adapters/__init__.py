"""Upstream API adapters for the activity sync engine.

Available adapters:
    AdversusClient — Adversus REST API v1 (basic auth, JSON/NDJSON)
"""

from src.activity_sync.adapters.adversus import AdversusClient

__all__ = ["AdversusClient"]
