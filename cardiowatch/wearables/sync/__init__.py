"""Wearable sync infrastructure for CardioWatch.

Modules:
    locks     - Per-device locks and single-flight token refresh
    service   - Pull sync for one device (credential -> provider -> store)
    scheduler - Background sync of due pull devices
    backfill  - Historical backfill orchestrator (batched, rate-limited)
    dedup     - Sample identity merge rules and upsert SQL
"""
