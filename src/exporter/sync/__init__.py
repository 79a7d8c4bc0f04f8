"""Sync loops that feed the metric store.

Modules:
    scheduler — Fixed-rate poll of current data (non-overlapping cycles)
    backfill  — Chunked, rate-limited historical import
"""
