"""
Backend package for the trip planner.

This package provides a FastAPI application plus the media library core
(directory model, selection, sharing and realtime reconciliation) on top of
record, blob and change-feed abstractions so the same code runs against a
managed backend or fully in memory.
"""
