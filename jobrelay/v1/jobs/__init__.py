"""
Asynchronous job orchestration.

This package provides:
- Durable job records with a terminal-state guard on every write
- A queue dispatcher over a pluggable execution engine (database or memory)
- A worker pool with per job type concurrency and rate limits
- Idempotent job creation and read-path reconciliation of engine state
"""
