"""
Resolution Cache

Keeps name resolution off the connection hot path.

Key Components:
- resolution.py: In-process tier with per-status TTLs and background refresh
- persistent.py: Redis tier that survives restarts and in-process eviction
"""
