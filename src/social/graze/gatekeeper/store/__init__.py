"""
Player Record Store

This package owns persistent player records and keeps derived caches consistent
with them.

Key Components:
- sql.py: PlayerStore interface and the SQLAlchemy/PostgreSQL implementation
- coordinator.py: Read-through record cache with connectivity checks
- invalidation.py: Publish/subscribe channel for record change events
- errors.py: StoreUnavailableError and InvalidPlayerRecord

An unreachable store always raises StoreUnavailableError. It is never reported
as a missing record, because admission decisions treat "no record" as "new
player".
"""
