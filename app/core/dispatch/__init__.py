# app/core/dispatch/__init__.py
"""
Dispatch Layer - request broadcast, acceptance and lifecycle.

This package handles helper-facing job flow:
- ``dispatcher`` - rank candidates and open a broadcast
- ``arbiter`` - first-accept-wins resolution
- ``lifecycle`` - authorised status transitions (start, complete, cancel)
- ``sweeper`` - expiry of stale broadcast rows
- ``reconciliation`` - repair of fan-out drift from ``assigned_helper_id``

Dispatch code talks to storage only through ``ports``; every state change
is a single guarded write in the store.
"""
