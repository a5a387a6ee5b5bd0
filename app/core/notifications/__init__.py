# app/core/notifications/__init__.py
"""
Notification Fanout - best-effort push and in-app delivery.

- ``events`` - event catalogue and builders (written to the outbox)
- ``fanout`` - idempotent delivery of one event to one recipient
- ``ports`` - notification store and push transport protocols

Nothing here runs inside a state transition's transaction.
"""
