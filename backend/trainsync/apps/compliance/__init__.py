# backend/trainsync/apps/compliance/__init__.py
"""
Compliance sync app

Pushes course-completion data to a third-party compliance API whose training
resource only supports full replacement. Holds the per-tenant lock, the
completion and regeneration queues, snapshot generation and storage, the
remote client and the attempt log.
"""
