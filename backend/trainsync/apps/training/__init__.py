# backend/trainsync/apps/training/__init__.py
"""
Training app

Courses and per-user completion facts. Completion facts are the source of
truth the compliance sync rules are evaluated against.
"""
