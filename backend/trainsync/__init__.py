# backend/trainsync/__init__.py
"""
Import ORM models from each app so that:

- Alembic and Base.metadata.create_all() see all tables.
- The package exposes a clear surface.

The actual model classes are kept in trainsync/apps/*/models.py.
"""

from .apps.accounts import models as accounts_models          # tenants / users / memberships
from .apps.training import models as training_models          # courses + completion facts
from .apps.compliance import models as compliance_models      # rules, locks, queues, sync logs

__all__ = [
    "accounts_models",
    "training_models",
    "compliance_models",
]
