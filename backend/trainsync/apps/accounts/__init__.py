# backend/trainsync/apps/accounts/__init__.py
"""
Accounts app

Responsible for:
- Tenants (the organisational units that own compliance settings)
- User accounts
- Tenant membership, the one canonical way to resolve a user's tenant
"""
