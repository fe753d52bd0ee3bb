"""
Permission engine feature module.

Resolves effective permissions from a user's role, per-user allow/deny
overrides and per-project overrides, and keeps those overrides consistent
when roles change.
"""
