"""CRM backend: roles, users, projects and the permission engine."""
