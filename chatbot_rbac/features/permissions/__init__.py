"""
Permission management feature module.

Role-based access control for the chatbot platform: a permission catalog,
global and organization-scoped roles, time-bounded user-role assignments,
deny-wins authorization decisions and an append-only audit trail.
"""
