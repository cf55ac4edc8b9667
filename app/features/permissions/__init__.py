"""
Permission management feature module.

Implements Role-Based Access Control (RBAC) with per-user overrides:
resources, the permission catalog, role bindings, user grants and denials,
and the evaluator that decides every check.
"""
