"""
Client SDK for the permissions API.

Provides a thin HTTP wrapper and a per-session permission cache for
front-end services that need synchronous permission reads.
"""
