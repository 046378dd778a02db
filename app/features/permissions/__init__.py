"""
Permission management feature module.

Resolves a user's effective permissions from their role, direct grants and
direct denials within their company, with a Super-Admin bypass and an
optional Redis cache of resolved sets.
"""
