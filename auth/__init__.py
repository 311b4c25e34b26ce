"""auth/ -- Passwordless authentication package for CodeGate.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and cache/.
auth.service additionally wires in rbac/. Nothing in auth/ imports an HTTP
framework except auth/dependencies.py, the seam the HTTP layer plugs into.
"""
