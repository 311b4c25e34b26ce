"""rbac/ -- Role-based authorization for CodeGate.

Layer rule: rbac/ may import auth.models and auth.errors (the User shape and
the error taxonomy). It does NOT import auth.service, auth.store, or cache/.
auth.service imports rbac/ only to wire a PermissionResolver into the
AuthService it builds.
"""
