"""
Role membership seam.

Roles are owned by the host application's generic RBAC subsystem. The
permission engine only ever sees them through ``RoleMembershipProvider``.
"""
