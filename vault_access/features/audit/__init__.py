"""
Audit trail for permission-group administration, sync runs, and
credential access.
"""
