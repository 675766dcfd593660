"""Scoped access control over a mirrored documentation vault."""
