"""
Scoped vault permissions.

Groups hold rules scoped to (organization, section, category, asset).
Users reach groups directly or through roles, and the resolver picks the
most specific matching rule, defaulting to deny.
"""
