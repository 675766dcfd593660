"""
Local mirror of the vault's organization / category / asset hierarchy.

Built by full or incremental sync, topped up on demand by discovery.
Only names and ids are mirrored, never secrets.
"""
