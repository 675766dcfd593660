"""Permission-filtered consumption of mirrored vault data."""
