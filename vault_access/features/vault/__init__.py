"""Documentation vault connector and per-section request shapes."""
