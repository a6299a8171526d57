"""Role-specific disclosure frames and derivation."""
