"""Column planning and value transformation."""
