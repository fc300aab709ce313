"""Discovery services."""
