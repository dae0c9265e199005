"""Document storage and repositories."""
