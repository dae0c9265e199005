"""Input validation and sanitization."""
