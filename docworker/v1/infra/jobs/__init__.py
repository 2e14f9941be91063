"""Processing job persistence, handlers and API."""
