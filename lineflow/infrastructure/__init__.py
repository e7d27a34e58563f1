"""Infrastructure layer - configuration, carrier HTTP client, session storage."""
