"""Settings and database session wiring for the vulnerability catalog."""
