"""Bug-report intake service."""
