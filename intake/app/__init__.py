"""Intake application: admission gate, durable queue, workers and persistence."""
