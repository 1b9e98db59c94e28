"""Queueing, background workers, outbox relay and scheduled jobs."""
