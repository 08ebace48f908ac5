"""Durable storage for job snapshots."""
