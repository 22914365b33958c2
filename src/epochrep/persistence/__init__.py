"""Persistence — recorded event streams and replica snapshots."""
