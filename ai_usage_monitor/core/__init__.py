"""
Core modules for AI Usage Monitor.

This package contains pricing resolution, cost rollups, retry backoff
and the polling scheduler.
"""
