"""Fetching, rate limiting and scheduling of sync jobs."""
