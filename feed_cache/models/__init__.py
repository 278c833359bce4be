"""Items, feeds, jobs and the mapping from API payloads."""
