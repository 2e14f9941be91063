"""Polling workers, their manager and the supervisor."""
