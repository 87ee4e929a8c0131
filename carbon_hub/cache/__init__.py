"""Persistent cache for normalized vendor data (memory or Redis backed)."""
