"""Vendor Gateway Layer.

Async infrastructure for talking to carbon-offset vendors:
  - Sliding-window Rate Limiter (per vendor identity)
  - Retry Executor (exponential backoff, Retry-After, request dedup)
  - Vendor Clients (REST and GraphQL protocol differences)
  - Normalizer (canonical entities tagged with their vendor)
  - Vendor Manager (registry, bounded fan-out, quote selection)
"""
