"""
Shared utilities for the Access Core.

This package aggregates common building blocks consumed by the core:

- config: Settings via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Protection for shared key-value store calls

Only test_helpers may import from service_* packages.
"""
