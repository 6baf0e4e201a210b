"""
Shared utilities for the cache coordination engine.

This package aggregates the building blocks every component consumes:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Backoff calculation and retry decorator
- circuit_breaker: Fail-fast protection for backend calls

Nothing in here imports from the component packages.
"""
