"""
Cross-cutting utilities for the access-control service.

- datetime: UTC normalization and ISO 8601 parsing
- logging: structlog configuration, access-decision and security-event logging
- monitoring: Prometheus counters for decisions, cache, defects and store failures
- error_handling: JSON error handlers registered by the application factory
"""
