"""
Shared utilities for the upstream item proxy.

This package aggregates common building blocks consumed by the proxy service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator and backoff calculation
- base_service: FastAPI service shell (middleware, health, error handlers)

Any cross-service logic should live here to avoid import cycles across
service packages. Do not import from service_* packages into shared/.
"""
