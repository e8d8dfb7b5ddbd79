"""
Shared utilities for the MP Session Broker.

This package aggregates common building blocks consumed by the broker service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton (health, metrics, error handlers)

Any cross-service logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
