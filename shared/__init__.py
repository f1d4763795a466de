"""
Shared utilities for the GitLab Bridge access gate.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error taxonomy and responses
- circuit_breaker: Resilient external call protection
- base_service: FastAPI application scaffolding
- test_helpers: fakes and builders for tests

Runtime modules do not import from service_* packages. test_helpers is the
exception: its fakes return the bridge's own types.
"""
