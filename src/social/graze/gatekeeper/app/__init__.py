"""
Gatekeeper Application Layer

This package wires the gatekeeper components into an aiohttp application that
exposes them to the proxy over an internal HTTP API.

Key Components:
- cli.py: Entry point for running the application
- server.py: Startup and shutdown of every component, middleware setup
- config.py: Configuration management using Pydantic settings and AppKeys
- handlers/: Request handlers for the internal API
- tasks.py: Background task runner used for refreshes, invalidation and cleanup
- metrics.py: Metrics client abstraction

The application uses two middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting

Endpoints:
- /internal/alive and /internal/ready for probes
- /internal/api/* for resolution, admission, login reporting, authorization and session checks
"""
