"""
Atlas Application Layer

This package implements the web application layer using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, middleware and background tasks
- config.py: Configuration management using Pydantic settings
- metrics.py: Metrics client abstraction
- handlers/: Request handlers for the internal and public endpoints
- util/: Maintenance commands (mirror sync, record validation)

The application uses several middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting
- Error middleware translating resolution failures into 502 responses

It provides the following main endpoints:
- Health checks (/internal/alive, /internal/ready)
- Resolution and content (/api/resolve, /api/profile, /api/record, /api/records,
  /api/describe, /api/blob)
- AppView lookups (/api/appview-profile, /api/search)
- Chat threads (/api/chat, /api/chat/{rkey})
- Lexicon validation (/api/validate)
"""
