"""Sync integration tests.

This package contains end-to-end tests against the reference endpoint:
- Server endpoint tests
- Client datasets syncing through the Flask test client
- Collision and failure handling across several clients
- HTTP tests against a server subprocess
"""
