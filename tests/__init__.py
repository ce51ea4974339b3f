"""
Test suite for the vendor API integrations.

This package contains the tests for the integration clients including:
- Unit tests for the shared core (settings, errors, resilience, cache, signing)
- Transport and record/replay simulation tests
- Per-vendor client tests against mocked HTTP endpoints
"""
