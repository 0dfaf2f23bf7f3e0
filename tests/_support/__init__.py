"""
Test support utilities for appdb tests.

Helpers that don't fit as pytest fixtures but are shared across test
modules: generated Alembic changelogs and database inspection.
"""
