"""
Test fixtures package.

Reusable pytest fixtures for the sync core, re-exported from conftest.py.

Available fixture modules:
- database: In-memory async SQLAlchemy engine, session factory and sessions
"""
