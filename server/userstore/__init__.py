"""
User accounts service package.

Provides a FastAPI application for registration, login, server-side
sessions and a per-user JSON document updated with JSON merge patch.
"""
