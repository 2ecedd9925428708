"""Database-agnostic type definitions for SQLAlchemy models.

Both types map to native PostgreSQL types and to portable fallbacks on SQLite.
"""
from sqlalchemy import JSON, Uuid

# JSON instead of JSONB so the same models run on SQLite
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) elsewhere
UUIDType = Uuid
