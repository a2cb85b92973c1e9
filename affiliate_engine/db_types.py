"""Column types shared by the affiliate models.

Production runs on PostgreSQL, development and tests on SQLite, so every
type here has to degrade cleanly on both.
"""
from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

# JSONB would lock us to PostgreSQL
JSONType = JSON

# Stored natively on PostgreSQL, as CHAR(32) on SQLite
UUIDType = PG_UUID

# Money is always integer cents, never floats
CentsType = BigInteger().with_variant(Integer(), "sqlite")
