"""Storage backends.

``memory``  list-backed, for tests and local development.
``sql``     SQLAlchemy async (asyncpg / aiosqlite).
"""
