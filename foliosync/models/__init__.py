"""
models/__init__.py: imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from foliosync.models.portfolio import PortfolioORM

__all__ = ["PortfolioORM"]
