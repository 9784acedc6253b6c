"""engram database layer."""

from engram.db.connection import Database
from engram.db.migrations import MIGRATIONS, run_migrations
from engram.db.repository import Repository
from engram.db.schema import initialize
from engram.db.vectors import VEC_TABLE, drop_vec_table, ensure_vec_table, verify_vec_table

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "VEC_TABLE",
    "drop_vec_table",
    "ensure_vec_table",
    "verify_vec_table",
]
