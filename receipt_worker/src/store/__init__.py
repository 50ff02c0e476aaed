"""Persistence for the state shared between the API and worker processes."""

from .database import Base, build_engine, init_db, make_session_factory, session_scope

__all__ = [
    'Base',
    'build_engine',
    'init_db',
    'make_session_factory',
    'session_scope'
]
