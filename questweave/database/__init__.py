# database/__init__.py
from .base import Base
from .setup import init_db, get_session_factory, close_db, create_engine_for, create_schema, build_sessionmaker

__all__ = [
    'Base',
    'init_db',
    'get_session_factory',
    'close_db',
    'create_engine_for',
    'create_schema',
    'build_sessionmaker',
]
