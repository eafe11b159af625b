from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.config import get_database_settings


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def database_url() -> str | None:
  """Build the SQLAlchemy URL, forcing the asyncpg driver for plain postgres DSNs."""
  settings = get_database_settings()
  url = settings.pg_dsn
  if url and url.startswith("postgres://"):
    url = url.replace("postgres://", "postgresql+asyncpg://", 1)
  if url and url.startswith("postgresql://"):
    url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

  return url


def get_db_engine() -> AsyncEngine | None:
  global engine
  settings = get_database_settings()
  url = database_url()
  if engine is None and url:
    connect_args = {"timeout": settings.pg_connect_timeout} if url.startswith("postgresql+asyncpg://") else {}
    engine = create_async_engine(url, echo=settings.debug, future=True, pool_pre_ping=True, connect_args=connect_args)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine()
    if db_engine:
      SessionLocal = async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)
  return SessionLocal



async def dispose_db_engine() -> bool:
  """Dispose the pooled engine if one was created; return whether anything was released."""
  global engine, SessionLocal
  if engine is None:
    return False
  await engine.dispose()
  engine = None
  SessionLocal = None
  return True
