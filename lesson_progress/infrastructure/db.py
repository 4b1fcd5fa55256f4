from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from ..config import Settings, settings


class Base(DeclarativeBase): pass


def make_engine(config: Settings = settings) -> Engine:
    url = config.DATABASE_URL
    if url.startswith("sqlite"):
        # файловая база общая для потоков, sqlite3 ждёт блокировку записи
        return create_engine(url, connect_args={"check_same_thread": False,
                                                "timeout": config.DB_POOL_TIMEOUT})

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {"client_encoding": "utf8"}
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_recycle=config.DB_POOL_RECYCLE,
        pool_timeout=config.DB_POOL_TIMEOUT,
        connect_args=connect_args,
        echo=False
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
