from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from models import Base
import config


def get_session(databaseUrl: str = None):
    """Создает и возвращает фабрику сессий SQLAlchemy и движок базы данных"""
    url = databaseUrl or config.DATABASE_URL
    engineOptions = {}
    if url.startswith("sqlite"):
        engineOptions["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # In-memory database must be shared by every session
            engineOptions["poolclass"] = StaticPool

    engine = create_engine(url, **engineOptions)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return session_factory, engine


def init_tables(engine):
    """Инициализирует таблицы базы данных"""
    Base.metadata.create_all(engine)
