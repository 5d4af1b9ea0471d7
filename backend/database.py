from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import config


def build_engine(url: str):
    if url.startswith("sqlite"):
        # in-memory sqlite must share one connection across sessions
        pool = {"poolclass": StaticPool} if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:") else {}
        return create_engine(url, connect_args={"check_same_thread": False}, **pool)
    return create_engine(url, pool_pre_ping=True)


engine = build_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(autoflush=False, bind=engine)
