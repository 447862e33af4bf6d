from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./certwallet.db")

# Upper bound for any single store round-trip (pool checkout, connect, statement)
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            options["poolclass"] = StaticPool
        return options

    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,      # test connections before use (handles dropped DB connections)
        "pool_recycle": 3600,       # recycle connections every hour (prevents stale connections)
        "pool_timeout": DB_TIMEOUT_SECONDS,
        "connect_args": {
            "connect_timeout": max(1, int(DB_TIMEOUT_SECONDS)),
            "options": f"-c statement_timeout={int(DB_TIMEOUT_SECONDS * 1000)}",
        },
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Dependency: yields a DB session and always closes it after the request."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
