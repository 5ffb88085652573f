import os
from pathlib import Path
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

SQLITE_BUSY_TIMEOUT_SECONDS = 15


def make_engine(database_url: str):
    """Engine for the orders database.

    SQLite is shared between the request threadpool and the event loop, so it
    needs ``check_same_thread`` off and a busy timeout long enough for two
    verifications racing on the same order row. Server databases get
    ``pool_pre_ping`` so a dropped connection fails the checkout, not the
    status write that follows a verified payment.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
        )
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine):
    # expire_on_commit=False so snapshots stay readable after the session closes
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

engine = make_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)
Base = declarative_base()
