import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

SQLALCHEMY_DATABASE_URL = config.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # sessions are handed to FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True, "pool_recycle": 300}


def wait_for_db(max_retries=30, retry_interval=2):
    logger.info("Waiting for the database...")

    for attempt in range(max_retries):
        try:
            temp_engine = create_engine(SQLALCHEMY_DATABASE_URL, **_engine_kwargs(SQLALCHEMY_DATABASE_URL))
            with temp_engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is available")
            temp_engine.dispose()
            return True
        except OperationalError as e:
            logger.warning(f"Attempt {attempt + 1}/{max_retries}: database not available yet ({e})")
            if attempt < max_retries - 1:
                time.sleep(retry_interval)

    logger.error("Could not connect to the database after all retries")
    return False


engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    echo=False,
    **_engine_kwargs(SQLALCHEMY_DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    import models  # noqa: F401  registers the mappers on Base
    Base.metadata.create_all(bind=engine)
