import logging
import os
import time

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker

from vehicle_intake.settings import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        path = url.split("///", 1)[-1]
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        # TestClient and the threadpool share one connection pool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def init_db() -> None:
    from vehicle_intake import models  # noqa: F401  registers tables on Base

    retries = 6
    delay = 2
    for attempt in range(retries):
        try:
            Base.metadata.create_all(bind=engine)
            return
        except OperationalError as exc:
            logger.warning("Database not ready (attempt %s): %s", attempt + 1, exc)
            time.sleep(delay)
            delay = min(delay * 2, 20)
    raise RuntimeError("Database not ready after retries.")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
