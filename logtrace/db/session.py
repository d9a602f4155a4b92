import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from logtrace.core.config import settings

logger = logging.getLogger(__name__)

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
logger.info("Database engine configured")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
