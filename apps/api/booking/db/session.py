from sqlalchemy.orm import sessionmaker

from booking.core.config import settings
from booking.db.engine import build_engine

engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
