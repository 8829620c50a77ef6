# db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from dotenv import load_dotenv
import os as _os

# When running inside a container (Docker, Railway), avoid loading the
# repository `.env` file so platform provided env vars win.
if not _os.path.exists("/.dockerenv"):
    load_dotenv()

DATABASE_URL = _os.getenv("DATABASE_URL", "sqlite:///local.db")

# SQLite connections are handed between the event loop and worker threads
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine)
Base = declarative_base()


def init_db(bind=None):
    from backend import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
