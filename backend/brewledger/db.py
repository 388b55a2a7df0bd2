import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Try to load .env placed in the backend directory (package-relative) first so
# imports succeed when tests run from the repo root. Fall back to default load.
base_dir = os.path.abspath(os.path.dirname(__file__))
env_path = os.path.abspath(os.path.join(base_dir, '..', '.env'))
if os.path.exists(env_path):
    load_dotenv(dotenv_path=env_path)
else:
    load_dotenv()

DEFAULT_DATABASE_URL = 'sqlite:///' + os.path.abspath(os.path.join(base_dir, '..', 'brewledger.db'))
DATABASE_URL = os.getenv('DATABASE_URL') or DEFAULT_DATABASE_URL


def _connect_args(url: str) -> dict:
    # sqlite connections are shared with FastAPI's worker threads
    if url.startswith('sqlite'):
        return {'check_same_thread': False}
    return {}


engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_test_engine():
    """Helper for tests: create an in-memory sqlite engine and return it."""
    return create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )


def create_test_sessionmaker(engine):
    """Create tables on the provided engine and return a session factory bound to it."""
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_test_session(engine):
    """Create a session bound to provided engine and create tables for tests."""
    return create_test_sessionmaker(engine)()
