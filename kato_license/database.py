# kato_license/database.py
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def make_engine(database_url: str, **kwargs):
    if not database_url:
        raise RuntimeError("DATABASE_URL not set")

    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})

    # Use SQLAlchemy engine (sync)
    return create_engine(database_url, pool_pre_ping=True, future=True, **kwargs)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
