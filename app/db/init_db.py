# app/db/init_db.py
from sqlalchemy.engine import Engine

from app.db.base import Base


def init_db(bind: Engine) -> None:
    Base.metadata.create_all(bind=bind)
