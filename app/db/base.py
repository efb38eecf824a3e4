# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All marketplace tables (users, stock, prescriptions, orders, credits) inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from app.models import (  # noqa: F401,E402
    user,
    inventory,
    number_series,
    prescription,
    order,
    credit,
)
