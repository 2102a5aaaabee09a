# medledger/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All billing / stock tables inherit from this."""
    pass


# Import all models so metadata is complete for create_all()
from medledger.models import (  # noqa: F401,E402
    clinical,
    pharmacy_inventory,
    billing,
)
