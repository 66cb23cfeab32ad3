# model/__init__.py
from .orm import Base
from .payments import PaymentStatus, PaymentRecord, LineItem
from .stores import Stores

__all__ = ["Base", "PaymentStatus", "PaymentRecord", "LineItem", "Stores"]
