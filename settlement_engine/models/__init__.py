"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all() runs
  2. Other modules can import from settlement_engine.models directly
"""

from settlement_engine.models.merchant import Merchant  # noqa: F401
from settlement_engine.models.transaction import (  # noqa: F401
    PaymentMethod,
    Provider,
    SourceKind,
    Transaction,
    TransactionStatus,
)
