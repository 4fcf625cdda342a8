"""
Column types shared by the ORM models.

DecimalString stores a decimal.Decimal as its canonical string form. SQLite
has no exact decimal type (NUMERIC columns round-trip through float), and
monetary amounts here mix 2-decimal fiat with 6- and 18-decimal token units,
so amounts are persisted as text and always read back as Decimal — no
binary floating point on the way in or out.
"""

from decimal import Decimal

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator


class DecimalString(TypeDecorator):
    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        # normalize() would turn 100 into 1E+2; format with "f" keeps plain digits
        return format(value, "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)
