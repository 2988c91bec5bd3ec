"""Column type for uint256 token amounts.

PostgreSQL stores the value as ``NUMERIC(78, 0)``, which holds any uint256
exactly. SQLite's NUMERIC affinity silently degrades integers above 2**63 to
REAL, so other dialects store the decimal string instead.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

UINT256_DIGITS = 78


class Uint256(TypeDecorator):
    impl = String(UINT256_DIGITS)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))
        return dialect.type_descriptor(String(UINT256_DIGITS))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        number = int(value)
        if number < 0:
            raise ValueError("uint256 value must be non-negative")
        if dialect.name == "postgresql":
            return Decimal(number)
        return str(number)

    def process_result_value(self, value: Any, dialect: Any) -> int | None:  # noqa: ARG002
        if value is None:
            return None
        return int(value)
