"""
Decimal amount parsing and pagination helpers shared by the services.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, List, TypeVar

from .errors import ValidationError


T = TypeVar("T")


def parse_amount(value: Any, field_name: str = "amount", allow_zero: bool = False) -> Decimal:
    """
    Convert user input to a finite Decimal.

    Floats go through str() so 0.1 stays 0.1 rather than its binary expansion.

    Raises:
        ValidationError: if the value is not a number, not finite, negative,
            or zero when zero is not allowed
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise ValidationError(f"{field_name} must be {qualifier}, got {amount}")
    return amount


def parse_days(value: Any, field_name: str = "duration") -> int:
    """Whole, non-negative number of days"""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise ValidationError(f"{field_name} must be a whole number of days")
    try:
        days = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a whole number of days")
    if not days.is_finite() or days != days.to_integral_value() or days < 0:
        raise ValidationError(f"{field_name} must be a whole, non-negative number of days")
    return int(days)


@dataclass
class Page(Generic[T]):
    """One page of a newest-first listing"""
    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


def paginate(items: List[T], page: int = 1, limit: int = 10, max_limit: int = 100) -> Page[T]:
    """Slice an already-sorted list into a Page"""
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or 1), 1), max_limit)
    start = (page - 1) * limit
    return Page(items=items[start:start + limit], total=len(items), page=page, limit=limit)
