"""
Result types returned by the billing and promo services.

Expected failures (bad promo code, provider outage, polling timeout) come
back as Err values rather than exceptions, so a caller has to look at the
outcome before using it.
"""
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    is_error = False


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E
    message: str = ""
    detail: Optional[str] = None
    is_error = True


Result = Union[Ok[T], Err[E]]
