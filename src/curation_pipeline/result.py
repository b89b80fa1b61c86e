"""Railway result types shared by transaction steps and actor adapters.

A step returns either ``Success(value)`` or ``Failure(error)``.  Chaining with
``and_then`` runs the next function only on the success track; ``or_else``
runs only on the failure track.  The first ``Failure`` in a chain propagates
unchanged.

Results deliberately have no truth value: ``bool(result)`` raises
``TypeError`` so callers branch on ``is_success()`` / ``is_failure()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E")
F = TypeVar("F")


class UnwrapError(RuntimeError):
    """Raised when ``unwrap`` is called on a failure whose error is not an exception."""

    def __init__(self, error: Any) -> None:
        super().__init__(f"called unwrap() on a Failure: {error!r}")
        self.error = error


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """The success track, carrying the payload produced so far."""

    value: T

    def is_success(self) -> bool:
        return True

    def is_failure(self) -> bool:
        return False

    def and_then(self, fn: Callable[[T], Result[U, Any]]) -> Result[U, Any]:
        return fn(self.value)

    def or_else(self, fn: Callable[[Any], Result[Any, Any]]) -> Success[T]:
        return self

    def map(self, fn: Callable[[T], U]) -> Success[U]:
        return Success(fn(self.value))

    def map_failure(self, fn: Callable[[Any], Any]) -> Success[T]:
        return self

    def value_or(self, default: Any) -> T:
        return self.value

    def unwrap(self) -> T:
        return self.value

    def __bool__(self) -> NoReturn:
        raise TypeError("Result has no truth value; use is_success() or is_failure()")


@dataclass(frozen=True, slots=True)
class Failure(Generic[E]):
    """The failure track, carrying the first error raised on the railway."""

    error: E

    def is_success(self) -> bool:
        return False

    def is_failure(self) -> bool:
        return True

    def and_then(self, fn: Callable[[Any], Result[Any, Any]]) -> Failure[E]:
        return self

    def or_else(self, fn: Callable[[E], Result[Any, F]]) -> Result[Any, F]:
        return fn(self.error)

    def map(self, fn: Callable[[Any], Any]) -> Failure[E]:
        return self

    def map_failure(self, fn: Callable[[E], F]) -> Failure[F]:
        return Failure(fn(self.error))

    def value_or(self, default: U) -> U:
        return default

    def unwrap(self) -> NoReturn:
        """Raise the carried error.

        Raises:
            Exception: The carried error itself when it is an exception.
            UnwrapError: When the carried error is a plain value.
        """
        if isinstance(self.error, BaseException):
            raise self.error
        raise UnwrapError(self.error)

    def __bool__(self) -> NoReturn:
        raise TypeError("Result has no truth value; use is_success() or is_failure()")


Result = Union[Success[T], Failure[E]]
