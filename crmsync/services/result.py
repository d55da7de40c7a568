from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ResultError(Exception):
    def __init__(self, error: str, code: str):
        self.error = error
        self.code = code
        super().__init__(f"{code}: {error}")


@dataclass
class Result(Generic[T]):
    """Outcome of a pipeline step: a value, or an error message with a machine-readable code."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap(self) -> T:
        if not self.ok:
            raise ResultError(self.error or "", self.error_code or "unknown")
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
