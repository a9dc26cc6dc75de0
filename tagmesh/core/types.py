"""
Core Type Definitions for TagMesh

Implements the Result/Either monad used by the storage and sync layers
for zero-exception control flow on expected failures (missing records,
revision conflicts, unreachable remotes).

Design Principles:
- Expected absence is a value (Err), not an exception
- Store-level failures that make the in-memory view inconsistent are raised
- Identity digests are hex strings so they can be used as database names
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """
        Extract value. Safe to call after is_ok() check.

        Returns:
            T: The wrapped success value
        """
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries the error object (usually a TagMeshError subclass) so callers
    can branch on its code or re-raise it.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            The wrapped error when it is an exception, RuntimeError otherwise.
        """
        if isinstance(self.error, BaseException):
            raise self.error
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        """No-op on error variant - propagates error unchanged."""
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        """Propagate error through monadic chain."""
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    High-precision timestamp used to stamp errors and sync events.

    Stores nanoseconds since Unix epoch.
    """

    nanos: int

    @classmethod
    def now(cls) -> Timestamp:
        """Capture current time with nanosecond precision."""
        return cls(nanos=time.time_ns())

    @property
    def seconds(self) -> float:
        return self.nanos / 1_000_000_000

    @property
    def millis(self) -> int:
        return self.nanos // 1_000_000

    def elapsed_millis(self) -> float:
        """Milliseconds elapsed since this timestamp."""
        return (time.time_ns() - self.nanos) / 1_000_000

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


# =============================================================================
# CONTENT HASH
# =============================================================================
@dataclass(frozen=True, slots=True)
class ContentHash:
    """
    SHA-256 digest of a byte string.

    Backs the secure storage identifiers: a 256-bit, collision and
    preimage resistant digest rendered as lowercase hex.

    Memory: 32 bytes (SHA-256 digest)
    """

    digest: bytes

    def __post_init__(self) -> None:
        if len(self.digest) != 32:
            raise ValueError(f"SHA-256 digest must be 32 bytes, got {len(self.digest)}")

    @classmethod
    def compute(cls, data: bytes) -> ContentHash:
        """
        Compute SHA-256 hash of data.

        Complexity: O(n) where n is len(data)
        """
        return cls(digest=hashlib.sha256(data).digest())

    @classmethod
    def of_text(cls, text: str) -> ContentHash:
        """Hash the UTF-8 encoding of text."""
        return cls.compute(text.encode("utf-8"))

    @classmethod
    def from_hex(cls, hex_str: str) -> Result[ContentHash, str]:
        """Parse from hexadecimal string representation."""
        try:
            return Ok(cls(digest=bytes.fromhex(hex_str)))
        except ValueError as e:
            return Err(f"Invalid hex string: {e}")

    def to_hex(self) -> str:
        return self.digest.hex()

    def __str__(self) -> str:
        return self.to_hex()

    def __hash__(self) -> int:
        return hash(self.digest)
