"""Exception hierarchy for switchboard.

Every error raised by the bot derives from SwitchboardError so callers
can catch broadly at the transport boundary and precisely everywhere
else. ErrorCategory tells the caller whether the failure is worth
reporting as a temporary problem or as a rejected request.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for reporting decisions."""
    TRANSIENT = "transient"          # Storage hiccup, network failure
    PERMANENT = "permanent"          # Bad input, rejected request
    INFRASTRUCTURE = "infrastructure"  # Missing config, unusable environment


class SwitchboardError(Exception):
    """Base exception for all switchboard errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification.
        module: Originating module name (e.g. "store").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_recoverable(self) -> bool:
        """Whether the process can keep serving after this error."""
        return self.category != ErrorCategory.INFRASTRUCTURE

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Storage exceptions
# ---------------------------------------------------------------------------

class StorageError(SwitchboardError):
    """A command store operation failed.

    Attributes:
        operation: The store operation that failed (e.g. "list_all").
    """

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        super().__init__(
            message, category=category, module=module or "store", **context
        )


# ---------------------------------------------------------------------------
# Validation exceptions
# ---------------------------------------------------------------------------

class ValidationError(SwitchboardError):
    """A request was rejected before anything was written."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "registry", **context
        )


class UnknownFieldError(ValidationError):
    """An update named a column outside the mutable-field allow-list.

    Attributes:
        field_name: The rejected field name.
    """

    def __init__(
        self,
        field_name: str,
        *,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.field_name = field_name
        super().__init__(
            f"Unknown or immutable field: {field_name}",
            module=module or "store",
            **context,
        )


class BuiltinCollisionError(ValidationError):
    """A dynamic command tried to take a builtin command's name.

    Attributes:
        name: The contested command name.
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.name = name
        super().__init__(
            f"'{name}' is a builtin command", module="registry", **context
        )


# ---------------------------------------------------------------------------
# Transport exceptions
# ---------------------------------------------------------------------------

class TransportError(SwitchboardError):
    """Sending to or receiving from the chat platform failed."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "bot", **context
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(SwitchboardError):
    """Invalid or missing configuration."""

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )
