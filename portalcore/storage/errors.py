from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key rule would be broken.

    ``detail`` names the offending field or key so the API layer can echo it
    back without leaking driver messages.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingSchemaError(RuntimeError):
    """The platform database lacks tables required to serve requests."""

    def __init__(self, tables: Iterable[str]):
        self.tables = sorted(tables)
        super().__init__(
            "Missing required Postgres tables: {}. Apply schema/platform.sql first.".format(
                ", ".join(self.tables)
            )
        )


__all__ = ["ConstraintViolation", "MissingSchemaError"]
