"""
Blood Exchange error taxonomy.

Every engine operation reports failure by raising one of these inside its
unit of work; the store rolls back and the HTTP layer maps the exception to a
status code.
"""

from typing import Any, Dict, Optional


class ExchangeError(Exception):
    """Base exception for engine errors"""
    status_code = 500
    code = "ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.code, "detail": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidInput(ExchangeError):
    """Missing or malformed fields"""
    status_code = 400
    code = "INVALID_INPUT"


class InvalidSelection(ExchangeError):
    """Referenced units/requests fail ownership, availability or homogeneity"""
    status_code = 400
    code = "INVALID_SELECTION"


class Conflict(ExchangeError):
    """Target entity is not in the state the operation requires"""
    status_code = 409
    code = "CONFLICT"


class InvalidState(Conflict):
    """Transfer transition attempted from the wrong state"""
    code = "INVALID_STATE"


class Forbidden(ExchangeError):
    """Acting facility lacks the role required for this operation"""
    status_code = 403
    code = "FORBIDDEN"


class NotFound(ExchangeError):
    status_code = 404
    code = "NOT_FOUND"
