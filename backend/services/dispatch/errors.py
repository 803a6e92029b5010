"""
Dispatch error taxonomy

Services raise these; main.py maps them to HTTP responses.
"""

from typing import List, Optional


class DispatchError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DispatchError):
    """Referenced call, unit, call type or workflow does not exist"""
    status_code = 404


class ValidationFailure(DispatchError):
    """One or more input problems, reported together"""
    status_code = 400

    def __init__(self, errors: List[str], prefix: Optional[str] = None):
        self.errors = list(errors)
        message = ", ".join(self.errors)
        if prefix:
            message = f"{prefix}: {message}"
        super().__init__(message)


class ConflictError(DispatchError):
    """Request is incompatible with the current state (double close, bad transition)"""
    status_code = 409


class PersistenceFailure(DispatchError):
    """Data store error; details stay in the server log"""
    status_code = 500

    def __init__(self, message: str = "Operation failed"):
        super().__init__(message)
