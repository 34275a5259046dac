from __future__ import annotations

from typing import Optional

from fastapi import HTTPException


# ──────────────────────────────────────────────────────────────
# Domain errors
# ──────────────────────────────────────────────────────────────

class LumigramError(Exception):
    user_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class ProviderUnavailable(LumigramError):
    """Provider lacks permission or capability in this environment."""
    user_message = "Location provider is not available."


class NoProviderAvailable(LumigramError):
    user_message = "No available location provider."


class AllProvidersFailed(LumigramError):
    user_message = "Failed to get location"

    def __init__(self, last_error: Optional[BaseException] = None):
        msg = str(last_error) if last_error else self.user_message
        super().__init__(msg)
        self.last_error = last_error


class RequestTimeout(LumigramError):
    user_message = "Request timed out."

    def __init__(self, timeout_s: float):
        super().__init__(f"Request timed out after {int(round(timeout_s * 1000))} ms")
        self.timeout_s = timeout_s


class TransportFailure(LumigramError):
    user_message = "Error fetching data"


class MalformedResponse(TransportFailure):
    user_message = "Unexpected response payload."


class BackendError(TransportFailure):
    user_message = "Unable to retrieve nearby places of worship."

    def __init__(self, message: Optional[str], *, status_code: int, target: str):
        super().__init__(message)
        self.status_code = status_code
        self.target = target


class Cancelled(LumigramError):
    """Superseded or torn down. Never shown to the user."""
    user_message = "Cancelled."


class PersistenceFailure(LumigramError):
    user_message = "Local storage is unavailable."


def is_user_visible(exc: BaseException) -> bool:
    return not isinstance(exc, Cancelled)


def user_message(exc: BaseException, default: str = "Something went wrong.") -> str:
    if isinstance(exc, LumigramError):
        return exc.message
    text = str(exc).strip()
    return text or default


# ──────────────────────────────────────────────────────────────
# HTTP helpers
# ──────────────────────────────────────────────────────────────

def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def not_found(code: str, message: str):
    raise HTTPException(status_code=404, detail={"code": code, "message": message})


def conflict(code: str, message: str):
    raise HTTPException(status_code=409, detail={"code": code, "message": message})

