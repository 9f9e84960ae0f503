"""
Response Envelope

Every HTTP-facing result uses the same shape: `{"success": bool, ...}`.
Failures carry the sanitized error and the status from STATUS_CODES; internal
diagnostics are never included.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from .exceptions import CareVaultError, status_for, to_public_error


logger = logging.getLogger(__name__)


def success(payload: Optional[Dict[str, Any]] = None,
            status: int = 200) -> Tuple[int, Dict[str, Any]]:
    """Build a success envelope."""
    body: Dict[str, Any] = dict(payload or {})
    body['success'] = True
    return status, body


def failure(error: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Build a failure envelope from any exception.

    Non-public exceptions are logged with their traceback and reported as a
    generic internal error.
    """
    if not isinstance(error, CareVaultError):
        logger.error("Unhandled %s reached the response layer", type(error).__name__,
                     exc_info=error)
    public = to_public_error(error)
    body = {'success': False, 'error': public.message, **public.to_public()}
    return status_for(public), body


def respond(operation, *args: Any, status: int = 200, **kwargs: Any) -> Tuple[int, Dict[str, Any]]:
    """
    Run an operation and wrap its outcome in an envelope.

    Dict results are merged into the body; objects with `to_dict()` are
    expanded; anything else lands under 'data'.
    """
    try:
        result = operation(*args, **kwargs)
    except Exception as e:
        return failure(e)

    if result is None:
        return success(status=status)
    if hasattr(result, 'to_dict'):
        result = result.to_dict()
    if isinstance(result, dict):
        return success(result, status)
    return success({'data': result}, status)
