"""Error taxonomy for order operations.

Every error carries the message that is returned to the caller inside the
``{"success": False, "message": ...}`` envelope.
"""

import functools
import inspect
import logging

logger = logging.getLogger(__name__)


class LifecycleError(Exception):
    """Base class for expected business failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LifecycleError):
    """Order, shelter, reroute or user does not exist."""


class Unauthorized(LifecycleError):
    """Actor is not the owner, claimer or assigned driver."""


class IllegalState(LifecycleError):
    """The order is not in a state that permits the operation."""


class ValidationFailed(LifecycleError):
    """Malformed input (rating, status string, missing field)."""


def success_response(message=None, data=None, **extra) -> dict:
    response = {"success": True}
    if message is not None:
        response["message"] = message
    if data is not None:
        response["data"] = data
    response.update(extra)
    return response


def failure_response(message: str, **extra) -> dict:
    response = {"success": False, "message": message}
    response.update(extra)
    return response


def guarded(operation: str, error_message: str = "Error", context: str = "order_id"):
    """Convert exceptions raised by a service method into failure envelopes.

    Business errors carry their own message. Anything else is treated as an
    infrastructure failure: the session is rolled back, the error is logged
    with the operation name and the ``context`` argument (the order id unless
    told otherwise), and ``error_message`` is returned.
    """

    def decorator(fn):
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except LifecycleError as exc:
                return failure_response(exc.message)
            except Exception:
                bound = signature.bind_partial(self, *args, **kwargs).arguments
                logger.exception("%s failed (%s=%s)", operation, context, bound.get(context))
                _rollback(getattr(self, "session", None))
                return failure_response(error_message)

        return wrapper

    return decorator


def _rollback(session) -> None:
    if session is None:
        return
    try:
        session.rollback()
    except Exception:
        logger.exception("Session rollback failed")
