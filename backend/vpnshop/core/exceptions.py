"""
Error types for the bot core and the HTTP surface.

The ShopError family is raised inside services and flows and handled at the
chat seam (handlers turn them into user-facing text). BusinessError builds
HTTPExceptions with generic messages for the admin API; details go to logs.
"""
from typing import Optional

from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


class ShopError(Exception):
    """Base class for all domain errors."""


class UserInputInvalid(ShopError):
    """Wizard step input failed validation. The slot is kept and the prompt re-issued."""

    def __init__(self, message: str, prompt: Optional[str] = None):
        super().__init__(message)
        self.prompt = prompt


class NotInFlow(ShopError):
    """Step handler invoked for an actor with no active slot of that kind."""

    def __init__(self, kind: str, actor_id: int):
        super().__init__(f"{kind} not active for {actor_id}")
        self.kind = kind
        self.actor_id = actor_id


class AlreadyRunning(ShopError):
    """A broadcast or flash sale fan-out is already in progress."""


class RouteNotFound(ShopError):
    """Staff reply carries no recoverable ticket tag."""


class DeliveryFailed(ShopError):
    """Single outbound send failed. ``unreachable`` marks blocked/deactivated recipients."""

    def __init__(self, chat_id: int, reason: str = "", unreachable: bool = False):
        super().__init__(f"delivery to {chat_id} failed: {reason}")
        self.chat_id = chat_id
        self.reason = reason
        self.unreachable = unreachable


class UserNotFound(ShopError):
    def __init__(self, query):
        super().__init__(f"user not found: {query}")
        self.query = query


class UpstreamUnavailable(ShopError):
    """Storage or provisioning backend failed."""


class InsufficientBalance(ShopError):
    def __init__(self, balance: float, required: float):
        super().__init__(f"insufficient balance: {balance:.2f} < {required:.2f}")
        self.balance = balance
        self.required = required

    @property
    def shortfall(self) -> float:
        return self.required - self.balance


class PromoRejected(ShopError):
    """Promo activation refused. ``reason`` is safe to show the user."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ProvisioningError(ShopError):
    """Raised by VPN providers; services convert it to UpstreamUnavailable."""


class BusinessError:
    """HTTP exceptions with safe (non-leaky) messages."""

    @staticmethod
    def not_found(resource: str = "Resource", reason: str = "") -> HTTPException:
        """
        Generic 404 that doesn't confirm resource existence.

        Also used for a missing/invalid admin token so the admin endpoints
        look absent to outsiders.
        """
        if reason:
            logger.warning(f"Access denied / not found: {resource} - {reason}")

        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Resource not found",
        )

    @staticmethod
    def bad_request(detail: str) -> HTTPException:
        logger.info(f"Bad request: {detail}")
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
        )

    @staticmethod
    def server_error(original_error: Exception = None) -> HTTPException:
        """
        Generic 500 - logs actual error internally, hides from user.
        """
        if original_error:
            logger.error(
                f"Internal server error: {type(original_error).__name__}: {str(original_error)}",
                exc_info=True
            )
        else:
            logger.error("Internal server error occurred", exc_info=True)

        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="An internal error occurred. Please try again later.",
        )
