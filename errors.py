"""
Error types shared by the rental workflow, accounting and the routes.

Every write path runs inside :func:`transaction`, which commits on success and
on failure rolls back, logs and re-raises one of the types below.
"""
import enum
import logging
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from models import db

logger = logging.getLogger(__name__)


class EntityKind(enum.Enum):
    """Which referenced record was missing; the value is the user-facing label."""
    VEHICLE = 'vehicle'
    CUSTOMER = 'customer'
    INCHARGER = 'incharge person'
    VEHICLE_STATUS = 'vehicle status'
    DEPOSIT_TYPE = 'deposit type'
    CONTACT_TYPE = 'contact type'
    ACCOUNT = 'account'
    VENDOR = 'vendor'
    RENTAL = 'rental'
    VISA = 'visa'


class RentalAdminError(Exception):
    """Base error; ``user_message`` is safe to show in a flash message."""
    def __init__(self, message, user_message=None):
        self.message = message
        self.user_message = user_message or message
        super().__init__(self.message)


class AuthorizationError(RentalAdminError):
    def __init__(self, permission, actor_id=None):
        self.permission = permission
        self.actor_id = actor_id
        super().__init__(
            f"User [ID: {actor_id}] lacks permission '{permission}'",
            'You do not have permission to perform this action.',
        )


class ValidationError(RentalAdminError):
    """Field-level failures, raised before any transaction is opened."""
    def __init__(self, errors):
        self.errors = dict(errors)
        first = next(iter(self.errors.values()), 'The submitted data is invalid.')
        super().__init__(f"Validation failed: {self.errors}", first)


class NotFoundError(RentalAdminError):
    def __init__(self, kind, identifier=None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(
            f"{kind.name} [ID: {identifier}] not found",
            f"The selected {kind.value} could not be found. Please check your selection.",
        )


class ConflictError(RentalAdminError):
    """Another request changed the same record first."""
    def __init__(self, message):
        super().__init__(message, 'This record was changed by someone else. Please reload and try again.')


class UnexpectedError(RentalAdminError):
    def __init__(self, message):
        super().__init__(message, 'An unexpected error occurred. Please try again later or contact support.')


def find_or_fail(model, identifier, kind):
    """Primary-key lookup that raises a typed :class:`NotFoundError`."""
    record = db.session.get(model, identifier) if identifier is not None else None
    if record is None or getattr(record, 'deleted_at', None) is not None:
        raise NotFoundError(kind, identifier)
    return record


def require(actor, permission):
    if actor is None or not actor.can(permission):
        actor_id = getattr(actor, 'id', None)
        logger.warning(f"Authorization failed for User [ID: {actor_id}] on '{permission}'")
        raise AuthorizationError(permission, actor_id)


@contextmanager
def transaction(action, actor):
    """Commit the session's writes as one unit, or roll all of them back."""
    actor_id = getattr(actor, 'id', None)
    try:
        yield db.session
        db.session.commit()
    except NotFoundError as e:
        db.session.rollback()
        logger.error(f"{action} by User [ID: {actor_id}] rolled back: {e.message}")
        raise
    except StaleDataError as e:
        db.session.rollback()
        logger.warning(f"{action} by User [ID: {actor_id}] hit a concurrent update: {e}")
        raise ConflictError(f"{action}: stale write") from e
    except RentalAdminError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        logger.exception(f"Unexpected error during {action} by User [ID: {actor_id}]: {e}")
        raise UnexpectedError(f"{action}: {e}") from e
