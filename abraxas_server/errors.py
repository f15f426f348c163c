"""
Error taxonomy for the Abraxas orchestrator.

Domain errors (not found, validation, authorization) are recovered into
``ActionResult`` values at the action boundary. Infrastructure errors
(sandbox provider, repository host, crypto) are logged with entity ids and
surfaced to users as a generic failure.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class AbraxasError(Exception):
    """Base class for every error raised by the orchestrator."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# =============================================================================
# Domain errors
# =============================================================================


class NotFoundError(AbraxasError):
    def __init__(self, message: str, entity: str, id: str):
        super().__init__(message)
        self.entity = entity
        self.id = id


class ValidationError(AbraxasError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class UnauthenticatedError(AbraxasError):
    pass


class UnauthorizedError(AbraxasError):
    pass


class AlreadyRunningError(AbraxasError):
    pass


# =============================================================================
# Sandbox provider errors
# =============================================================================


class SpritesError(AbraxasError):
    pass


class SpritesApiError(SpritesError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SpritesNotFoundError(SpritesError):
    def __init__(self, message: str, sprite_name: str):
        super().__init__(message)
        self.sprite_name = sprite_name


class SpritesConfigError(SpritesError):
    pass


class SpriteExecutionError(SpritesError):
    def __init__(self, message: str, sprite_name: str):
        super().__init__(message)
        self.sprite_name = sprite_name


# =============================================================================
# Repository host and crypto errors
# =============================================================================


class GitHubFetchError(AbraxasError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CryptoConfigError(AbraxasError):
    pass


class EncryptionError(AbraxasError):
    pass


class DecryptionError(AbraxasError):
    pass


# =============================================================================
# Action results
# =============================================================================


@dataclass
class ActionResult:
    """Outcome of a user action, rendered as a tagged dict for the UI."""

    ok: bool
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None) -> 'ActionResult':
        return cls(ok=True, data=data)

    @classmethod
    def error(cls, message: str) -> 'ActionResult':
        return cls(ok=False, message=message)

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {'_tag': 'Error', 'message': self.message}
        result: Dict[str, Any] = {'_tag': 'Success'}
        if self.data is not None:
            result['data'] = self.data
        return result


async def run_action(
    name: str,
    action: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    not_found_message: Optional[str] = None,
    unauthorized_message: str = 'You do not have access to this resource',
    failure_message: str = 'Something went wrong, please try again',
) -> ActionResult:
    """Run a user action and convert its failure into an ``ActionResult``.

    ``UnauthenticatedError`` is re-raised so the HTTP boundary can answer
    401. Domain errors carry their message to the user. Infrastructure
    errors are logged and reported as ``failure_message``.
    """
    try:
        data = await action()
    except UnauthenticatedError:
        raise
    except NotFoundError as e:
        return ActionResult.error(not_found_message or e.message)
    except UnauthorizedError:
        return ActionResult.error(unauthorized_message)
    except (ValidationError, AlreadyRunningError) as e:
        return ActionResult.error(e.message)
    except AbraxasError as e:
        logger.error(f'Action {name} failed: {type(e).__name__}: {e.message}')
        return ActionResult.error(failure_message)
    except Exception:
        logger.exception(f'Action {name} failed unexpectedly')
        return ActionResult.error(failure_message)
    return ActionResult.success(data)
