"""Ownership checks shared by user actions."""

from typing import Optional

from .errors import NotFoundError, UnauthenticatedError, UnauthorizedError
from .models import Project
from .store import LifecycleStore


async def get_owned_project(
    store: LifecycleStore, user_id: Optional[str], project_id: str
) -> Project:
    """Load a project the caller owns.

    Raises:
        UnauthenticatedError: no caller identity
        NotFoundError: unknown project
        UnauthorizedError: project belongs to someone else
    """
    if not user_id:
        raise UnauthenticatedError('Authentication required')
    project = await store.get_project(project_id)
    if project is None:
        raise NotFoundError('Project not found', entity='project', id=project_id)
    if project.user_id != user_id:
        raise UnauthorizedError('You do not have access to this project')
    return project
