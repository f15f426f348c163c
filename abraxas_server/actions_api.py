"""
Action API - JSON endpoints for the board's user actions.

Every endpoint answers 200 with an ``ActionResult`` dict
(``{'_tag': 'Success', 'data': ...}`` or ``{'_tag': 'Error', 'message': ...}``).
Only a missing caller identity is an HTTP error (401).

Authentication lives outside this service; the caller is identified by the
``X-User-Id`` header set by the fronting proxy.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from .errors import UnauthenticatedError, run_action
from .manifest_lifecycle import DEFAULT_TAIL_LINES
from .services import Services, get_services

logger = logging.getLogger(__name__)

actions_router = APIRouter(prefix='/api', tags=['actions'])


# ============================================================================
# Models
# ============================================================================


class CreateProjectRequest(BaseModel):
    name: str
    repository_url: str = Field(..., alias='repositoryUrl')
    github_token: str = Field(..., alias='githubToken')
    description: Optional[str] = None

    class Config:
        populate_by_name = True


class UpdateProjectRequest(BaseModel):
    """Partial project update; omitted fields are left unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None
    repository_url: Optional[str] = Field(default=None, alias='repositoryUrl')
    github_token: Optional[str] = Field(default=None, alias='githubToken')
    local_setup_script: Optional[str] = Field(default=None, alias='localSetupScript')

    class Config:
        populate_by_name = True


class SaveOpencodeAuthRequest(BaseModel):
    auth_json: str = Field(..., alias='authJson')

    class Config:
        populate_by_name = True


class CreateManifestRequest(BaseModel):
    name: str
    prd_name: Optional[str] = Field(default=None, alias='prdName')

    class Config:
        populate_by_name = True


class UpdatePrdNameRequest(BaseModel):
    prd_name: str = Field(..., alias='prdName')

    class Config:
        populate_by_name = True


class CreateTaskRequest(BaseModel):
    title: str
    description: Optional[str] = None
    type: str = 'feature'
    model: str = 'claude-sonnet-4-5'


class UpdateTaskRequest(BaseModel):
    """Partial task update; omitted fields are left unchanged."""

    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    model: Optional[str] = None
    branch_name: Optional[str] = Field(default=None, alias='branchName')

    class Config:
        populate_by_name = True


class AddCommentRequest(BaseModel):
    content: str


# ============================================================================
# Helpers
# ============================================================================


def get_caller_id(x_user_id: Optional[str] = Header(None, alias='X-User-Id')) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return x_user_id


async def _respond(
    name: str,
    action: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
    **messages: str,
) -> Dict[str, Any]:
    try:
        result = await run_action(name, action, **messages)
    except UnauthenticatedError:
        raise HTTPException(status_code=401, detail='Unauthorized')
    return result.to_dict()


# ============================================================================
# Projects and account
# ============================================================================


@actions_router.post('/projects')
async def create_project(
    body: CreateProjectRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'create_project',
        lambda: services.projects.create_project(
            user_id, body.name, body.repository_url, body.github_token, body.description
        ),
        failure_message='Failed to create project',
    )


@actions_router.get('/projects')
async def list_projects(
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'list_projects', lambda: services.projects.list_projects(user_id)
    )


@actions_router.get('/projects/{project_id}')
async def get_project(
    project_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'get_project', lambda: services.projects.get_project(user_id, project_id)
    )


@actions_router.patch('/projects/{project_id}')
async def update_project(
    project_id: str,
    body: UpdateProjectRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    changes = body.model_dump(exclude_unset=True)
    return await _respond(
        'update_project',
        lambda: services.projects.update_project(user_id, project_id, **changes),
        unauthorized_message='You do not have permission to update this project',
        failure_message='Failed to update project',
    )


@actions_router.post('/projects/{project_id}/local-setup/toggle')
async def toggle_local_setup(
    project_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'toggle_local_setup',
        lambda: services.projects.toggle_local_setup(user_id, project_id),
    )


@actions_router.put('/account/opencode-auth')
async def save_opencode_auth(
    body: SaveOpencodeAuthRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'save_opencode_auth',
        lambda: services.projects.save_opencode_auth(user_id, body.auth_json),
        failure_message='Failed to save auth',
    )


@actions_router.get('/account/opencode-auth')
async def get_opencode_auth_status(
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'get_opencode_auth_status',
        lambda: services.projects.get_opencode_auth_status(user_id),
    )


# ============================================================================
# Manifests
# ============================================================================


@actions_router.post('/projects/{project_id}/manifests')
async def create_manifest(
    project_id: str,
    body: CreateManifestRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'create_manifest',
        lambda: services.manifests.create_manifest(
            user_id, project_id, body.name, body.prd_name
        ),
        failure_message='Failed to create manifest',
    )


@actions_router.get('/projects/{project_id}/manifests')
async def list_manifests(
    project_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'list_manifests',
        lambda: services.manifests.list_manifests(user_id, project_id),
    )


@actions_router.get('/projects/{project_id}/manifests/prd-data')
async def get_manifest_prd_data(
    project_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'get_manifest_prd_data',
        lambda: services.manifests.get_manifest_prd_data(user_id, project_id),
    )


@actions_router.delete('/manifests/{manifest_id}')
async def delete_manifest(
    manifest_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'delete_manifest',
        lambda: services.manifests.delete_manifest(user_id, manifest_id),
        failure_message='Failed to delete manifest',
    )


@actions_router.patch('/manifests/{manifest_id}/prd-name')
async def update_prd_name(
    manifest_id: str,
    body: UpdatePrdNameRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'update_prd_name',
        lambda: services.manifests.update_prd_name(user_id, manifest_id, body.prd_name),
    )


@actions_router.post('/manifests/{manifest_id}/task-loop/start')
async def start_task_loop(
    manifest_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'start_task_loop',
        lambda: services.manifests.start_task_loop(user_id, manifest_id),
        failure_message='Failed to start task loop',
    )


@actions_router.post('/manifests/{manifest_id}/task-loop/stop')
async def stop_task_loop(
    manifest_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'stop_task_loop',
        lambda: services.manifests.stop_task_loop(user_id, manifest_id),
        failure_message='Failed to stop task loop',
    )


@actions_router.post('/manifests/{manifest_id}/sprite')
async def spawn_manifest_sprite(
    manifest_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'spawn_sprite',
        lambda: services.manifests.spawn_sprite(user_id, manifest_id),
        failure_message='Failed to spawn sprite',
    )


@actions_router.get('/manifests/{manifest_id}/log')
async def tail_manifest_log(
    manifest_id: str,
    lines: int = Query(DEFAULT_TAIL_LINES, ge=1, le=1000),
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'tail_log',
        lambda: services.manifests.tail_log(user_id, manifest_id, lines),
    )


@actions_router.get('/projects/{project_id}/sprite')
async def get_sprite_for_branch(
    project_id: str,
    branch: str = Query(..., min_length=1),
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'get_sprite_for_branch',
        lambda: services.manifests.get_sprite_for_branch(user_id, project_id, branch),
    )


@actions_router.delete('/projects/{project_id}/sprite')
async def stop_sprite(
    project_id: str,
    branch: str = Query(..., min_length=1),
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'stop_sprite',
        lambda: services.manifests.stop_sprite(user_id, project_id, branch),
        failure_message='Failed to stop sprite',
    )


# ============================================================================
# Tasks
# ============================================================================


@actions_router.get('/projects/{project_id}/tasks')
async def list_tasks(
    project_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'list_tasks', lambda: services.invocations.list_tasks(user_id, project_id)
    )


@actions_router.post('/projects/{project_id}/tasks')
async def create_task(
    project_id: str,
    body: CreateTaskRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'create_task',
        lambda: services.invocations.create_task(
            user_id, project_id, body.title, body.description, body.type, body.model
        ),
    )


@actions_router.get('/tasks/{task_id}')
async def get_task_details(
    task_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'get_task_details',
        lambda: services.invocations.get_task_details(user_id, task_id),
    )


@actions_router.patch('/tasks/{task_id}')
async def update_task(
    task_id: str,
    body: UpdateTaskRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    changes = body.model_dump(exclude_unset=True)
    return await _respond(
        'update_task',
        lambda: services.invocations.update_task(user_id, task_id, **changes),
        failure_message='Failed to update task',
    )


@actions_router.post('/tasks/{task_id}/execute')
async def execute_task(
    task_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'execute_task',
        lambda: services.invocations.execute_task(user_id, task_id),
        failure_message='Failed to start task execution',
    )


@actions_router.delete('/tasks/{task_id}')
async def delete_task(
    task_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'delete_task',
        lambda: services.invocations.delete_task(user_id, task_id),
    )


@actions_router.delete('/tasks/{task_id}/sprite')
async def destroy_task_sprite(
    task_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'destroy_sprite',
        lambda: services.invocations.destroy_sprite(user_id, task_id),
        failure_message='Failed to destroy sprite',
    )


@actions_router.get('/tasks/{task_id}/comments')
async def list_comments(
    task_id: str,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'list_comments',
        lambda: services.invocations.list_comments(user_id, task_id),
    )


@actions_router.post('/tasks/{task_id}/comments')
async def add_comment(
    task_id: str,
    body: AddCommentRequest,
    user_id: str = Depends(get_caller_id),
    services: Services = Depends(get_services),
):
    return await _respond(
        'add_comment',
        lambda: services.invocations.add_comment(user_id, task_id, body.content),
    )
