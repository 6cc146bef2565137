"""API routes for mirrored repositories and their issues."""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from hm_backend.api.dependencies import get_db, get_github_token
from hm_backend.core.audit import AuditEvent, log_audit_event
from hm_backend.core.config import get_settings
from hm_backend.ingestion.github_client import GitHubAPIError, GitHubClient, GitHubNotFoundError
from hm_backend.ingestion.repository_persistence import RepositoryPersistence, RepositoryRef
from hm_backend.ingestion.repository_sync import RepositorySyncer
from hm_backend.services.issue_service import IssueDetail, force_sync, get_issue_detail

router = APIRouter()


# Response Models

class IssueSyncResponse(BaseModel):
    outcome: str
    issue: IssueDetail | None = None


class RepositorySyncResponse(BaseModel):
    repository: str
    repository_id: int
    labels: int
    milestones: int
    collaborators: int


# Helpers

async def _get_repository(db: AsyncSession, owner: str, name: str) -> RepositoryRef:
    repository = await RepositoryPersistence(db).get_by_full_name(owner, name)
    if repository is None or not repository.sync_enabled:
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository


def _require_token(token: str | None) -> str:
    if not token:
        raise HTTPException(status_code=401, detail="GitHub token required")
    return token


# Endpoints

@router.get("/{owner}/{name}/issues/{number}", response_model=IssueDetail)
async def get_issue_endpoint(
    owner: str,
    name: str,
    number: Annotated[int, Path(ge=1)],
    db: AsyncSession = Depends(get_db),
    token: str | None = Depends(get_github_token),
) -> IssueDetail:
    """
    Returns the mirrored issue or pull request with CI, linked items and sync state.

    Never-synced items are synced before responding; stale ones are refreshed
    in the background and served from the mirror.
    """
    repository = await _get_repository(db, owner, name)
    issue = await get_issue_detail(db, repository, number, token=token)
    if issue is None:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


@router.post("/{owner}/{name}/issues/{number}/sync", response_model=IssueSyncResponse)
async def sync_issue_endpoint(
    owner: str,
    name: str,
    number: Annotated[int, Path(ge=1)],
    db: AsyncSession = Depends(get_db),
    token: str | None = Depends(get_github_token),
) -> IssueSyncResponse:
    repository = await _get_repository(db, owner, name)
    outcome = await force_sync(db, repository, number, _require_token(token))
    log_audit_event(
        AuditEvent.ISSUE_SYNC_FORCED,
        repository=repository.full_name,
        metadata={"number": number, "outcome": outcome.value},
    )
    issue = await get_issue_detail(db, repository, number)
    if issue is None:
        raise HTTPException(status_code=404, detail="Issue not found")
    return IssueSyncResponse(outcome=outcome.value, issue=issue)


@router.post("/{owner}/{name}/sync", response_model=RepositorySyncResponse)
async def sync_repository_endpoint(
    owner: str,
    name: str,
    db: AsyncSession = Depends(get_db),
    token: str | None = Depends(get_github_token),
) -> RepositorySyncResponse:
    """Onboards the repository so its webhook events are processed"""
    settings = get_settings()
    try:
        async with GitHubClient(_require_token(token), base_url=settings.github_api_url) as client:
            result = await RepositorySyncer(db).onboard(client, owner, name)
    except GitHubNotFoundError:
        raise HTTPException(status_code=404, detail="Repository not found on GitHub")
    except GitHubAPIError as e:
        raise HTTPException(status_code=502, detail=f"GitHub request failed: {e}")

    return RepositorySyncResponse(
        repository=result.repository.full_name,
        repository_id=result.repository.id,
        labels=result.labels,
        milestones=result.milestones,
        collaborators=result.collaborators,
    )
