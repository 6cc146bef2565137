"""Writes for check runs, commit statuses and workflow runs"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlmodel.ext.asyncio.session import AsyncSession

from .payloads import GitHubCheckRun, GitHubCommitStatus, GitHubWorkflowRun
from .users import ensure_user

logger = logging.getLogger(__name__)

# created_at orders runs of the same check; re-runs get a new GitHub id and
# therefore a new row, superseding the older one without deleting it.
UPSERT_CHECK_RUN_SQL = text("""
    INSERT INTO mirror.check_runs
        (github_id, repository_id, head_sha, name, status, conclusion, html_url,
         details_url, app_slug, app_name, started_at, completed_at, created_at)
    VALUES
        (:github_id, :repository_id, :head_sha, :name, :status, :conclusion, :html_url,
         :details_url, :app_slug, :app_name, :started_at, :completed_at,
         COALESCE(:started_at, now()))
    ON CONFLICT (github_id) DO UPDATE SET
        status = EXCLUDED.status,
        conclusion = EXCLUDED.conclusion,
        html_url = EXCLUDED.html_url,
        details_url = EXCLUDED.details_url,
        started_at = COALESCE(EXCLUDED.started_at, mirror.check_runs.started_at),
        completed_at = EXCLUDED.completed_at
    RETURNING id
""")

UPSERT_COMMIT_STATUS_SQL = text("""
    INSERT INTO mirror.commit_statuses
        (github_id, repository_id, sha, context, state, description, target_url,
         avatar_url, created_at)
    VALUES
        (:github_id, :repository_id, :sha, :context, :state, :description, :target_url,
         :avatar_url, COALESCE(:created_at, now()))
    ON CONFLICT (github_id) DO UPDATE SET
        state = EXCLUDED.state,
        description = EXCLUDED.description,
        target_url = EXCLUDED.target_url
    RETURNING id
""")

UPSERT_WORKFLOW_RUN_SQL = text("""
    INSERT INTO mirror.workflow_runs
        (github_id, repository_id, issue_id, workflow_id, name, display_title, event,
         status, conclusion, head_branch, head_sha, run_number, run_attempt, html_url,
         actor_id, started_at, completed_at)
    VALUES
        (:github_id, :repository_id, :issue_id, :workflow_id, :name, :display_title, :event,
         :status, :conclusion, :head_branch, :head_sha, :run_number, :run_attempt, :html_url,
         :actor_id, :started_at, :completed_at)
    ON CONFLICT (github_id) DO UPDATE SET
        issue_id = COALESCE(EXCLUDED.issue_id, mirror.workflow_runs.issue_id),
        status = EXCLUDED.status,
        conclusion = EXCLUDED.conclusion,
        run_attempt = EXCLUDED.run_attempt,
        html_url = EXCLUDED.html_url,
        completed_at = EXCLUDED.completed_at
    RETURNING id
""")


class CIPersistence:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def upsert_check_run(self, repository_id: int, check_run: GitHubCheckRun) -> int:
        app = check_run.app
        result = await self._session.execute(
            UPSERT_CHECK_RUN_SQL,
            {
                "github_id": check_run.id,
                "repository_id": repository_id,
                "head_sha": check_run.head_sha,
                "name": check_run.name,
                "status": check_run.status,
                "conclusion": check_run.conclusion,
                "html_url": check_run.html_url,
                "details_url": check_run.details_url,
                "app_slug": app.slug if app else None,
                "app_name": app.name if app else None,
                "started_at": check_run.started_at,
                "completed_at": check_run.completed_at,
            },
        )
        check_run_id = result.scalar_one()
        await self._session.commit()
        return check_run_id

    async def upsert_commit_status(
        self, repository_id: int, sha: str, status: GitHubCommitStatus
    ) -> int:
        result = await self._session.execute(
            UPSERT_COMMIT_STATUS_SQL,
            {
                "github_id": status.id,
                "repository_id": repository_id,
                "sha": sha,
                "context": status.context,
                "state": status.state,
                "description": status.description,
                "target_url": status.target_url,
                "avatar_url": status.avatar_url,
                "created_at": status.created_at,
            },
        )
        status_id = result.scalar_one()
        await self._session.commit()
        return status_id

    async def upsert_workflow_run(self, repository_id: int, run: GitHubWorkflowRun) -> int:
        issue_id = await self._resolve_pull_request(repository_id, run)
        actor_id = await ensure_user(self._session, run.actor)
        result = await self._session.execute(
            UPSERT_WORKFLOW_RUN_SQL,
            {
                "github_id": run.id,
                "repository_id": repository_id,
                "issue_id": issue_id,
                "workflow_id": run.workflow_id,
                "name": run.name,
                "display_title": run.display_title,
                "event": run.event,
                "status": run.status,
                "conclusion": run.conclusion,
                "head_branch": run.head_branch,
                "head_sha": run.head_sha,
                "run_number": run.run_number,
                "run_attempt": run.run_attempt,
                "html_url": run.html_url,
                "actor_id": actor_id,
                "started_at": run.run_started_at,
                "completed_at": run.updated_at if run.status == "completed" else None,
            },
        )
        run_id = result.scalar_one()
        await self._session.commit()
        return run_id

    async def _resolve_pull_request(self, repository_id: int, run: GitHubWorkflowRun) -> int | None:
        """Links by PR number when GitHub reports one, else by head sha"""
        if run.pull_requests:
            result = await self._session.execute(
                text("""
                    SELECT id FROM mirror.issues
                    WHERE repository_id = :repository_id AND number = :number
                """),
                {"repository_id": repository_id, "number": run.pull_requests[0].number},
            )
            issue_id = result.scalar_one_or_none()
            if issue_id is not None:
                return issue_id

        if run.head_sha:
            result = await self._session.execute(
                text("""
                    SELECT id FROM mirror.issues
                    WHERE repository_id = :repository_id
                      AND is_pull_request = true
                      AND head_sha = :head_sha
                    ORDER BY remote_updated_at DESC NULLS LAST
                    LIMIT 1
                """),
                {"repository_id": repository_id, "head_sha": run.head_sha},
            )
            return result.scalar_one_or_none()

        return None
