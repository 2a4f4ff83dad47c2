"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from dataclasses import asdict
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from client_evals.errors import RunNotFoundError

if TYPE_CHECKING:
    from client_evals.containers import AppContainer
    from client_evals.domain.sessions import RunRecord

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health(request: Request) -> dict[str, object]:
    """Admin health check with the number of live sessions."""
    container: AppContainer = request.app.state.container
    return {"status": "ok", "live_sessions": len(container.session_registry)}


@router.get("/leaderboard", dependencies=[Depends(require_admin)])
async def leaderboard(request: Request, limit: int = 20) -> dict[str, object]:
    """Return the best successful runs."""
    container: AppContainer = request.app.state.container
    runs = container.ranking_service.leaderboard(limit)
    return {
        "runs": [
            {"rank": position, **_run_payload(run)}
            for position, run in enumerate(runs, start=1)
        ]
    }


@router.get("/runs/{run_id}", dependencies=[Depends(require_admin)])
async def run_detail(run_id: str, request: Request) -> dict[str, object]:
    """Return one run with its scorecard."""
    container: AppContainer = request.app.state.container
    try:
        run = container.repository.get_run(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)
        ) from exc
    return _run_payload(run)


def _run_payload(run: RunRecord) -> dict[str, object]:
    payload = asdict(run)
    payload["status"] = run.status.value
    payload["created_at"] = run.created_at.isoformat()
    payload["completed_at"] = (
        run.completed_at.isoformat() if run.completed_at is not None else None
    )
    return payload
