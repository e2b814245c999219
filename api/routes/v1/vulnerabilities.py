"""
api/routes/v1/vulnerabilities.py -- Vulnerability demo REST endpoints.

Routes:
  GET  /api/v1/vulnerabilities                      -- demos with their current level
  POST /api/v1/vulnerabilities/{vulnerability_id}   -- run the demo at its current level

The access gate resolves the configured level and hands back the matching
variant from security/demos.py; this module never branches on the level.
Variants run in the threadpool because the medium brute-force variant sleeps.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from api.models import DemoRunRequest, DemoRunResponse, ErrorDetail, VulnerabilityRow
from auth.dependencies import LOGGED_IN_READ, check_policy, get_session, guard
from security.demos import DEMO_TITLES, DemoRequest, has_demo
from security.gate import ActionPolicy, GateDecision

router = APIRouter()


@router.get("/vulnerabilities", response_model=list[VulnerabilityRow])
def list_vulnerabilities(
    request: Request, decision: GateDecision = Depends(guard(LOGGED_IN_READ))
) -> list[VulnerabilityRow]:
    return [
        VulnerabilityRow(id=s.vulnerability_id, title=DEMO_TITLES.get(s.vulnerability_id, s.vulnerability_id), level=s.level.value)
        for s in request.app.state.levels.get_all_settings()
        if has_demo(s.vulnerability_id)
    ]


@router.post("/vulnerabilities/{vulnerability_id}", response_model=DemoRunResponse)
async def run_demo(vulnerability_id: str, body: DemoRunRequest, request: Request) -> DemoRunResponse:
    if not has_demo(vulnerability_id):
        await check_policy(request, ActionPolicy(name="demo"))
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message="Unknown vulnerability demo.").model_dump(),
        )

    decision = await check_policy(request, ActionPolicy(name=f"demo:{vulnerability_id}", vulnerability=vulnerability_id))
    demo_request = DemoRequest(
        params=body.params,
        session=get_session(request),
        # The gate has already verified the token for this POST.
        csrf_valid=True,
        referer=request.headers.get("referer", ""),
        host=request.headers.get("host", ""),
        rate_limiter=request.app.state.rate_limiter,
    )
    result = await run_in_threadpool(decision.variant, demo_request)
    return DemoRunResponse(
        vulnerability_id=result.vulnerability_id,
        level=result.level.value,
        html=result.html,
        executed=result.executed,
        blocked=result.blocked,
        detail=result.detail,
        query=result.query,
        rows=result.rows,
    )
