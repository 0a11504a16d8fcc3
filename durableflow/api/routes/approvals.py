"""
Approval Routes.

Human decisions for runs parked on a user-approval node.
"""

from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException
import logging

from durableflow.api.schemas import ApprovalRequest, ErrorResponse
from durableflow.engine.errors import ThreadBusy
from durableflow.engine.executor import ResumeEvent, ResumeKind
from durableflow.runtime import Runtime, get_runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/approvals", tags=["Approvals"])

DECISIONS = {"approve", "approved", "reject", "rejected"}


@router.get("")
async def list_pending_approvals(runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """List runs waiting on an approval."""
    pending = [
        s.to_dict() for s in await runtime.engine.suspensions.list_all()
        if s.waiting_on.type.value == ResumeKind.APPROVAL.value
    ]
    return {"approvals": pending, "total": len(pending)}


@router.post(
    "/{approval_id}",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def decide(
    approval_id: str,
    request: ApprovalRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Approve or reject, resuming the waiting run on the matching handle."""
    if request.decision.strip().lower() not in DECISIONS:
        raise HTTPException(status_code=400, detail="Decision must be 'approve' or 'reject'")

    suspension = await runtime.engine.suspensions.find_by_approval(approval_id)
    if suspension is None:
        raise HTTPException(status_code=404, detail=f"No run is waiting on approval '{approval_id}'")

    logger.info(f"Approval '{approval_id}': {request.decision}")
    try:
        result = await runtime.engine.resume(
            suspension.thread_id,
            ResumeEvent(
                kind=ResumeKind.APPROVAL,
                payload={"decision": request.decision, "comment": request.comment},
                id=approval_id,
            ),
        )
    except ThreadBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.to_dict()
