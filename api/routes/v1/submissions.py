"""
api/routes/v1/submissions.py -- Lead-form submissions: public intake and staff viewing.

Routes:
  POST /api/v1/submissions             -- validate and store a questionnaire submission
  GET  /api/v1/submissions             -- paginated listing, newest first (?status=new)
  GET  /api/v1/submissions/{reference} -- one submission with its stored answers

POST is public (no session required) and rate-limited per connection address
(settings.submission_rate_limit). SubmissionError codes map to 400 / 404 / 500.
The GET routes require the view_submissions grant.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    Pagination,
    SubmissionDetail,
    SubmissionPage,
    SubmissionRequest,
    SubmissionResponse,
    SubmissionRow,
)
from auth.dependencies import get_client_info, require_permission
from auth.models import Account
from auth.store import Page
from core.config import get_settings
from questionnaire.models import Submission
from questionnaire.submission import SubmissionError, SubmissionHandler

_settings = get_settings()

_STATUS_BY_CODE = {"validation": 400, "not_found": 404, "internal": 500}
_MAX_LIMIT = 200

router = APIRouter()


def _row_fields(submission: Submission) -> dict:
    return {
        "id": submission.id,
        "reference": submission.reference,
        "service_id": submission.service_id,
        "questionnaire_id": submission.questionnaire_id,
        "customer_name": submission.customer_name,
        "customer_email": submission.customer_email,
        "customer_phone": submission.customer_phone,
        "status": submission.status,
        "submitted_at": submission.submitted_at,
    }


@router.post("/submissions", response_model=SubmissionResponse, status_code=201)
@limiter.limit(_settings.submission_rate_limit)
def submit(request: Request, body: SubmissionRequest) -> JSONResponse:
    handler: SubmissionHandler = request.app.state.submission_handler
    try:
        result = handler.process(body.fields, body.service_slug, get_client_info(request))
    except SubmissionError as exc:
        content = {"success": False, "code": exc.code, "message": exc.message}
        if exc.fields:
            content["fields"] = exc.fields
        return JSONResponse(status_code=_STATUS_BY_CODE.get(exc.code, 400), content=content)
    return JSONResponse(status_code=201, content=SubmissionResponse(reference=result.reference).model_dump())


@router.get("/submissions", response_model=SubmissionPage)
def list_submissions(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    status: Optional[str] = Query(default=None, max_length=20),
    account: Account = Depends(require_permission("view_submissions")),
) -> SubmissionPage:
    limit = min(limit, _MAX_LIMIT)
    store = request.app.state.questionnaire_store
    items, total = store.list_submissions(page=page, limit=limit, status=status or None)
    paged = Page(items=items, page=page, per_page=limit, total_records=total)
    return SubmissionPage(
        data=[SubmissionRow(**_row_fields(s)) for s in items],
        pagination=Pagination(
            current_page=paged.page,
            per_page=paged.per_page,
            total_records=paged.total_records,
            total_pages=paged.total_pages,
        ),
    )


@router.get("/submissions/{reference}", response_model=SubmissionDetail)
def get_submission(
    request: Request,
    reference: str,
    account: Account = Depends(require_permission("view_submissions")),
) -> SubmissionDetail:
    submission = request.app.state.questionnaire_store.get_submission_by_reference(reference)
    if submission is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Anfrage nicht gefunden."},
        )
    return SubmissionDetail(
        **_row_fields(submission),
        form_data=submission.form_data,
        ip_address=submission.ip_address,
        user_agent=submission.user_agent,
    )
