"""Reconciliation API router."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Body, Query, Response, status

from docportal.deps import CurrentUserId, DbSession
from docportal.logger import get_logger
from docportal.schemas import (
    AutoMatchRequest,
    AutoMatchResponse,
    CandidateResponse,
    DocumentSummary,
    MatchRequest,
    MatchResponse,
)
from docportal.services.errors import ConflictError, NotFoundError, ValidationError
from docportal.services.reconciliation import UNSET, MatchCandidate, ReconciliationMatcher
from docportal.utils import raise_bad_request, raise_conflict, raise_not_found

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
logger = get_logger(__name__)


def _candidate_response(candidate: MatchCandidate) -> CandidateResponse:
    return CandidateResponse(
        document=DocumentSummary.model_validate(candidate.document),
        score=candidate.score,
        tier=candidate.tier,
        amount_difference=candidate.amount_difference,
        date_difference_days=candidate.date_difference_days,
        breakdown=candidate.breakdown,
    )


@router.post("/match", response_model=MatchResponse)
async def match_transaction(payload: MatchRequest, db: DbSession, user_id: CurrentUserId) -> MatchResponse:
    """Link a bank transaction to a document, replacing its previous link."""
    expected = (
        payload.expected_document_id if "expected_document_id" in payload.model_fields_set else UNSET
    )
    try:
        match = await ReconciliationMatcher(db).match(
            user_id,
            payload.transaction_id,
            payload.document_id,
            expected_document_id=expected,
        )
    except NotFoundError as exc:
        raise_not_found(exc.resource, cause=exc)
    except ValidationError as exc:
        raise_bad_request(str(exc), cause=exc)
    except ConflictError as exc:
        await db.rollback()
        raise_conflict(str(exc), cause=exc)
    response = MatchResponse.model_validate(match)
    await db.commit()
    return response


@router.delete("/match/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unmatch_transaction(transaction_id: UUID, db: DbSession, user_id: CurrentUserId) -> Response:
    try:
        await ReconciliationMatcher(db).unmatch(user_id, transaction_id)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    except ValidationError as exc:
        raise_bad_request(str(exc), cause=exc)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/candidates/{transaction_id}", response_model=list[CandidateResponse])
async def list_candidates(
    transaction_id: UUID,
    db: DbSession,
    user_id: CurrentUserId,
    limit: Annotated[int | None, Query(ge=1, le=50)] = None,
) -> list[CandidateResponse]:
    try:
        candidates = await ReconciliationMatcher(db).candidates(user_id, transaction_id, limit=limit)
    except NotFoundError as exc:
        raise_not_found("Transaction", cause=exc)
    except ValidationError as exc:
        raise_bad_request(str(exc), cause=exc)
    return [_candidate_response(candidate) for candidate in candidates]


@router.post("/auto-match", response_model=AutoMatchResponse)
async def auto_match(
    db: DbSession,
    user_id: CurrentUserId,
    payload: Annotated[AutoMatchRequest | None, Body()] = None,
) -> AutoMatchResponse:
    job_id = payload.job_id if payload else None
    try:
        matches = await ReconciliationMatcher(db).auto_match(user_id, job_id=job_id)
    except NotFoundError as exc:
        raise_not_found("Job", cause=exc)
    except ConflictError as exc:
        await db.rollback()
        raise_conflict(str(exc), cause=exc)
    response = AutoMatchResponse(
        matched=len(matches),
        matches=[MatchResponse.model_validate(match) for match in matches],
    )
    await db.commit()
    return response
