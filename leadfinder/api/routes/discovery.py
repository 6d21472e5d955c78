"""API endpoints for company, pattern and contact discovery."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from leadfinder.config import settings
from leadfinder.models.discovery import EmailPattern, ResolvedContact
from leadfinder.models.events import to_sse
from leadfinder.services.discovery.errors import DiscoveryError
from leadfinder.services.discovery.service import DiscoveryService, get_discovery_service

router = APIRouter()
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class DiscoveryRequestBody(BaseModel):
    query: str = Field(min_length=1, max_length=500)
    total: int = Field(default=settings.default_target_companies, ge=1, le=settings.max_target_companies)


class EmailPatternsRequest(BaseModel):
    company_ids: list[str] = Field(min_length=1)


class EmailPatternsResponse(BaseModel):
    patterns: list[EmailPattern]
    existing_count: int
    new_count: int


class PeopleAtCompanyRequest(BaseModel):
    company_id: str
    amount: int = Field(default=15, ge=1, le=50)
    already_found_contacts: list[str] = Field(default_factory=list)


class PeopleAtCompanyResponse(BaseModel):
    company_id: str
    company_name: str
    contacts: list[ResolvedContact]
    existing_count: int
    new_count: int


def caller_origin(request: Request) -> str | None:
    """First proxy hop, then the real-IP header, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post("/discovery")
async def start_discovery(
    payload: DiscoveryRequestBody,
    request: Request,
    service: DiscoveryService = Depends(get_discovery_service),
) -> StreamingResponse:
    """Stream discovery events as server-sent events."""
    origin = caller_origin(request)
    logger.info("discovery.api_start", extra={"query": payload.query, "total": payload.total})

    async def _stream() -> AsyncIterator[str]:
        events = service.discover(
            payload.query,
            payload.total,
            caller_network_origin=origin,
            is_disconnected=request.is_disconnected,
        )
        async with contextlib.aclosing(events) as stream:
            async for event in stream:
                yield to_sse(event)

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/email-patterns", response_model=EmailPatternsResponse)
async def find_email_patterns(
    payload: EmailPatternsRequest,
    service: DiscoveryService = Depends(get_discovery_service),
) -> EmailPatternsResponse:
    try:
        lookup = await service.find_email_patterns(payload.company_ids)
    except DiscoveryError as exc:
        logger.error("discovery.api_error", extra={"route": "email-patterns", "code": exc.code})
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc
    return EmailPatternsResponse(
        patterns=lookup.patterns,
        existing_count=lookup.existing_count,
        new_count=lookup.new_count,
    )


@router.post("/people-at-company", response_model=PeopleAtCompanyResponse)
async def find_people_at_company(
    payload: PeopleAtCompanyRequest,
    service: DiscoveryService = Depends(get_discovery_service),
) -> PeopleAtCompanyResponse:
    try:
        lookup = await service.find_people(
            payload.company_id,
            amount=payload.amount,
            already_found=payload.already_found_contacts,
        )
    except DiscoveryError as exc:
        logger.error(
            "discovery.api_error",
            extra={"route": "people-at-company", "company_id": payload.company_id, "code": exc.code},
        )
        raise HTTPException(status_code=_map_error_code(exc.code), detail=str(exc)) from exc
    return PeopleAtCompanyResponse(
        company_id=payload.company_id,
        company_name=lookup.company.name,
        contacts=[*lookup.existing, *lookup.found],
        existing_count=len(lookup.existing),
        new_count=len(lookup.found),
    )


def _map_error_code(code: str) -> int:
    if code == "404_COMPANY_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if code.startswith("E_SUPABASE"):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
