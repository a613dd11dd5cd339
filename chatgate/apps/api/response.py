"""Response envelopes for the /v1 API.

Every body is either ``{"data", "meta"}`` or ``{"error", "meta"}``. Domain
errors are turned into error payloads here so handlers never assemble
codes or details by hand.
"""
from __future__ import annotations

import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from chatgate.core.errors import ChatGateError


API_VERSION = "v1"

T = TypeVar("T")

# Caller-supplied ids end up in log lines; anything else gets a fresh uuid.
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)

    @classmethod
    def for_request(cls, request: Request) -> "ResponseMeta":
        return cls(request_id=get_request_id(request))


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None

    @classmethod
    def from_error(cls, exc: ChatGateError) -> "ErrorDetail":
        # Messages on ChatGateError are caller-safe by contract.
        details = jsonable_encoder(exc.details) if exc.details else None
        return cls(code=exc.code, message=exc.message, details=details)


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id and _REQUEST_ID_PATTERN.match(header_request_id):
        request_id = header_request_id
    else:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta.for_request(request).model_dump()}


def _error_envelope(request: Request, error: ErrorDetail) -> dict[str, Any]:
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": ResponseMeta.for_request(request).model_dump(),
    }


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return _error_envelope(request, ErrorDetail(code=code, message=message, details=details))


def domain_error_response(*, request: Request, exc: ChatGateError) -> dict[str, Any]:
    return _error_envelope(request, ErrorDetail.from_error(exc))
