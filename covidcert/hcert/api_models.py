# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""HTTP API models for the health certificate verifier."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from covidcert.hcert.exceptions import CovidCertError
from covidcert.hcert.verify import VerificationReport


# =============================================================================
# Error Models
# =============================================================================

class ErrorCode(str, Enum):
    DECODE_FAILED = "DECODE_FAILED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    RULES_FAILED = "RULES_FAILED"
    TRUST_REFRESH_FAILED = "TRUST_REFRESH_FAILED"
    SESSION_NOT_READY = "SESSION_NOT_READY"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_RECOVERABILITY: Dict[str, bool] = {
    ErrorCode.TRUST_REFRESH_FAILED: True,
    ErrorCode.SESSION_NOT_READY: True,
    ErrorCode.INTERNAL_ERROR: True,
}


class ErrorDetail(BaseModel):
    code: str
    message: str
    recoverable: bool
    detail_code: Optional[str] = None


def make_error(code: str, message: str, detail_code: Optional[str] = None) -> ErrorDetail:
    """Create an ErrorDetail with auto-determined recoverability."""
    return ErrorDetail(
        code=code,
        message=message,
        recoverable=ERROR_RECOVERABILITY.get(code, False),
        detail_code=detail_code,
    )


_STATE_ERROR_CODES: Dict[str, ErrorCode] = {
    "DECODE_ERROR": ErrorCode.DECODE_FAILED,
    "SIGNATURE_ERROR": ErrorCode.SIGNATURE_INVALID,
    "RULE_ERROR": ErrorCode.RULES_FAILED,
}


# =============================================================================
# Requests
# =============================================================================

class DecodeRequest(BaseModel):
    encoded_data: str


class VerifyRequest(BaseModel):
    encoded_data: str
    validation_clock: Optional[datetime] = None
    country_code: Optional[str] = None
    region: Optional[str] = None
    record_index: int = Field(default=0, ge=0)


class RefreshRequest(BaseModel):
    force: bool = False


# =============================================================================
# Responses
# =============================================================================

class WindowModel(BaseModel):
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None


class DecodeResponse(BaseModel):
    credential_type: str
    certificate_identifiers: List[str] = Field(default_factory=list)
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    errors: Optional[List[ErrorDetail]] = None


class VerifyResponse(BaseModel):
    request_id: str
    state: str
    is_valid: bool = False
    credential_type: Optional[str] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    local_window: Optional[WindowModel] = None
    failed_rules: List[str] = Field(default_factory=list)
    errors: Optional[List[ErrorDetail]] = None


class RefreshResponse(BaseModel):
    was_updated: bool
    errors: Optional[List[ErrorDetail]] = None


def error_from_exception(code: str, exc: CovidCertError) -> ErrorDetail:
    return make_error(code, exc.message, detail_code=exc.code)


def verify_response_from_report(request_id: str, report: VerificationReport) -> VerifyResponse:
    """Flatten a pipeline report into the wire response."""
    errors: Optional[List[ErrorDetail]] = None
    if report.error is not None:
        code = _STATE_ERROR_CODES.get(report.state.value, ErrorCode.INTERNAL_ERROR)
        errors = [error_from_exception(code, report.error)]

    window = None
    if report.local_window is not None:
        window = WindowModel(
            valid_from=report.local_window.valid_from,
            valid_until=report.local_window.valid_until,
        )

    verdict = report.verdict
    return VerifyResponse(
        request_id=request_id,
        state=report.state.value,
        is_valid=report.is_valid,
        credential_type=report.credential.type.value if report.credential is not None else None,
        valid_from=verdict.valid_from if verdict else None,
        valid_until=verdict.valid_until if verdict else None,
        local_window=window,
        failed_rules=[rule.rule_id for rule in report.failed_rules],
        errors=errors,
    )
