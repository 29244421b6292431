# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application exposing the health certificate verifier.

**HTTP Endpoints**

* ``POST /decode``: Decode a scanned certificate and report its type
  and record identifiers.
* ``POST /verify``: Run the full pipeline (decode, signature check with
  exemption fallback, national rules) against the supplied validation
  clock (default: now) and return the verdict.
* ``POST /refresh``: Trigger a trust list / rule set / value set
  refresh.
* ``GET /healthz``: Liveness plus session state and the policy
  fingerprint.

**Session**

On startup the verification session is built once from configuration:
``HCERT_COLLABORATORS`` names a ``module:factory`` callable that is
invoked as ``factory(environment, api_key)`` and returns a mapping with
``decoder``, ``trust_engine`` and ``rule_engine`` (and optionally
``distribution``; the HTTP distribution service is used otherwise).
Without it the service starts, but verification endpoints answer 503.

**Logging**

Structured JSON logging is configured at startup using ``LOG_LEVEL``
(``LOG_FORMAT=text`` switches to plain lines for local development).
"""

from __future__ import annotations

import importlib
import json
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from covidcert.config import (
    API_KEY,
    COLLABORATORS,
    DEFAULT_COUNTRY_CODE,
    ENVIRONMENT,
    HTTP_HOST,
    HTTP_PORT,
    LOG_FORMAT,
    LOG_LEVEL,
    config_fingerprint,
)
from covidcert.hcert.api_models import (
    DecodeRequest,
    DecodeResponse,
    ErrorCode,
    RefreshRequest,
    RefreshResponse,
    VerifyRequest,
    VerifyResponse,
    error_from_exception,
    make_error,
    verify_response_from_report,
)
from covidcert.hcert.classifier import certificate_identifiers
from covidcert.hcert.distribution import HttpDistributionService
from covidcert.hcert.environment import SDKEnvironment
from covidcert.hcert.exceptions import DecodeError
from covidcert.hcert.session import (
    FRAMEWORK_VERSION,
    CertificateSession,
    get_session,
    initialize,
    is_initialized,
    shutdown,
)
from covidcert.hcert.verify import decode, verify


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """One JSON object per log line (timestamp, level, logger, message).

    Verification context passed via ``extra=`` (see ``CONTEXT_FIELDS``)
    becomes top-level fields.  Exceptions are serialized into an
    ``exception`` field.
    """

    CONTEXT_FIELDS = ("request_id", "credential_type", "state", "is_valid")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install a single stdout handler on the root logger."""
    root = logging.getLogger()

    # Remove existing handlers to avoid duplicates under uvicorn.
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT.lower() == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("hcert.main")


# ======================================================================
# Session bootstrap
# ======================================================================


def build_session_from_config() -> CertificateSession:
    """Initialize the session from ``HCERT_COLLABORATORS``.

    Raises
    ------
    ValueError
        If the factory path is malformed or the factory omits a
        required collaborator.
    """
    module_name, _, attr = COLLABORATORS.partition(":")
    if not module_name or not attr:
        raise ValueError(f"HCERT_COLLABORATORS must be 'module:factory', got {COLLABORATORS!r}")

    factory = getattr(importlib.import_module(module_name), attr)
    environment = SDKEnvironment.parse(ENVIRONMENT)
    bindings = dict(factory(environment, API_KEY))

    missing = [name for name in ("decoder", "trust_engine", "rule_engine") if name not in bindings]
    if missing:
        raise ValueError(f"Collaborator factory did not provide: {', '.join(missing)}")

    distribution = bindings.get("distribution") or HttpDistributionService(environment, API_KEY)
    return initialize(
        environment,
        API_KEY,
        decoder=bindings["decoder"],
        trust_engine=bindings["trust_engine"],
        rule_engine=bindings["rule_engine"],
        distribution=distribution,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and build the session; tear it down on exit."""
    _configure_logging()
    logger.info(
        "Health certificate verifier starting: HTTP=%s:%d, environment=%s, log_level=%s",
        HTTP_HOST, HTTP_PORT, ENVIRONMENT, LOG_LEVEL,
    )

    owns_session = False
    if COLLABORATORS and not is_initialized():
        build_session_from_config()
        owns_session = True
    elif not is_initialized():
        logger.warning("HCERT_COLLABORATORS not set; verification endpoints unavailable")

    yield

    if owns_session:
        await shutdown()
    logger.info("Health certificate verifier shutdown complete")


# ======================================================================
# FastAPI application
# ======================================================================

app = FastAPI(
    title="Health Certificate Verifier",
    description=(
        "Verifies vaccination, test, recovery and exemption certificates "
        "against issuer trust and national eligibility rules."
    ),
    version=FRAMEWORK_VERSION,
    lifespan=lifespan,
)


def _session_unavailable() -> JSONResponse:
    error = make_error(ErrorCode.SESSION_NOT_READY, "Verification session not initialized")
    return JSONResponse(status_code=503, content={"errors": [error.model_dump()]})


@app.post("/decode", response_model=DecodeResponse, tags=["verification"])
async def decode_endpoint(request: DecodeRequest):
    if not is_initialized():
        return _session_unavailable()
    session = get_session()

    try:
        credential = decode(session, request.encoded_data)
    except DecodeError as exc:
        return JSONResponse(
            status_code=422,
            content={"errors": [error_from_exception(ErrorCode.DECODE_FAILED, exc).model_dump()]},
        )

    return DecodeResponse(
        credential_type=credential.type.value,
        certificate_identifiers=certificate_identifiers(credential),
        issued_at=credential.issued_at,
        expires_at=credential.expires_at,
    )


@app.post("/verify", response_model=VerifyResponse, tags=["verification"])
async def verify_endpoint(request: VerifyRequest):
    if not is_initialized():
        return _session_unavailable()
    session = get_session()
    request_id = str(uuid.uuid4())
    logger.info("POST /verify received: request_id=%s", request_id, extra={"request_id": request_id})

    validation_clock = request.validation_clock or datetime.now(timezone.utc)
    try:
        report = await verify(
            session,
            request.encoded_data,
            validation_clock,
            country_code=request.country_code or DEFAULT_COUNTRY_CODE,
            region=request.region,
            record_index=request.record_index,
        )
    except Exception:
        logger.exception("Unhandled exception in verification pipeline", extra={"request_id": request_id})
        return VerifyResponse(
            request_id=request_id,
            state="ERROR",
            errors=[make_error(ErrorCode.INTERNAL_ERROR, "Unexpected server error during verification")],
        )

    response = verify_response_from_report(request_id, report)
    logger.info(
        "POST /verify complete: request_id=%s state=%s valid=%s",
        request_id, response.state, response.is_valid,
        extra={
            "request_id": request_id,
            "credential_type": response.credential_type,
            "state": response.state,
            "is_valid": response.is_valid,
        },
    )
    return response


@app.post("/refresh", response_model=RefreshResponse, tags=["trust"])
async def refresh_endpoint(request: RefreshRequest):
    if not is_initialized():
        return _session_unavailable()

    result = await get_session().refresh_trust_material(force=request.force)
    errors = None
    if result.failed:
        errors = [make_error(ErrorCode.TRUST_REFRESH_FAILED, "Trust material refresh failed", result.error)]
    return RefreshResponse(was_updated=result.was_updated, errors=errors)


@app.get("/healthz", tags=["health"])
async def healthz() -> JSONResponse:
    session_state: Dict[str, Any] = {"initialized": is_initialized()}
    if is_initialized():
        session_state["environment"] = get_session().environment.value

    return JSONResponse(
        content={
            "status": "ok",
            "version": FRAMEWORK_VERSION,
            "session": session_state,
            "policy_fingerprint": config_fingerprint(),
        },
        status_code=200,
    )


def main() -> None:
    """Run the verifier with uvicorn (``python -m covidcert.main``)."""
    import uvicorn

    _configure_logging()
    uvicorn.run(
        "covidcert.main:app",
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
