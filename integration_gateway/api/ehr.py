"""EHR Integration API endpoints.

Thin REST adapter over EHRIntegrationService:
- Partner authentication and OAuth callback
- Patient, observation and appointment proxying
- Patient record sync
- Integration status, statistics and connectivity checks
- Signed partner webhooks
- HL7 v2 message decoding

Integration errors are mapped onto HTTP statuses by ``integration_error_handler``.
"""

import time
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from integration_gateway.core.api_envelope import ErrorCodes, error_response, success_response
from integration_gateway.core.config import settings
from integration_gateway.core.logging import get_logger
from integration_gateway.core.request_id import get_request_id
from integration_gateway.integrations.ehr import (
    AuthenticationFailed,
    AuthorizationRequired,
    ClinicalResource,
    ConfigurationError,
    EHRIntegrationService,
    IntegrationError,
    InvalidSignature,
    MalformedMessage,
    RateLimited,
    ResourceNotFound,
    TransientNetworkError,
    UpstreamError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/ehr", tags=["ehr-integrations"])


# ==============================================================================
# Error mapping
# ==============================================================================

# Most specific first
ERROR_STATUS = [
    (ConfigurationError, status.HTTP_400_BAD_REQUEST, ErrorCodes.CONFIGURATION_ERROR),
    (AuthorizationRequired, status.HTTP_401_UNAUTHORIZED, ErrorCodes.AUTHORIZATION_REQUIRED),
    (AuthenticationFailed, status.HTTP_401_UNAUTHORIZED, ErrorCodes.AUTHENTICATION_FAILED),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS, ErrorCodes.RATE_LIMITED),
    (InvalidSignature, status.HTTP_401_UNAUTHORIZED, ErrorCodes.INVALID_SIGNATURE),
    (MalformedMessage, status.HTTP_400_BAD_REQUEST, ErrorCodes.MALFORMED_MESSAGE),
    (ResourceNotFound, status.HTTP_404_NOT_FOUND, ErrorCodes.NOT_FOUND),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY, ErrorCodes.UPSTREAM_ERROR),
    (TransientNetworkError, status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCodes.UPSTREAM_UNAVAILABLE),
]


def status_for(error: IntegrationError) -> Tuple[int, str]:
    """Return (http_status, error_code) for an integration error."""
    for error_cls, http_status, code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return http_status, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "INTEGRATION_ERROR"


async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    http_status, code = status_for(exc)
    details: Dict[str, Any] = {"partner": exc.partner}
    headers: Dict[str, str] = {}

    if isinstance(exc, AuthorizationRequired):
        details.update(authorization_url=exc.authorization_url, state=exc.state)
    if isinstance(exc, RateLimited):
        details.update(limit=exc.limit, reset_at=exc.reset_at)
        headers["Retry-After"] = str(max(1, int(exc.reset_at - time.time())))
    if exc.status_code and http_status >= 500:
        details["upstream_status"] = exc.status_code

    logger.warning(
        "ehr_api_error",
        partner=exc.partner,
        error_type=type(exc).__name__,
        http_status=http_status,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=http_status,
        content=error_response(code, exc.message, details=details, request_id=get_request_id(request)),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntegrationError, integration_error_handler)


# ==============================================================================
# Dependencies and models
# ==============================================================================


def get_integration_service(request: Request) -> EHRIntegrationService:
    return request.app.state.ehr_service


class AuthenticateRequest(BaseModel):
    """Start or complete partner authentication."""

    code: Optional[str] = None
    config: Optional[Dict[str, Any]] = Field(default=None, description="Administrative config overrides")


class ConfigUpdateRequest(BaseModel):
    changes: Dict[str, Any]


def _resources(resources: List[ClinicalResource]) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in resources]


# ==============================================================================
# Authentication
# ==============================================================================


@router.post("/auth/{partner}")
async def authenticate(
    partner: str,
    body: AuthenticateRequest,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    """Authenticate with a partner.

    Interactive partners without a code answer with the authorization URL the
    user must be redirected to.
    """
    try:
        token_status = await service.authenticate(partner, code=body.code, overrides=body.config)
    except AuthorizationRequired as e:
        return success_response(
            {"authorization_required": True, "authorization_url": e.authorization_url, "state": e.state},
            request_id=get_request_id(request),
            partner=partner,
        )
    return success_response(token_status, request_id=get_request_id(request), partner=partner)


@router.get("/callback/{partner}")
async def oauth_callback(
    partner: str,
    request: Request,
    code: str = Query(...),
    state: str = Query(...),
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    token_status = await service.handle_callback(partner, code, state)
    return success_response(token_status, request_id=get_request_id(request), partner=partner)


@router.delete("/auth/{partner}")
async def revoke(
    partner: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    await service.revoke(partner)
    return success_response({"revoked": True}, request_id=get_request_id(request), partner=partner)


# ==============================================================================
# Status
# ==============================================================================


@router.get("/status")
async def integration_status(
    request: Request,
    probe: bool = False,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    statuses = await service.get_integration_status(probe=probe)
    return success_response(statuses, request_id=get_request_id(request), count=len(statuses))


@router.get("/stats/{partner}")
async def integration_stats(
    partner: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    return success_response(service.get_integration_stats(partner), request_id=get_request_id(request), partner=partner)


@router.get("/connectivity/{partner}")
async def connectivity(
    partner: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    result = await service.check_connectivity(partner)
    return success_response(result, request_id=get_request_id(request), partner=partner)


@router.patch("/config/{partner}")
async def update_config(
    partner: str,
    body: ConfigUpdateRequest,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    config = await service.update_provider_config(partner, body.changes)
    return success_response(config, request_id=get_request_id(request), partner=partner)


# ==============================================================================
# Clinical resources
# ==============================================================================


@router.get("/{partner}/patients")
async def search_patients(
    partner: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    """Search patients; query parameters are passed to the partner unchanged."""
    patients = await service.search_patients(partner, dict(request.query_params))
    return success_response(_resources(patients), request_id=get_request_id(request), partner=partner, count=len(patients))


@router.get("/{partner}/patients/{patient_id}")
async def get_patient(
    partner: str,
    patient_id: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    patient = await service.get_patient(partner, patient_id)
    return success_response(patient.to_dict(), request_id=get_request_id(request), partner=partner)


@router.post("/{partner}/patients", status_code=status.HTTP_201_CREATED)
async def create_patient(
    partner: str,
    payload: Dict[str, Any],
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    patient = await service.create_patient(partner, payload)
    return success_response(patient.to_dict(), request_id=get_request_id(request), partner=partner)


@router.put("/{partner}/patients/{patient_id}")
async def update_patient(
    partner: str,
    patient_id: str,
    payload: Dict[str, Any],
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    patient = await service.update_patient(partner, patient_id, payload)
    return success_response(patient.to_dict(), request_id=get_request_id(request), partner=partner)


@router.post("/{partner}/patients/{patient_id}/sync")
async def sync_patient(
    partner: str,
    patient_id: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    record = await service.sync_patient_record(partner, patient_id)
    return success_response(record.to_dict(), request_id=get_request_id(request), partner=partner)


@router.get("/{partner}/observations")
async def get_observations(
    partner: str,
    request: Request,
    patient_id: str = Query(...),
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    observations = await service.get_observations(partner, patient_id)
    return success_response(
        _resources(observations), request_id=get_request_id(request), partner=partner, count=len(observations)
    )


@router.post("/{partner}/observations", status_code=status.HTTP_201_CREATED)
async def create_observation(
    partner: str,
    payload: Dict[str, Any],
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    observation = await service.create_observation(partner, payload)
    return success_response(observation.to_dict(), request_id=get_request_id(request), partner=partner)


@router.get("/{partner}/appointments")
async def get_appointments(
    partner: str,
    request: Request,
    patient_id: Optional[str] = None,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    appointments = await service.get_appointments(partner, patient_id)
    return success_response(
        _resources(appointments), request_id=get_request_id(request), partner=partner, count=len(appointments)
    )


@router.post("/{partner}/appointments", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    partner: str,
    payload: Dict[str, Any],
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    appointment = await service.create_appointment(partner, payload)
    return success_response(appointment.to_dict(), request_id=get_request_id(request), partner=partner)


@router.put("/{partner}/appointments/{appointment_id}")
async def update_appointment(
    partner: str,
    appointment_id: str,
    payload: Dict[str, Any],
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    appointment = await service.update_appointment(partner, appointment_id, payload)
    return success_response(appointment.to_dict(), request_id=get_request_id(request), partner=partner)


# ==============================================================================
# Inbound messages
# ==============================================================================


@router.post("/webhooks/{partner}")
async def receive_webhook(
    partner: str,
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
):
    """Receive a partner callback.

    The signature is verified over the raw body. A failed handler answers 500
    so the partner redelivers; the receipt stays unprocessed either way.
    """
    raw_body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    processed = await service.process_webhook(partner, raw_body, signature)

    if not processed:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_response(
                "WEBHOOK_HANDLER_FAILED",
                "Webhook accepted but not processed",
                details={"partner": partner},
                request_id=get_request_id(request),
            ),
        )
    return success_response({"processed": True}, request_id=get_request_id(request), partner=partner)


@router.post("/hl7/parse")
async def parse_hl7(
    request: Request,
    service: EHRIntegrationService = Depends(get_integration_service),
) -> dict:
    raw_message = (await request.body()).decode("utf-8", errors="replace")
    parsed = service.parse_message(raw_message)
    return success_response(parsed.to_dict(), request_id=get_request_id(request))
