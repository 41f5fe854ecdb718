from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel

from ..auth import caller_identity, require_user
from ..deps import get_orchestrator
from ..models import DeprovisionRequest, OnboardRequest
from ..orchestrator import OnboardingOrchestrator
from ..rbac import ADMIN, require_roles

router = APIRouter(prefix="/onboard", tags=["onboard"])


class OnboardIn(BaseModel):
    deviceGroup: str
    topicNamespace: str


class CredentialStatusIn(BaseModel):
    deviceGroup: str
    status: str


@router.get("")
def list_devices(
    deviceGroup: str = Query(...),
    limit: int = Query(100, ge=1, le=1000),
    user=Depends(require_user),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    records = orchestrator.list_group(deviceGroup, limit=limit)
    return {"devices": [record.to_public() for record in records]}


@router.post("/{serial_number}")
def onboard_device(
    serial_number: str,
    payload: OnboardIn,
    response: Response,
    user=Depends(require_user),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.onboard(
        OnboardRequest(
            device_group=payload.deviceGroup,
            serial_number=serial_number,
            topic_namespace=payload.topicNamespace,
            caller_identity=caller_identity(user),
        )
    )
    response.status_code = status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED
    response.headers["Cache-Control"] = "no-store"
    return result.to_payload()


@router.get("/{serial_number}")
def get_device(
    serial_number: str,
    deviceGroup: str = Query(...),
    user=Depends(require_user),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.describe(deviceGroup, serial_number).to_public()


@router.put("/{serial_number}")
def update_credential_status(
    serial_number: str,
    payload: CredentialStatusIn,
    user=Depends(require_user),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    record = orchestrator.update_credential_status(payload.deviceGroup, serial_number, payload.status)
    body = record.to_public()
    body["credentialStatus"] = payload.status.strip().upper()
    return body


@router.delete("/{serial_number}")
def deprovision_device(
    serial_number: str,
    deviceGroup: str = Query(...),
    user=Depends(require_user),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    orchestrator.deprovision(DeprovisionRequest(device_group=deviceGroup, serial_number=serial_number))
    return {"deviceGroup": deviceGroup, "serialNumber": serial_number, "status": "DEPROVISIONED"}


@router.post("/{serial_number}/cleanup")
def cleanup_device(
    serial_number: str,
    deviceGroup: str = Query(...),
    user=Depends(require_roles(ADMIN)),
    orchestrator: OnboardingOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.cleanup(deviceGroup, serial_number).to_public()
