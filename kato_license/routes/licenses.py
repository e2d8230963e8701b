# kato_license/routes/licenses.py
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from kato_license.deps import get_licensing
from kato_license.errors import ValidationError
from kato_license.services.licensing import LicensingService

router = APIRouter(prefix="/api", tags=["license"])


class SiteRequest(BaseModel):
    license_key: Optional[str] = None
    site_url: Optional[str] = None


class PortalRequest(BaseModel):
    license_key: Optional[str] = None


@router.post("/activate")
def activate_license(payload: SiteRequest, service: LicensingService = Depends(get_licensing)):
    """
    Expected JSON body:
    {
      "license_key": "...",
      "site_url": "https://example.com"
    }
    """
    return service.activate(payload.license_key, payload.site_url)


@router.post("/validate")
def validate_license(payload: SiteRequest, service: LicensingService = Depends(get_licensing)):
    try:
        return service.validate(payload.license_key, payload.site_url)
    except ValidationError:
        return JSONResponse(status_code=400, content={"valid": False, "status": "invalid"})


@router.post("/deactivate")
def deactivate_license(payload: SiteRequest, service: LicensingService = Depends(get_licensing)):
    return service.deactivate(payload.license_key, payload.site_url)


@router.get("/license/{key}")
def license_details(key: str, service: LicensingService = Depends(get_licensing)):
    return service.details(key)


@router.post("/customer-portal")
def customer_portal(payload: PortalRequest, service: LicensingService = Depends(get_licensing)):
    return service.customer_portal(payload.license_key)
