# kato_license/routes/updates.py
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from kato_license.deps import get_licensing
from kato_license.errors import ValidationError
from kato_license.services.licensing import LicensingService

router = APIRouter(prefix="/api", tags=["updates"])


@router.get("/update-check")
def update_check(version: Optional[str] = None, license_key: Optional[str] = None,
                 service: LicensingService = Depends(get_licensing)):
    try:
        return service.update_check(version, license_key)
    except ValidationError:
        return JSONResponse(status_code=400, content={"update_available": False})
