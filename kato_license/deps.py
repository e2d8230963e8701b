# kato_license/deps.py
# FastAPI dependencies: per-request repository/service built from app.state collaborators.
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from kato_license.database import get_db
from kato_license.repository import LicenseRepository
from kato_license.services.licensing import LicensingService


def get_repository(db: Session = Depends(get_db)) -> LicenseRepository:
    return LicenseRepository(db)


def get_licensing(request: Request, repo: LicenseRepository = Depends(get_repository)) -> LicensingService:
    state = request.app.state
    return LicensingService(
        repo,
        state.settings,
        releases=state.releases,
        changelog=state.changelog,
        commerce=state.commerce,
    )


def get_webhook_processor(request: Request):
    return request.app.state.webhooks
