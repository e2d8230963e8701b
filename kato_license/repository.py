# kato_license/repository.py
# Row-level access to licenses, activations and subscription events.
# Reads degrade to None/[] on store errors; writes roll back and raise PersistenceError.
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from kato_license.errors import PersistenceError
from kato_license.models import License, Activation, SubscriptionEvent
from kato_license.utils.policy import utcnow

logger = logging.getLogger("kato_license")


class LicenseRepository:
    def __init__(self, db: Session):
        self.db = db

    # --- licenses ---------------------------------------------------------

    def get_license(self, license_key: str) -> Optional[License]:
        try:
            return self.db.query(License).filter(License.license_key == license_key).first()
        except SQLAlchemyError:
            logger.exception("Error fetching license %s", license_key)
            self.db.rollback()
            return None

    def lock_license(self, license_key: str) -> Optional[License]:
        """Fetch the license row with a row lock held until commit (no-op on SQLite)."""
        try:
            return (
                self.db.query(License)
                .filter(License.license_key == license_key)
                .with_for_update()
                .first()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to load license") from e

    def upsert_license(self, license_key: str, **fields) -> License:
        """Insert-or-update by license_key."""
        try:
            lic = self.db.query(License).filter(License.license_key == license_key).first()
            if lic is None:
                lic = License(license_key=license_key, **fields)
                self.db.add(lic)
            else:
                for name, value in fields.items():
                    setattr(lic, name, value)
            self.db.commit()
        except IntegrityError:
            # concurrent delivery inserted the same key first
            self.db.rollback()
            lic = self.update_license(license_key, **fields)
            if lic is None:
                raise PersistenceError("Failed to upsert license")
            return lic
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to upsert license") from e
        self.db.refresh(lic)
        return lic

    def update_license(self, license_key: str, **fields) -> Optional[License]:
        """Update an existing license in place. Returns None if no row has this key."""
        try:
            lic = self.db.query(License).filter(License.license_key == license_key).first()
            if lic is None:
                return None
            for name, value in fields.items():
                setattr(lic, name, value)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to update license") from e
        self.db.refresh(lic)
        return lic

    # --- activations ------------------------------------------------------

    def get_activations(self, license_key: str) -> List[Activation]:
        try:
            return (
                self.db.query(Activation)
                .filter(Activation.license_key == license_key)
                .order_by(Activation.activated_at.desc(), Activation.id.desc())
                .all()
            )
        except SQLAlchemyError:
            logger.exception("Error fetching activations for %s", license_key)
            self.db.rollback()
            return []

    def create_activation(self, license_key: str, site_url: str, site_domain: str, is_local: bool) -> Optional[Activation]:
        """Insert an activation. Returns None if the (license_key, site_url) pair already exists."""
        now = utcnow()
        a = Activation(
            license_key=license_key,
            site_url=site_url,
            site_domain=site_domain,
            is_local=is_local,
            activated_at=now,
            last_checked_at=now,
        )
        try:
            self.db.add(a)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to create activation") from e
        self.db.refresh(a)
        return a

    def remove_activation(self, license_key: str, site_url: str) -> int:
        try:
            deleted = (
                self.db.query(Activation)
                .filter(Activation.license_key == license_key, Activation.site_url == site_url)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to deactivate license") from e
        return deleted

    def touch_activation(self, license_key: str, site_url: str) -> bool:
        try:
            (
                self.db.query(Activation)
                .filter(Activation.license_key == license_key, Activation.site_url == site_url)
                .update({Activation.last_checked_at: utcnow()}, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            logger.exception("Error updating activation check for %s", license_key)
            self.db.rollback()
            return False
        return True

    # --- audit log --------------------------------------------------------

    def record_event(self, license_key: str, event_type: str, event_data: str) -> SubscriptionEvent:
        ev = SubscriptionEvent(
            license_key=license_key or "",
            event_type=event_type,
            event_data=event_data,
            created_at=utcnow(),
        )
        try:
            self.db.add(ev)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to record subscription event") from e
        return ev
