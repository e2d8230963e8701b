# kato_license/services/licensing.py
# Activate / validate / deactivate / update-check on top of the repository and policy layer.
import logging
from typing import Optional

from kato_license.commerce import LemonSqueezyClient
from kato_license.config import Settings
from kato_license.errors import NotFoundError, UpstreamError, ValidationError
from kato_license.releases import ChangelogClient, ReleaseStore
from kato_license.repository import LicenseRepository
from kato_license.utils.policy import (
    UNLIMITED,
    TIER_UPGRADES,
    compare_semver,
    extract_domain,
    grace_period_days_remaining,
    is_local_environment,
    is_usable,
    license_status,
    tier_limit,
    tier_limit_message,
)

logger = logging.getLogger("kato_license")


def require_fields(**fields) -> None:
    missing = [name for name, value in fields.items() if not value or not str(value).strip()]
    if missing:
        raise ValidationError(f"{' and '.join(missing)} required")


class LicensingService:
    def __init__(self, repo: LicenseRepository, settings: Settings,
                 releases: Optional[ReleaseStore] = None, changelog: Optional[ChangelogClient] = None,
                 commerce: Optional[LemonSqueezyClient] = None):
        self.repo = repo
        self.settings = settings
        self.releases = releases
        self.changelog = changelog
        self.commerce = commerce

    def activate(self, license_key: str, site_url: str) -> dict:
        require_fields(license_key=license_key, site_url=site_url)

        lic = self.repo.lock_license(license_key)
        if not lic:
            raise NotFoundError("License not found")

        if license_status(lic) == "invalid":
            raise ValidationError("License is invalid or cancelled")

        activations = self.repo.get_activations(license_key)
        if any(a.site_url == site_url for a in activations):
            return {
                "success": True,
                "message": "Site already activated",
                "license": lic.to_dict(),
                "activations": [a.to_dict() for a in activations],
            }

        is_local = is_local_environment(site_url)
        if not is_local:
            limit = tier_limit(lic.tier)
            remote = [a for a in activations if not a.is_local]
            if limit != UNLIMITED and len(remote) >= limit:
                logger.info("Tier limit reached for %s (%s/%s)", license_key, len(remote), limit)
                raise ValidationError(
                    tier_limit_message(lic.tier, len(remote), limit),
                    extra={
                        "tier_limit_reached": True,
                        "current_tier": lic.tier,
                        "current_activations": len(remote),
                        "tier_limit": limit,
                        "upgrade_available": lic.tier in TIER_UPGRADES,
                    },
                )

        created = self.repo.create_activation(license_key, site_url, extract_domain(site_url), is_local)
        message = "License activated successfully" if created else "Site already activated"
        logger.info("Activation %s for %s on %s", "created" if created else "exists", license_key, site_url)

        return {
            "success": True,
            "message": message,
            "license": lic.to_dict(),
            "activations": [a.to_dict() for a in self.repo.get_activations(license_key)],
        }

    def validate(self, license_key: str, site_url: str) -> dict:
        require_fields(license_key=license_key, site_url=site_url)

        lic = self.repo.get_license(license_key)
        if not lic:
            return {"valid": False, "status": "invalid"}

        self.repo.touch_activation(license_key, site_url)

        status = license_status(lic)
        out = {"valid": is_usable(status), "status": status, "license": lic.to_dict()}
        if status == "grace_period":
            out["grace_days_remaining"] = grace_period_days_remaining(lic.expires_at)
        return out

    def deactivate(self, license_key: str, site_url: str) -> dict:
        """Removing a site that was never activated is a no-op success."""
        require_fields(license_key=license_key, site_url=site_url)

        if not self.repo.get_license(license_key):
            raise NotFoundError("License not found")

        removed = self.repo.remove_activation(license_key, site_url)
        logger.info("Deactivated %s on %s (%d rows)", license_key, site_url, removed)
        return {"success": True, "message": "License deactivated successfully"}

    def details(self, license_key: str) -> dict:
        require_fields(license_key=license_key)
        lic = self.repo.get_license(license_key)
        if not lic:
            raise NotFoundError("License not found")
        return {
            "license": lic.to_dict(),
            "activations": [a.to_dict() for a in self.repo.get_activations(license_key)],
        }

    def update_check(self, current_version: str, license_key: Optional[str] = None) -> dict:
        require_fields(version=current_version)

        bucket = self.settings.AWS_S3_BUCKET
        prefix = self.settings.RELEASE_PREFIX
        latest = self.releases.list_latest_release(bucket, prefix)
        latest_version = latest["version"]

        if compare_semver(current_version, latest_version) >= 0:
            return {"update_available": False}

        out = {
            "update_available": True,
            "latest_version": latest_version,
            "changelog": self.changelog.fetch(current_version, latest_version),
            "changelog_url": self.settings.CHANGELOG_URL,
        }

        lic = self.repo.get_license(license_key) if license_key else None
        if lic is not None and is_usable(license_status(lic)) and bucket:
            object_key = latest["key"] or f"{prefix}-latest.zip"
            out["download_url"] = self.releases.issue_time_limited_download_url(
                bucket, object_key, self.settings.DOWNLOAD_URL_TTL
            )
        else:
            out["upgrade_url"] = self.settings.PRICING_URL
        return out

    def customer_portal(self, license_key: str) -> dict:
        require_fields(license_key=license_key)
        lic = self.repo.get_license(license_key)
        if not lic:
            raise NotFoundError("License not found")

        fallback = {"has_portal": False, "fallback_url": self.settings.PRICING_URL}
        if not lic.subscription_id:
            return dict(fallback, message="This license is not associated with a subscription")

        try:
            sub = self.commerce.fetch_subscription(lic.subscription_id, self.settings.api_key_for("live"))
        except UpstreamError:
            logger.exception("Failed to fetch subscription %s", lic.subscription_id)
            return dict(fallback, message="Unable to fetch subscription details")

        if not sub.portal_url:
            return dict(fallback, message="Customer portal URL not available")

        return {
            "has_portal": True,
            "portal_url": sub.portal_url,
            "subscription": {"status": sub.status, "renews_at": sub.renews_at, "ends_at": sub.ends_at},
        }
