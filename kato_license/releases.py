# kato_license/releases.py
# Plugin release artifacts (S3) and the marketing-site changelog.
# Both are best-effort: failures fall back to documented defaults instead of raising.
import logging
import re
from typing import Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from kato_license.utils.policy import compare_semver

logger = logging.getLogger("kato_license")


def release_pattern(name_prefix: str):
    return re.compile(rf"^{re.escape(name_prefix)}-(\d+)\.(\d+)\.(\d+)\.zip$")


class ReleaseStore:
    def __init__(self, region: str, fallback_version: str = "0.9.0", client=None,
                 access_key_id: Optional[str] = None, secret_access_key: Optional[str] = None):
        self.region = region
        self.fallback_version = fallback_version
        self.s3 = client or boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    def list_latest_release(self, bucket: Optional[str], name_prefix: str) -> dict:
        """
        Highest ``<name_prefix>-X.Y.Z.zip`` in the bucket, compared numerically.

        Returns ``{"version": ..., "key": ...}``; falls back to the floor
        version (key None) if the bucket is unset, empty or unreadable.
        """
        fallback = {"version": self.fallback_version, "key": None}
        if not bucket:
            return fallback

        pattern = release_pattern(name_prefix)
        best = None
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=f"{name_prefix}-"):
                for obj in page.get("Contents", []):
                    m = pattern.match(obj["Key"])
                    if not m:
                        continue
                    version = tuple(int(part) for part in m.groups())
                    if best is None or version > best[0]:
                        best = (version, obj["Key"])
        except (BotoCoreError, ClientError):
            logger.exception("Failed to list releases in %s", bucket)
            return fallback

        if best is None:
            return fallback
        return {"version": ".".join(str(part) for part in best[0]), "key": best[1]}

    def issue_time_limited_download_url(self, bucket: str, object_key: str, ttl_seconds: int = 900) -> str:
        try:
            return self.s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": object_key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError):
            logger.exception("Failed to sign download URL for %s", object_key)
            return f"https://{bucket}.s3.{self.region}.amazonaws.com/{object_key}"

    def upload_release(self, bucket: str, name_prefix: str, path: str, version: str, changelog: str = "") -> list:
        """Upload ``<prefix>-<version>.zip`` plus the ``<prefix>-latest.zip`` pointer."""
        metadata = {"version": version, "changelog": changelog}
        keys = [f"{name_prefix}-{version}.zip", f"{name_prefix}-latest.zip"]
        with open(path, "rb") as fh:
            body = fh.read()
        for key in keys:
            self.s3.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType="application/zip",
                Metadata=metadata,
            )
            logger.info("Uploaded %s", key)
        return keys


class ChangelogClient:
    """Reads release notes from the marketing site."""

    def __init__(self, url: str, timeout: float = 3, session=None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    @staticmethod
    def fallback(latest_version: str) -> str:
        return f"Version {latest_version} is available with bug fixes and improvements."

    def fetch(self, current_version: str, latest_version: str) -> str:
        try:
            r = self.http.get(
                self.url,
                params={"from": current_version, "to": latest_version},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            if r.status_code != 200:
                raise ValueError(f"changelog returned {r.status_code}")
            text = self._extract(r.json(), current_version, latest_version)
        except (requests.RequestException, ValueError):
            logger.warning("Changelog unavailable, using fallback for %s", latest_version, exc_info=True)
            return self.fallback(latest_version)
        return text or self.fallback(latest_version)

    @staticmethod
    def _extract(document, current_version: str, latest_version: str) -> str:
        if isinstance(document, dict) and isinstance(document.get("changelog"), str):
            return document["changelog"].strip()

        # {"entries": [{"version": "0.9.2", "notes": "..."}]}
        entries = document.get("entries") if isinstance(document, dict) else document
        if not isinstance(entries, list):
            return ""
        lines = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("version"):
                continue
            version = str(entry["version"])
            if compare_semver(version, current_version) > 0 and compare_semver(version, latest_version) <= 0:
                lines.append(f"{version}: {str(entry.get('notes') or '').strip()}")
        return "\n".join(lines)
