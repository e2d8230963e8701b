"""Update check endpoint plus the S3 release store and changelog client behind it."""
from datetime import timedelta
from unittest.mock import Mock

import requests
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from conftest import make_license, utcnow
from kato_license.main import create_app
from kato_license.releases import ChangelogClient, ReleaseStore


class TestUpdateCheckEndpoint:
    def test_update_available_for_anonymous_client(self, client, changelog):
        r = client.get("/api/update-check", params={"version": "0.9.0"})
        assert r.status_code == 200
        body = r.json()
        assert body["update_available"] is True
        assert body["latest_version"] == "0.9.2"
        assert body["upgrade_url"] == "https://katosync.com/pricing"
        assert body["changelog_url"] == "https://katosync.com/changelog"
        assert "download_url" not in body
        assert body["changelog"]
        assert changelog.requests == [("0.9.0", "0.9.2")]

    def test_valid_license_gets_signed_download(self, client, db, releases):
        make_license(db)
        body = client.get("/api/update-check", params={"version": "0.9.0", "license_key": "LIC-123"}).json()
        assert body["download_url"].startswith("https://signed.example/kato-releases/kato-sync-0.9.2.zip")
        assert "upgrade_url" not in body
        assert releases.signed == [("kato-releases", "kato-sync-0.9.2.zip", 900)]

    def test_grace_period_license_gets_download(self, client, db):
        make_license(db, expires_at=utcnow() - timedelta(days=1))
        body = client.get("/api/update-check", params={"version": "0.9.0", "license_key": "LIC-123"}).json()
        assert "download_url" in body

    def test_expired_license_gets_upgrade_url(self, client, db):
        make_license(db, expires_at=utcnow() - timedelta(days=30))
        body = client.get("/api/update-check", params={"version": "0.9.0", "license_key": "LIC-123"}).json()
        assert "download_url" not in body
        assert body["upgrade_url"] == "https://katosync.com/pricing"

    def test_up_to_date(self, client):
        r = client.get("/api/update-check", params={"version": "0.9.2"})
        assert r.json() == {"update_available": False}

    def test_newer_than_published(self, client):
        assert client.get("/api/update-check", params={"version": "0.10.0"}).json() == {"update_available": False}

    def test_numeric_comparison(self, client, releases):
        releases.version = "1.10.0"
        body = client.get("/api/update-check", params={"version": "1.9.9"}).json()
        assert body["update_available"] is True

    def test_missing_version(self, client):
        r = client.get("/api/update-check")
        assert r.status_code == 400
        assert r.json() == {"update_available": False}

    def test_post_not_allowed(self, client):
        assert client.post("/api/update-check").status_code == 405


def s3_listing(*keys):
    s3 = Mock()
    s3.get_paginator.return_value.paginate.return_value = [
        {"Contents": [{"Key": k} for k in keys]},
    ]
    return s3


class TestReleaseStore:
    def test_picks_numeric_maximum(self):
        store = ReleaseStore("eu-north-1", client=s3_listing(
            "kato-sync-0.9.2.zip",
            "kato-sync-0.10.0.zip",
            "kato-sync-latest.zip",
            "kato-sync-1.0.0-beta.zip",
            "kato-sync-0.9.10.zip",
        ))
        assert store.list_latest_release("bucket", "kato-sync") == {
            "version": "0.10.0",
            "key": "kato-sync-0.10.0.zip",
        }

    def test_empty_listing_falls_back(self):
        store = ReleaseStore("eu-north-1", fallback_version="0.9.0", client=s3_listing())
        assert store.list_latest_release("bucket", "kato-sync")["version"] == "0.9.0"

    def test_listing_error_falls_back(self):
        s3 = Mock()
        s3.get_paginator.return_value.paginate.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "ListObjectsV2"
        )
        store = ReleaseStore("eu-north-1", fallback_version="0.9.0", client=s3)
        assert store.list_latest_release("bucket", "kato-sync") == {"version": "0.9.0", "key": None}

    def test_no_bucket_falls_back(self):
        store = ReleaseStore("eu-north-1", client=Mock())
        assert store.list_latest_release(None, "kato-sync")["key"] is None

    def test_presigned_url(self):
        s3 = Mock()
        s3.generate_presigned_url.return_value = "https://signed"
        store = ReleaseStore("eu-north-1", client=s3)
        assert store.issue_time_limited_download_url("bucket", "kato-sync-0.9.2.zip", 600) == "https://signed"
        s3.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "bucket", "Key": "kato-sync-0.9.2.zip"},
            ExpiresIn=600,
        )

    def test_presign_failure_returns_direct_url(self):
        s3 = Mock()
        s3.generate_presigned_url.side_effect = ClientError({"Error": {"Code": "Boom"}}, "GetObject")
        store = ReleaseStore("eu-north-1", client=s3)
        url = store.issue_time_limited_download_url("bucket", "kato-sync-0.9.2.zip")
        assert url == "https://bucket.s3.eu-north-1.amazonaws.com/kato-sync-0.9.2.zip"

    def test_upload_release(self, tmp_path):
        zip_path = tmp_path / "kato-sync.zip"
        zip_path.write_bytes(b"PK\x03\x04")
        s3 = Mock()
        keys = ReleaseStore("eu-north-1", client=s3).upload_release("bucket", "kato-sync", str(zip_path), "0.9.3", "Fixes")
        assert keys == ["kato-sync-0.9.3.zip", "kato-sync-latest.zip"]
        assert s3.put_object.call_count == 2
        assert s3.put_object.call_args.kwargs["Metadata"] == {"version": "0.9.3", "changelog": "Fixes"}


def http_response(status=200, payload=None):
    r = Mock()
    r.status_code = status
    r.json.return_value = payload
    return r


class TestChangelogClient:
    def test_plain_changelog(self):
        http = Mock()
        http.get.return_value = http_response(payload={"changelog": " Faster sync. "})
        client = ChangelogClient("https://katosync.com/changelog", session=http)
        assert client.fetch("0.9.0", "0.9.2") == "Faster sync."
        assert http.get.call_args.kwargs["timeout"] == 3

    def test_entries_filtered_to_range(self):
        http = Mock()
        http.get.return_value = http_response(payload={"entries": [
            {"version": "0.9.0", "notes": "old"},
            {"version": "0.9.1", "notes": "fix A"},
            {"version": "0.9.2", "notes": "fix B"},
            {"version": "1.0.0", "notes": "future"},
        ]})
        text = ChangelogClient("u", session=http).fetch("0.9.0", "0.9.2")
        assert text == "0.9.1: fix A\n0.9.2: fix B"

    def test_timeout_falls_back(self):
        http = Mock()
        http.get.side_effect = requests.Timeout("slow")
        text = ChangelogClient("u", session=http).fetch("0.9.0", "0.9.2")
        assert text == "Version 0.9.2 is available with bug fixes and improvements."

    def test_http_error_falls_back(self):
        http = Mock()
        http.get.return_value = http_response(status=503)
        assert "0.9.2" in ChangelogClient("u", session=http).fetch("0.9.0", "0.9.2")

    def test_invalid_json_falls_back(self):
        http = Mock()
        http.get.return_value = http_response()
        http.get.return_value.json.side_effect = ValueError("no json")
        assert ChangelogClient("u", session=http).fetch("0.9.0", "0.9.2").startswith("Version 0.9.2")

    def test_malformed_entries_fall_back(self):
        for payload in ({"entries": 5}, {"entries": "0.9.2"}, 7):
            http = Mock()
            http.get.return_value = http_response(payload=payload)
            text = ChangelogClient("u", session=http).fetch("0.9.0", "0.9.2")
            assert text == "Version 0.9.2 is available with bug fixes and improvements."

    def test_malformed_changelog_does_not_fail_update_check(self, settings, session_factory, releases):
        http = Mock()
        http.get.return_value = http_response(payload={"entries": 5})
        app = create_app(settings, session_factory=session_factory, commerce=Mock(),
                         releases=releases, changelog=ChangelogClient("u", session=http))
        r = TestClient(app).get("/api/update-check", params={"version": "0.9.0"})
        assert r.status_code == 200
        assert r.json()["changelog"].startswith("Version 0.9.2")
