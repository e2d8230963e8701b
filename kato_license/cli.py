# kato_license/cli.py
# Local maintenance CLI: publish plugin releases and inspect/cancel licenses (uses DB directly)
import argparse
import json

from kato_license.config import Settings
from kato_license.database import make_engine, make_session_factory
from kato_license.releases import ReleaseStore
from kato_license.repository import LicenseRepository
from kato_license.utils.policy import license_status


def upload_release(settings: Settings, path: str, version: str, changelog: str, store: ReleaseStore = None):
    if not settings.AWS_S3_BUCKET:
        print("AWS_S3_BUCKET not set")
        return 1
    store = store or ReleaseStore(
        settings.AWS_REGION,
        access_key_id=settings.AWS_ACCESS_KEY_ID,
        secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
    )
    for key in store.upload_release(settings.AWS_S3_BUCKET, settings.RELEASE_PREFIX, path, version, changelog):
        print("Uploaded:", key)
    return 0


def show_license(session_factory, license_key: str):
    db = session_factory()
    try:
        repo = LicenseRepository(db)
        lic = repo.get_license(license_key)
        if not lic:
            print("License not found")
            return 1
        out = lic.to_dict()
        out["effective_status"] = license_status(lic)
        out["activations"] = [a.to_dict() for a in repo.get_activations(license_key)]
        print(json.dumps(out, indent=2))
        return 0
    finally:
        db.close()


def cancel_license(session_factory, license_key: str):
    db = session_factory()
    try:
        lic = LicenseRepository(db).update_license(license_key, status="cancelled")
        if not lic:
            print("License not found")
            return 1
        print("License cancelled:", license_key)
        return 0
    finally:
        db.close()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="kato-license")
    parser.add_argument("action", choices=["upload", "show", "cancel"])
    parser.add_argument("--key", help="License key (for show/cancel)")
    parser.add_argument("--file", help="Plugin zip (for upload)")
    parser.add_argument("--version", help="Release version X.Y.Z (for upload)")
    parser.add_argument("--changelog", default="", help="Release notes (for upload)")

    args = parser.parse_args(argv)
    settings = Settings()

    if args.action == "upload":
        if not args.file or not args.version:
            print("file and version required for upload")
            return 2
        return upload_release(settings, args.file, args.version, args.changelog)

    if not args.key:
        print(f"key required for {args.action}")
        return 2
    session_factory = make_session_factory(make_engine(settings.DATABASE_URL))
    if args.action == "show":
        return show_license(session_factory, args.key)
    return cancel_license(session_factory, args.key)


if __name__ == "__main__":
    raise SystemExit(main())
