"""
model_library CLI - Ingest model versions, manage print profiles, export archives.

Usage:
    model-library <command> [options]
    python -m model_library <command> [options]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from model_library import (
    ConflictAction,
    Database,
    IngestionOptions,
    ObjectStore,
    Settings,
    UploadFile,
)

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="model-library",
        description="Multi-tenant 3D model library: versions, files and print profiles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  model-library init-db
  model-library create-org "Acme Printing" --storage-limit 5368709120
  model-library create-model --org ORG --actor alice "Benchy" benchy.stl benchy.3mf
  model-library add-version --org ORG --actor alice MODEL part.stl --changelog "thicker walls"
  model-library upload-profile --org ORG VERSION_ID project.3mf
  model-library resolve-conflict --org ORG VERSION_ID project.3mf keep_both
  model-library archive --org ORG MODEL v2 -o benchy-v2.zip
  model-library parse project.3mf --json

Environment variables:
  MODEL_LIBRARY_DATABASE_URL         SQLAlchemy URL (default: sqlite:///model-library.db)
  MODEL_LIBRARY_STORAGE_ENDPOINT     S3-compatible endpoint, e.g. localhost:9000
  MODEL_LIBRARY_STORAGE_REGION       Region (default: auto)
  MODEL_LIBRARY_STORAGE_ACCESS_KEY   Access key id
  MODEL_LIBRARY_STORAGE_SECRET_KEY   Secret access key
  MODEL_LIBRARY_STORAGE_BUCKET       Bucket name (default: models)
  MODEL_LIBRARY_STORAGE_USE_SSL      Use https for a bare endpoint (default: true)
        """,
    )

    parser.add_argument(
        "--verbose", "-V", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error output (logging only)",
    )
    parser.add_argument("--database-url", default=None, help="Override MODEL_LIBRARY_DATABASE_URL")
    parser.add_argument("--bucket", default=None, help="Override MODEL_LIBRARY_STORAGE_BUCKET")

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        required=True,
        metavar="<command>",
    )

    # --- init-db ---
    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=run_init_db)

    # --- create-org ---
    org_parser = subparsers.add_parser("create-org", help="Create an organization")
    org_parser.add_argument("name", help="Organization name")
    org_parser.add_argument("--storage-limit", type=int, default=None, help="Storage limit in bytes")
    org_parser.add_argument("--model-limit", type=int, default=None, help="Maximum number of models")
    org_parser.add_argument("--json", action="store_true", help="Output as JSON")
    org_parser.set_defaults(func=run_create_org)

    # --- create-model ---
    model_parser = subparsers.add_parser("create-model", help="Create a model with its first version")
    _add_tenant_args(model_parser, actor=True)
    model_parser.add_argument("name", help="Model name")
    model_parser.add_argument("files", nargs="+", type=Path, help="Files to upload")
    model_parser.add_argument("--description", default=None, help="Model description")
    _add_ingest_args(model_parser)
    model_parser.set_defaults(func=run_create_model)

    # --- add-version ---
    version_parser = subparsers.add_parser("add-version", help="Upload files as the next version of a model")
    _add_tenant_args(version_parser, actor=True)
    version_parser.add_argument("model_id", help="Model id")
    version_parser.add_argument("files", nargs="+", type=Path, help="Files to upload")
    version_parser.add_argument("--changelog", default="", help="What changed in this version")
    version_parser.add_argument("--name", default=None, help="Version display name")
    _add_ingest_args(version_parser)
    version_parser.set_defaults(func=run_add_version)

    # --- upload ---
    upload_parser = subparsers.add_parser(
        "upload",
        help="Upload one file, as a new version or into an existing one",
    )
    _add_tenant_args(upload_parser, actor=True)
    upload_parser.add_argument("model_id", help="Model id")
    upload_parser.add_argument("file", type=Path, help="File to upload")
    upload_parser.add_argument("--version", default=None, help="Existing version label (e.g. v3)")
    upload_parser.add_argument("--version-name", default=None, help="Name for a new version")
    upload_parser.add_argument("--description", default=None, help="Changelog for a new version")
    upload_parser.add_argument("--json", action="store_true", help="Output as JSON")
    upload_parser.set_defaults(func=run_upload)

    # --- upload-profile ---
    profile_parser = subparsers.add_parser("upload-profile", help="Upload 3MF print profiles to a version")
    _add_tenant_args(profile_parser, actor=True, actor_required=False)
    profile_parser.add_argument("version_id", help="Version id")
    profile_parser.add_argument("files", nargs="+", type=Path, help="3MF files")
    profile_parser.add_argument("--json", action="store_true", help="Output as JSON")
    profile_parser.set_defaults(func=run_upload_profile)

    # --- resolve-conflict ---
    resolve_parser = subparsers.add_parser("resolve-conflict", help="Resolve a print profile conflict")
    _add_tenant_args(resolve_parser, actor=True, actor_required=False)
    resolve_parser.add_argument("version_id", help="Version id")
    resolve_parser.add_argument("file", type=Path, help="The conflicting 3MF file")
    resolve_parser.add_argument("action", choices=[a.value for a in ConflictAction], help="Resolution")
    resolve_parser.add_argument("--existing", default=None, help="Id of the profile to replace")
    resolve_parser.add_argument("--json", action="store_true", help="Output as JSON")
    resolve_parser.set_defaults(func=run_resolve_conflict)

    # --- list-profiles ---
    list_parser = subparsers.add_parser("list-profiles", help="List print profiles of a version")
    _add_tenant_args(list_parser)
    list_parser.add_argument("version_id", help="Version id")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=run_list_profiles)

    # --- delete-profile ---
    delete_profile_parser = subparsers.add_parser("delete-profile", help="Delete a print profile")
    _add_tenant_args(delete_profile_parser)
    delete_profile_parser.add_argument("profile_id", help="Print profile id")
    delete_profile_parser.set_defaults(func=run_delete_profile)

    # --- fetch ---
    fetch_parser = subparsers.add_parser("fetch", help="Download a print profile's 3MF")
    _add_tenant_args(fetch_parser)
    fetch_parser.add_argument("profile_id", help="Print profile id")
    fetch_parser.add_argument("--output", "-o", type=Path, default=None, help="Destination file")
    fetch_parser.set_defaults(func=run_fetch)

    # --- parse ---
    parse_parser = subparsers.add_parser("parse", help="Parse a local 3MF file")
    parse_parser.add_argument("file", type=Path, help="3MF file")
    parse_parser.add_argument("--thumbnail", type=Path, default=None, help="Write the embedded thumbnail here")
    parse_parser.add_argument("--json", action="store_true", help="Output as JSON")
    parse_parser.set_defaults(func=run_parse)

    # --- archive ---
    archive_parser = subparsers.add_parser("archive", help="Write all files of a version into a ZIP")
    _add_tenant_args(archive_parser)
    archive_parser.add_argument("model_id", help="Model id")
    archive_parser.add_argument("version", help="Version label (e.g. v2)")
    archive_parser.add_argument("--output", "-o", type=Path, default=None, help="Destination ZIP")
    archive_parser.add_argument("--json", action="store_true", help="Output report as JSON")
    archive_parser.set_defaults(func=run_archive)

    # --- delete-model ---
    delete_parser = subparsers.add_parser("delete-model", help="Soft-delete a model")
    _add_tenant_args(delete_parser)
    delete_parser.add_argument("model_id", help="Model id")
    delete_parser.set_defaults(func=run_delete_model)

    return parser


def _add_tenant_args(
    parser: argparse.ArgumentParser,
    actor: bool = False,
    actor_required: bool = True,
) -> None:
    parser.add_argument("--org", required=True, help="Organization id")
    if actor:
        parser.add_argument("--actor", required=actor_required, default=None, help="Acting user id")


def _add_ingest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--preview", type=Path, default=None, help="Preview image")
    parser.add_argument(
        "--no-thumbnail", action="store_true",
        help="Do not derive a thumbnail from the first 3MF",
    )
    parser.add_argument(
        "--no-parse", action="store_true",
        help="Do not extract print profiles from 3MF files",
    )
    parser.add_argument("--ip", default=None, help="Client IP recorded with each file")
    parser.add_argument("--json", action="store_true", help="Output as JSON")


def _settings(args: argparse.Namespace) -> Settings:
    return Settings.from_env(database_url=args.database_url, storage_bucket=args.bucket)


def _database(settings: Settings) -> Database:
    return Database(settings.database_url)


def _make_reporter(use_json: bool):
    """Create the appropriate progress reporter."""
    from model_library.progress import RichProgressReporter, NullProgressReporter
    return NullProgressReporter() if use_json else RichProgressReporter()


def _read_upload(path: Path) -> UploadFile:
    return UploadFile(filename=path.name, data=path.read_bytes())


def _print_json(model) -> None:
    print(json.dumps(model.model_dump(mode="json", exclude={"thumbnail"}), indent=2))


def _print_version_result(result) -> None:
    print(f"{result.version_label} ({result.version_id})")
    for f in result.files:
        print(f"  {f.original_name} -> {f.storage_key} ({f.size} bytes)")
    if result.thumbnail_path:
        print(f"  thumbnail: {result.thumbnail_path}")
    for error in result.profile_errors:
        print(f"  profile not extracted: {error}")


def _pipeline(args: argparse.Namespace):
    from model_library.pipeline import IngestionPipeline

    settings = _settings(args)
    return IngestionPipeline(
        _database(settings),
        ObjectStore.from_settings(settings),
        settings,
        reporter=_make_reporter(getattr(args, "json", False)),
    )


def _profile_service(args: argparse.Namespace):
    from model_library.profiles import PrintProfileService

    settings = _settings(args)
    return PrintProfileService(_database(settings), ObjectStore.from_settings(settings), settings)


def run_init_db(args: argparse.Namespace) -> int:
    settings = _settings(args)
    _database(settings).create_all()
    print(f"Database ready: {settings.database_url}")
    return 0


def run_create_org(args: argparse.Namespace) -> int:
    from model_library.schema import Organization

    db = _database(_settings(args))
    with db.transaction() as session:
        org = Organization(
            name=args.name,
            storage_limit=args.storage_limit,
            model_limit=args.model_limit,
        )
        session.add(org)
        session.flush()
        org_id = org.id

    if args.json:
        print(json.dumps({"id": org_id, "name": args.name}, indent=2))
    else:
        print(org_id)
    return 0


def run_create_model(args: argparse.Namespace) -> int:
    from model_library.models import CreateModelInput

    pipeline = _pipeline(args)
    result = pipeline.create_model(
        CreateModelInput(
            organization_id=args.org,
            actor_id=args.actor,
            name=args.name,
            description=args.description,
            files=[_read_upload(p) for p in args.files],
            preview_image=_read_upload(args.preview) if args.preview else None,
            ip=args.ip,
        ),
        IngestionOptions(derive_thumbnail=not args.no_thumbnail, auto_parse_profiles=not args.no_parse),
    )
    if args.json:
        _print_json(result)
    else:
        print(f"Model {result.slug} ({result.model_id})")
        _print_version_result(result)
    return 0


def run_add_version(args: argparse.Namespace) -> int:
    from model_library.models import AddVersionInput

    pipeline = _pipeline(args)
    result = pipeline.add_version(
        AddVersionInput(
            model_id=args.model_id,
            organization_id=args.org,
            actor_id=args.actor,
            changelog=args.changelog,
            files=[_read_upload(p) for p in args.files],
            preview_image=_read_upload(args.preview) if args.preview else None,
            ip=args.ip,
            version_name=args.name,
        ),
        IngestionOptions(derive_thumbnail=not args.no_thumbnail, auto_parse_profiles=not args.no_parse),
    )
    if args.json:
        _print_json(result)
    else:
        _print_version_result(result)
    return 0


def run_upload(args: argparse.Namespace) -> int:
    from model_library.models import ApiUploadInput

    pipeline = _pipeline(args)
    result = pipeline.upload_file(
        ApiUploadInput(
            organization_id=args.org,
            actor_id=args.actor,
            model_id=args.model_id,
            file=_read_upload(args.file),
            version=args.version,
            version_name=args.version_name,
            description=args.description,
        )
    )
    if args.json:
        _print_json(result)
    else:
        _print_version_result(result)
    return 0


def run_upload_profile(args: argparse.Namespace) -> int:
    service = _profile_service(args)
    report = service.batch_upload(
        args.version_id,
        args.org,
        [_read_upload(p) for p in args.files],
        actor_id=args.actor,
    )

    if args.json:
        _print_json(report)
    else:
        for profile in report.successful:
            print(f"  + {profile.printer_name} ({profile.slicer_type.value if profile.slicer_type else '?'}) {profile.id}")
        for conflict in report.conflicts:
            print(
                f"  ! {conflict.filename}: {conflict.new_profile.printer_name!r} conflicts with "
                f"{conflict.existing_profile.printer_name!r} ({conflict.existing_profile.id})"
            )
        for failed in report.failed:
            print(f"  - {failed.filename}: {failed.error}")
    return 1 if report.failed else 0


def run_resolve_conflict(args: argparse.Namespace) -> int:
    service = _profile_service(args)
    result = service.resolve_conflict(
        args.version_id,
        args.org,
        _read_upload(args.file),
        ConflictAction(args.action),
        existing_profile_id=args.existing,
        actor_id=args.actor,
    )

    if result is None:
        print("Skipped")
        return 0
    if args.json:
        _print_json(result)
    elif result.success:
        print(f"Created {result.profile.printer_name} ({result.profile.id})")
    else:
        logger.error("Not a usable profile (%s): %s", result.reason, result.error)
    return 0 if result.success else 1


def run_list_profiles(args: argparse.Namespace) -> int:
    service = _profile_service(args)
    profiles = service.list_profiles(args.version_id, args.org)

    if args.json:
        print(json.dumps([p.model_dump(mode="json") for p in profiles], indent=2))
    elif not profiles:
        print("No print profiles")
    else:
        for p in profiles:
            meta = p.metadata
            summary = meta.filament_summary if meta and meta.filament_summary else ""
            print(f"  {p.id}  {p.printer_name}  {summary}")
    return 0


def run_delete_profile(args: argparse.Namespace) -> int:
    _profile_service(args).delete_profile(args.profile_id, args.org)
    print(f"Deleted {args.profile_id}")
    return 0


def run_fetch(args: argparse.Namespace) -> int:
    import requests

    from model_library.progress import track_chunks

    service = _profile_service(args)
    info = service.get_profile_download_info(args.profile_id, args.org)
    dest = args.output or Path(info.filename)

    reporter = _make_reporter(False)
    resp = requests.get(info.download_url, stream=True, timeout=120)
    resp.raise_for_status()
    total = int(resp.headers.get("content-length", 0)) or info.size
    with open(dest, "wb") as f, reporter.transfer(total, f"Downloading {info.filename}") as bar:
        for chunk in track_chunks(resp.iter_content(chunk_size=8192), bar):
            f.write(chunk)

    print(f"Saved {dest}")
    return 0


def run_parse(args: argparse.Namespace) -> int:
    from model_library.parsers import format_duration, parse_3mf

    if not args.file.exists():
        logger.error("File '%s' does not exist", args.file)
        return 1

    result = parse_3mf(args.file.read_bytes())
    if not result.success:
        if args.json:
            _print_json(result)
        else:
            logger.error("Could not parse %s (%s): %s", args.file, result.reason, result.error or "")
        return 1

    profile = result.profile
    if args.thumbnail and profile.thumbnail:
        args.thumbnail.write_bytes(profile.thumbnail)

    if args.json:
        _print_json(profile)
        return 0

    meta = profile.metadata
    print(f"{profile.printer_name} ({profile.slicer_type.value})")
    if meta.print_time_seconds is not None:
        print(f"  Print time: {format_duration(meta.print_time_seconds)}")
    if meta.filament_summary:
        print(f"  Filament:   {meta.filament_summary}")
    if meta.filament_weight_grams is not None:
        print(f"  Weight:     {meta.filament_weight_grams:g} g")
    if meta.settings:
        s = meta.settings
        print(f"  Layer:      {s.layer_height_mm} mm, infill {s.infill_percent}%")
        print(f"  Temps:      nozzle {s.nozzle_temp_c} C, bed {s.bed_temp_c} C")
    return 0


def run_archive(args: argparse.Namespace) -> int:
    from model_library.archive import ArchiveAssembler

    settings = _settings(args)
    use_json = getattr(args, "json", False)
    assembler = ArchiveAssembler(
        _database(settings),
        ObjectStore.from_settings(settings),
        reporter=_make_reporter(use_json),
    )
    dest = args.output or Path(f"{args.model_id}-{args.version}.zip")
    with open(dest, "wb") as f:
        report = assembler.write_version_archive(args.model_id, args.org, args.version, f)

    if use_json:
        _print_json(report)
    else:
        print(f"Wrote {dest} ({len(report.written)} files, {report.total_bytes} bytes)")
        for name in report.missing:
            print(f"  missing from storage: {name}")
    return 0


def run_delete_model(args: argparse.Namespace) -> int:
    released = _pipeline(args).delete_model(args.model_id, args.org)
    print(f"Deleted {args.model_id} ({released} bytes released)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    # Configure logging
    if getattr(args, "verbose", False):
        log_level = logging.DEBUG
    elif getattr(args, "quiet", False):
        log_level = logging.ERROR
    else:
        log_level = logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    if hasattr(args, "func"):
        try:
            return args.func(args)
        except KeyboardInterrupt:
            logger.error("Interrupted")
            return 1
        except Exception as e:
            logger.error("%s", e)
            if getattr(args, "verbose", False):
                logger.debug("Traceback:", exc_info=True)
            return 1
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
