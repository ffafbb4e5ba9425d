import pytest
from sqlalchemy import select

from model_library.errors import NotFoundOrDenied, UnsupportedType, UsageLimitExceeded
from model_library.matching import find_conflict, is_conflict
from model_library.models import (
    ConflictAction,
    ProfileConflict,
    ProfileCreated,
    ProfileRejected,
    SlicerType,
    UploadFile,
)
from model_library.profiles import PrintProfileService
from model_library.schema import ModelFile, ModelVersion, Organization, PrintProfile

from .conftest import PNG, bambu_3mf, make_zip, prusa_3mf


@pytest.fixture
def service(db, store):
    return PrintProfileService(db, store)


@pytest.fixture
def version_id(db, model_v3):
    with db.session() as session:
        return session.scalars(
            select(ModelVersion.id).where(ModelVersion.model_id == model_v3, ModelVersion.version == "v3")
        ).one()


def _upload(name, data):
    return UploadFile(filename=name, data=data)


def _profiles(db):
    with db.session() as session:
        return session.scalars(select(PrintProfile).order_by(PrintProfile.created_at)).all()


def test_upload_creates_dedicated_profile(db, store, service, org_id, model_v3, version_id):
    result = service.upload_profile(version_id, org_id, _upload("X1C Plate.3mf", bambu_3mf("X1 Carbon")), actor_id="alice")

    assert isinstance(result, ProfileCreated)
    profile = result.profile
    assert profile.printer_name == "X1 Carbon"
    assert profile.slicer_type == SlicerType.BAMBU
    assert profile.owns_file is True
    assert profile.metadata.filament_weight_grams == 12.34
    assert profile.thumbnail_path.startswith(f"{org_id}/{model_v3}/v3/artifacts/x1c-plate-")
    assert profile.thumbnail_path.endswith("-thumb.png")
    assert store.objects[profile.thumbnail_path] == PNG

    with db.session() as session:
        row = session.get(ModelFile, profile.file_id)
        assert row.storage_key.startswith(f"{org_id}/{model_v3}/v3/slicer/x1c-plate-")
        assert row.file_metadata["origin"] == "print_profile"
        assert session.get(Organization, org_id).current_storage == row.size


def test_rejections(service, org_id, version_id):
    result = service.upload_profile(version_id, org_id, _upload("part.stl", b"solid"))
    assert isinstance(result, ProfileRejected)
    assert result.reason == "not_3mf"

    result = service.upload_profile(version_id, org_id, _upload("empty.3mf", make_zip({"3D/3dmodel.model": "<m/>"})))
    assert result.reason == "unknown_format"

    result = service.upload_profile(version_id, org_id, _upload("broken.3mf", b"garbage"))
    assert result.reason == "parse_error"


def test_unknown_version_or_other_tenant(db, service, version_id):
    with db.transaction() as session:
        other = Organization(name="Other")
        session.add(other)
        session.flush()
        other_id = other.id

    with pytest.raises(NotFoundOrDenied):
        service.upload_profile(version_id, other_id, _upload("a.3mf", bambu_3mf()))
    with pytest.raises(NotFoundOrDenied):
        service.list_profiles("no-such-version", other_id)


def test_conflict_is_reported_without_writing(db, store, service, org_id, version_id):
    first = service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf("Bambu Lab X1 Carbon")))
    uploads_before = list(store.uploads)

    result = service.upload_profile(version_id, org_id, _upload("b.3mf", bambu_3mf("X1 Carbon")))
    assert isinstance(result, ProfileConflict)
    info = result.conflict_info
    assert info.filename == "b.3mf"
    assert info.existing_profile.id == first.profile.id
    assert info.existing_profile.printer_name == "Bambu Lab X1 Carbon"
    assert info.new_profile.printer_name == "X1 Carbon"
    assert info.new_profile.metadata.print_time_seconds == 5445

    assert store.uploads == uploads_before
    assert len(_profiles(db)) == 1


def test_different_printers_do_not_conflict(service, org_id, version_id):
    service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf("X1 Carbon")))
    result = service.upload_profile(version_id, org_id, _upload("b.3mf", bambu_3mf("X1C")))
    assert isinstance(result, ProfileCreated)


def test_resolve_keep_both(db, service, org_id, version_id):
    service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf("X1 Carbon")))
    service.upload_profile(version_id, org_id, _upload("b.3mf", prusa_3mf("X1 Carbon")))

    result = service.resolve_conflict(
        version_id, org_id, _upload("c.3mf", bambu_3mf("Bambu Lab X1 Carbon")), ConflictAction.KEEP_BOTH
    )
    assert isinstance(result, ProfileCreated)
    assert result.profile.printer_name == "Bambu Lab X1 Carbon (2)"
    assert result.profile.printer_name_normalized == "x1carbon2"
    assert len(_profiles(db)) == 2

    profiles = service.list_profiles(version_id, org_id)
    for profile in profiles:
        others = [p for p in profiles if p.id != profile.id]
        assert find_conflict(profile.printer_name, others) is None
        assert not any(is_conflict(profile.printer_name, p.printer_name) for p in others)

    again = service.upload_profile(version_id, org_id, _upload("d.3mf", bambu_3mf("X1 Carbon (2)")))
    assert isinstance(again, ProfileConflict)
    assert again.conflict_info.existing_profile.id == result.profile.id


def test_resolve_replace(db, store, service, org_id, version_id):
    old = service.upload_profile(version_id, org_id, _upload("old.3mf", bambu_3mf("X1 Carbon"))).profile
    with db.session() as session:
        old_key = session.get(ModelFile, old.file_id).storage_key

    result = service.resolve_conflict(
        version_id, org_id, _upload("new.3mf", bambu_3mf("X1 Carbon")), "replace", existing_profile_id=old.id
    )
    assert isinstance(result, ProfileCreated)

    profiles = _profiles(db)
    assert [p.id for p in profiles] == [result.profile.id]
    assert old_key not in store.objects
    assert old.thumbnail_path not in store.objects
    with db.session() as session:
        assert session.get(ModelFile, old.file_id) is None
        new_size = session.get(ModelFile, result.profile.file_id).size
        assert session.get(Organization, org_id).current_storage == new_size


def test_resolve_replace_finds_conflict_when_id_missing(db, service, org_id, version_id):
    old = service.upload_profile(version_id, org_id, _upload("old.3mf", bambu_3mf("X1 Carbon"))).profile
    result = service.resolve_conflict(
        version_id, org_id, _upload("new.3mf", bambu_3mf("Bambu Lab X1 Carbon")), ConflictAction.REPLACE
    )
    assert [p.id for p in _profiles(db)] == [result.profile.id]
    assert result.profile.id != old.id


def _version(db, model_id, label):
    with db.session() as session:
        return session.scalars(
            select(ModelVersion.id).where(ModelVersion.model_id == model_id, ModelVersion.version == label)
        ).one()


def test_resolve_replace_cannot_reach_another_version(db, store, service, org_id, model_v3, version_id):
    v2_id = _version(db, model_v3, "v2")
    older = service.upload_profile(v2_id, org_id, _upload("old.3mf", bambu_3mf("X1 Carbon"))).profile

    with pytest.raises(NotFoundOrDenied, match="Print profile"):
        service.resolve_conflict(
            version_id, org_id, _upload("p1s.3mf", bambu_3mf("P1S")), ConflictAction.REPLACE, existing_profile_id=older.id
        )

    assert [p.id for p in service.list_profiles(v2_id, org_id)] == [older.id]
    assert service.list_profiles(version_id, org_id) == []
    with db.session() as session:
        assert store.objects[session.get(ModelFile, older.file_id).storage_key]


def test_resolve_replace_keeps_a_profile_that_does_not_conflict(db, service, org_id, version_id):
    x1 = service.upload_profile(version_id, org_id, _upload("x1.3mf", bambu_3mf("X1 Carbon"))).profile

    result = service.resolve_conflict(
        version_id, org_id, _upload("p1s.3mf", bambu_3mf("P1S")), ConflictAction.REPLACE, existing_profile_id=x1.id
    )
    assert isinstance(result, ProfileCreated)
    assert sorted(p.printer_name for p in service.list_profiles(version_id, org_id)) == ["P1S", "X1 Carbon"]


def test_profile_uploads_respect_storage_limit(db, store, service, org_id, version_id):
    with db.transaction() as session:
        session.get(Organization, org_id).storage_limit = 10

    with pytest.raises(UsageLimitExceeded) as exc:
        service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf("X1 Carbon")))
    assert exc.value.resource == "Storage"
    assert store.uploads == []
    assert _profiles(db) == []

    report = service.batch_upload(version_id, org_id, [_upload("b.3mf", bambu_3mf("P1S"))])
    assert report.successful == []
    assert report.failed[0].filename == "b.3mf"
    assert "Storage limit exceeded" in report.failed[0].error
    with db.session() as session:
        assert session.get(Organization, org_id).current_storage == 0


def test_replace_over_limit_keeps_existing_profile(db, service, org_id, version_id):
    old = service.upload_profile(version_id, org_id, _upload("old.3mf", bambu_3mf("X1 Carbon"))).profile
    with db.transaction() as session:
        session.get(Organization, org_id).storage_limit = 10

    with pytest.raises(UsageLimitExceeded):
        service.resolve_conflict(
            version_id, org_id, _upload("new.3mf", bambu_3mf("X1 Carbon")), ConflictAction.REPLACE
        )
    assert [p.id for p in _profiles(db)] == [old.id]


def test_resolve_skip_creates_nothing(db, store, service, org_id, version_id):
    assert service.resolve_conflict(version_id, org_id, _upload("a.3mf", bambu_3mf()), ConflictAction.SKIP) is None
    assert store.uploads == []
    assert _profiles(db) == []


def test_batch_upload(service, org_id, version_id):
    report = service.batch_upload(
        version_id,
        org_id,
        [
            _upload("x1.3mf", bambu_3mf("X1 Carbon")),
            _upload("mk4.3mf", prusa_3mf("Original Prusa MK4")),
            _upload("x1-again.3mf", bambu_3mf("Bambu Lab X1 Carbon")),
            _upload("notes.3mf", b"not a zip"),
            _upload("part.stl", b"solid"),
        ],
    )
    assert sorted(p.printer_name for p in report.successful) == ["Original Prusa MK4", "X1 Carbon"]
    assert [c.filename for c in report.conflicts] == ["x1-again.3mf"]
    assert [f.filename for f in report.failed] == ["notes.3mf", "part.stl"]


def test_batch_upload_collects_validation_errors(service, org_id, version_id, monkeypatch):
    def reject(file, allowed):
        raise UnsupportedType("3mf", file.filename)

    monkeypatch.setattr("model_library.profiles.validate_upload", reject)
    report = service.batch_upload(version_id, org_id, [_upload("a.3mf", bambu_3mf())])
    assert report.successful == []
    assert report.failed[0].filename == "a.3mf"
    assert "Unsupported file type" in report.failed[0].error


def test_list_profiles_presigns_thumbnails(service, org_id, version_id):
    service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf("X1 Carbon")))
    service.upload_profile(version_id, org_id, _upload("b.3mf", bambu_3mf("P1S", thumbnail=False)))

    profiles = service.list_profiles(version_id, org_id)
    assert [p.printer_name for p in profiles] == ["X1 Carbon", "P1S"]
    assert profiles[0].thumbnail_url.startswith("https://storage.test/models/")
    assert "expires=3600" in profiles[0].thumbnail_url
    assert profiles[1].thumbnail_url is None


def test_download_info(service, org_id, version_id):
    created = service.upload_profile(version_id, org_id, _upload("Plate 1.3mf", bambu_3mf())).profile
    info = service.get_profile_download_info(created.id, org_id)
    assert info.filename == "Plate 1.3mf"
    assert info.mime_type == "application/vnd.ms-package.3dmanufacturing-3dmodel+xml"
    assert info.size > 0
    assert info.download_url.startswith("https://storage.test/models/")


def test_delete_shared_profile_keeps_version_file(db, store, service, org_id, version_id):
    with db.transaction() as session:
        row = ModelFile(
            version_id=version_id,
            filename="project-abcd1234.3mf",
            original_name="project.3mf",
            size=10,
            mime_type="application/vnd.ms-package.3dmanufacturing-3dmodel+xml",
            extension="3mf",
            storage_key="o/m/v3/slicer/project-abcd1234.3mf",
            storage_bucket="models",
        )
        session.add(row)
        session.flush()
        file_id = row.id
    store.upload("o/m/v3/slicer/project-abcd1234.3mf", bambu_3mf("A1 mini"))

    created = service.create_profile_from_source_file(version_id, file_id)
    assert isinstance(created, ProfileCreated)
    assert created.profile.owns_file is False
    assert created.profile.thumbnail_path.endswith("project-abcd1234-profile-thumb.png")

    service.delete_profile(created.profile.id, org_id)
    assert _profiles(db) == []
    assert "o/m/v3/slicer/project-abcd1234.3mf" in store.objects
    assert created.profile.thumbnail_path not in store.objects
    with db.session() as session:
        assert session.get(ModelFile, file_id) is not None


def test_create_from_source_file_never_raises(service, version_id):
    result = service.create_profile_from_source_file(version_id, "missing-file")
    assert isinstance(result, ProfileRejected)
    assert result.reason == "parse_error"


def test_delete_profile_requires_access(db, service, org_id, version_id):
    created = service.upload_profile(version_id, org_id, _upload("a.3mf", bambu_3mf())).profile
    with pytest.raises(NotFoundOrDenied, match="Print profile"):
        service.delete_profile(created.id, "someone-else")
    assert len(_profiles(db)) == 1
