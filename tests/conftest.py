import io
import json
import zipfile

import pytest

from model_library.db import Database
from model_library.errors import ObjectNotFound, StorageFailure
from model_library.models import DeleteManyResult, StoredObject, UploadResult
from model_library.schema import Model, ModelVersion, Organization

PNG = b"\x89PNG\r\n\x1a\nfake-image"


class MemoryStore:
    """In-memory stand-in for ObjectStore with failure injection."""

    def __init__(self, bucket="models"):
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.uploads: list[str] = []
        self.deleted: list[str] = []
        self.fail_upload_on: set[str] = set()
        self.fail_upload_after: int | None = None

    def upload(self, key, data, content_type=None):
        if any(part in key for part in self.fail_upload_on):
            raise StorageFailure(f"Failed to upload {key}: injected", key=key, operation="upload")
        if self.fail_upload_after is not None and len(self.uploads) >= self.fail_upload_after:
            raise StorageFailure(f"Failed to upload {key}: injected", key=key, operation="upload")
        if not isinstance(data, (bytes, bytearray)):
            data = data.read()
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type or "application/octet-stream"
        self.uploads.append(key)
        return UploadResult(key=key, size=len(data), etag="etag")

    def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)

    def delete_many(self, keys):
        for key in keys:
            self.delete(key)
        return DeleteManyResult(deleted=list(keys))

    def get_bytes(self, key):
        if key not in self.objects:
            raise ObjectNotFound(f"Object not found: {key}", key=key, operation="download")
        data = self.objects[key]
        return StoredObject(data=data, content_type=self.content_types[key], size=len(data))

    def get_stream(self, key, chunk_size=4):
        if key not in self.objects:
            raise ObjectNotFound(f"Object not found: {key}", key=key, operation="stream")
        data = self.objects[key]
        return iter([data[i:i + chunk_size] for i in range(0, len(data), chunk_size)])

    def presign_download_url(self, key, ttl_minutes=60):
        return f"https://storage.test/{self.bucket}/{key}?expires={ttl_minutes * 60}"

    def file_url(self, key):
        return f"https://storage.test/{self.bucket}/{key}"


def make_zip(members: dict[str, bytes | str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buf.getvalue()


def bambu_3mf(printer_model="Bambu Lab X1 Carbon", thumbnail=True) -> bytes:
    project = {
        "printer_model": printer_model,
        "printer_settings_id": [f"{printer_model} 0.4 nozzle"],
        "layer_height": ["0.2"],
        "sparse_infill_density": ["15%"],
        "nozzle_temperature": ["220", "220"],
        "hot_plate_temp": ["55"],
    }
    plate = {
        "prediction": 5445,
        "weight": 12.34,
        "objects_cnt": 2,
        "filaments": [
            {"type": "PLA", "color": "#ff0000"},
            {"type": "PLA", "color": "#0000ff"},
            {"type": "PETG", "color": "#000000"},
        ],
    }
    members = {
        "3D/3dmodel.model": "<model/>",
        "Metadata/slice_info.config": '<config><header_item key="X-BBL-Client-Type" value="slicer"/></config>',
        "Metadata/project_settings.config": json.dumps(project),
        "Metadata/plate_1.json": json.dumps(plate),
    }
    if thumbnail:
        members["Metadata/plate_1.png"] = PNG
    return make_zip(members)


def orca_3mf(printer="Voron 2.4 350") -> bytes:
    settings = "\n".join(
        [
            "; generated by OrcaSlicer 2.1.0",
            f'printer_model = "{printer}"',
            'layer_height = "0.16"',
            'sparse_infill_density = "20%"',
            'nozzle_temperature = "240"',
            'hot_plate_temp = "80"',
        ]
    )
    return make_zip(
        {
            "Metadata/model_settings.config": settings,
            "Metadata/plate_1.json": json.dumps(
                {"prediction": 600, "filaments": [{"type": "ABS", "color": "#FFFFFF"}]}
            ),
            "Metadata/thumbnail.png": PNG,
        }
    )


def prusa_3mf(printer="Original Prusa MK4", path="Metadata/Slic3r_PE.config") -> bytes:
    config = "\n".join(
        [
            "; generated by PrusaSlicer 2.7.1+linux-x64-GTK3 on 2024-01-10 at 12:00:00 UTC",
            "; layer_height = 0.2",
            "; fill_density = 15%",
            "; temperature = 215,210",
            "; bed_temperature = 60,60",
            "; filament_type = PLA;PETG",
            "; filament_colour = #ff8000;#000000",
            "; filament_used_g = 20.5",
            "; estimated_print_time = 1h 2m 3s",
            f"; printer_settings_id = {printer}",
            "; printer_model = MK4",
        ]
    )
    return make_zip({path: config, "Thumbnails/thumbnail.png": PNG})


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def org_id(db):
    with db.transaction() as session:
        org = Organization(name="Acme Printing")
        session.add(org)
        session.flush()
        return org.id


@pytest.fixture
def model_v3(db, org_id):
    """A model whose current version is v3, with v1..v3 recorded."""
    with db.transaction() as session:
        model = Model(
            organization_id=org_id,
            owner_id="alice",
            name="Benchy",
            slug="benchy",
            current_version="v3",
            total_versions=3,
            last_version_number=3,
        )
        session.add(model)
        session.flush()
        for n in (1, 2, 3):
            session.add(ModelVersion(model_id=model.id, version=f"v{n}", name=f"v{n}"))
        return model.id
