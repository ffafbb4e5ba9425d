import pytest

from model_library.errors import EmptyUpload, FileTooLarge, TooManyFiles, UnsupportedType
from model_library.limits import (
    MB,
    format_bytes,
    get_file_size_limit,
    guess_content_type,
    validate_batch,
    validate_upload,
)
from model_library.models import UploadFile


def _file(name, size=10):
    return UploadFile(filename=name, data=b"x" * size)


def test_size_limits_per_extension():
    assert get_file_size_limit("stl") == 100 * MB
    assert get_file_size_limit(".3MF") == 250 * MB
    assert get_file_size_limit("xyz") == 10 * MB


def test_content_type_prefers_declared():
    assert guess_content_type("stl") == "application/sla"
    assert guess_content_type("stl", "model/stl") == "model/stl"
    assert guess_content_type("xyz") == "application/octet-stream"


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(100 * MB) == "100 MB"


def test_validate_upload_returns_extension():
    assert validate_upload(_file("Part.STL")) == "stl"


def test_unsupported_type():
    with pytest.raises(UnsupportedType) as exc:
        validate_upload(_file("notes.txt"))
    assert exc.value.extension == "txt"

    with pytest.raises(UnsupportedType, match="no extension"):
        validate_upload(_file("README"))


def test_file_too_large_reports_limit():
    big = UploadFile(filename="huge.gif", data=b"\0" * (10 * MB + 1))
    with pytest.raises(FileTooLarge) as exc:
        validate_upload(big)
    assert exc.value.limit == 10 * MB
    assert exc.value.actual == 10 * MB + 1
    assert "10 MB" in str(exc.value)


def test_validate_batch():
    with pytest.raises(EmptyUpload):
        validate_batch([])
    with pytest.raises(TooManyFiles) as exc:
        validate_batch([_file(f"p{i}.stl") for i in range(11)])
    assert exc.value.count == 11
    assert validate_batch([_file("a.stl"), _file("b.3mf")]) == ["stl", "3mf"]


def test_first_offending_file_wins():
    with pytest.raises(UnsupportedType) as exc:
        validate_batch([_file("a.stl"), _file("b.doc"), _file("c.exe")])
    assert exc.value.filename == "b.doc"


def test_documents_are_not_model_uploads():
    with pytest.raises(UnsupportedType):
        validate_upload(_file("manual.pdf"))
    assert get_file_size_limit("pdf") == 10 * MB
    assert guess_content_type("pdf") == "application/octet-stream"
