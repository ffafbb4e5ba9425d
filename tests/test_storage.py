import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from model_library.config import Settings
from model_library.errors import ObjectNotFound, StorageFailure
from model_library.storage import ObjectStore


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )
    store = ObjectStore(client, "models")
    with Stubber(client) as stubber:
        yield store, stubber
        stubber.assert_no_pending_responses()


def _body(data: bytes) -> StreamingBody:
    return StreamingBody(io.BytesIO(data), len(data))


def test_upload_bytes(s3):
    store, stubber = s3
    stubber.add_response("put_object", {"ETag": '"abc123"'})
    result = store.upload("o/m/v1/sources/a.stl", b"solid", "application/sla")
    assert result.key == "o/m/v1/sources/a.stl"
    assert result.size == 5
    assert result.etag == "abc123"


def test_upload_file_object_measures_remaining_size(s3):
    store, stubber = s3
    stubber.add_response("put_object", {"ETag": '"e"'})
    stream = io.BytesIO(b"0123456789")
    stream.seek(4)
    assert store.upload("k", stream).size == 6


def test_upload_failure_is_storage_failure(s3):
    store, stubber = s3
    stubber.add_client_error("put_object", service_error_code="AccessDenied", http_status_code=403)
    with pytest.raises(StorageFailure) as exc:
        store.upload("k", b"x")
    assert not isinstance(exc.value, ObjectNotFound)
    assert exc.value.key == "k"
    assert exc.value.operation == "upload"


def test_get_bytes(s3):
    store, stubber = s3
    stubber.add_response(
        "get_object",
        {"Body": _body(b"hello"), "ContentType": "text/plain", "ContentLength": 5},
    )
    obj = store.get_bytes("k")
    assert obj.data == b"hello"
    assert obj.content_type == "text/plain"
    assert obj.size == 5


def test_missing_object_is_object_not_found(s3):
    store, stubber = s3
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
    with pytest.raises(ObjectNotFound):
        store.get_bytes("gone")


def test_get_stream_yields_chunks(s3):
    store, stubber = s3
    stubber.add_response("get_object", {"Body": _body(b"abcdefghij")})
    assert list(store.get_stream("k", chunk_size=4)) == [b"abcd", b"efgh", b"ij"]


def test_delete_ignores_missing(s3):
    store, stubber = s3
    stubber.add_client_error("delete_object", service_error_code="NoSuchKey", http_status_code=404)
    store.delete("gone")

    stubber.add_client_error("delete_object", service_error_code="AccessDenied", http_status_code=403)
    with pytest.raises(StorageFailure):
        store.delete("locked")


def test_delete_many_reports_per_key(s3):
    store, stubber = s3
    stubber.add_response(
        "delete_objects",
        {
            "Deleted": [{"Key": "a"}],
            "Errors": [
                {"Key": "b", "Code": "AccessDenied", "Message": "denied"},
                {"Key": "c", "Code": "NoSuchKey", "Message": "missing"},
            ],
        },
    )
    result = store.delete_many(["a", "b", "c"])
    assert result.deleted == ["a", "c"]
    assert [(f.key, f.error) for f in result.failed] == [("b", "denied")]


def test_delete_many_batch_failure_never_raises(s3):
    store, stubber = s3
    stubber.add_client_error("delete_objects", service_error_code="InternalError", http_status_code=500)
    result = store.delete_many(["a", "b"])
    assert result.deleted == []
    assert [f.key for f in result.failed] == ["a", "b"]


def test_head_and_exists(s3):
    store, stubber = s3
    stubber.add_response(
        "head_object",
        {"ContentLength": 42, "ETag": '"tag"', "ContentType": "model/obj"},
    )
    info = store.head_metadata("k")
    assert (info.size, info.etag, info.content_type) == (42, "tag", "model/obj")

    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    assert store.exists("gone") is False


def test_list_keys_follows_pages(s3):
    store, stubber = s3
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "org/a"}], "IsTruncated": True, "NextContinuationToken": "t1"},
    )
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "org/b"}], "IsTruncated": False},
    )
    assert store.list_keys("org/") == ["org/a", "org/b"]


def test_health(s3):
    store, stubber = s3
    stubber.add_response("list_objects_v2", {"Contents": []})
    assert store.health() is True
    stubber.add_client_error("list_objects_v2", service_error_code="NoSuchBucket", http_status_code=404)
    assert store.health() is False


def test_from_settings_uses_path_style_endpoint():
    settings = Settings(
        storage_endpoint="localhost:9000",
        storage_use_ssl=False,
        storage_region="us-east-1",
        storage_access_key="key",
        storage_secret_key="secret",
        storage_bucket="models",
    )
    store = ObjectStore.from_settings(settings)
    assert store.file_url("o/m/v1/sources/a.stl") == "http://localhost:9000/models/o/m/v1/sources/a.stl"

    url = store.presign_download_url("o/m/v1/sources/a.stl", ttl_minutes=15)
    assert url.startswith("http://localhost:9000/models/o/m/v1/sources/a.stl?")
    assert "X-Amz-Expires=900" in url


def test_file_url_without_endpoint():
    store = ObjectStore(client=None, bucket="models")
    assert store.file_url("k") == "s3://models/k"
