from __future__ import annotations

import io

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from resumeflow.objectstore import LocalObjectStore, S3ObjectStore, is_staging_ref, make_object_store, owner_ref


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield S3ObjectStore(bucket="resumes", client=client), stubber
        stubber.assert_no_pending_responses()


def test_s3_get_returns_body(s3):
    store, stubber = s3
    data = b"%PDF-1.4 stored"
    stubber.add_response(
        "get_object",
        {"Body": StreamingBody(io.BytesIO(data), len(data))},
        {"Bucket": "resumes", "Key": "users/U1/1/r.pdf"},
    )
    assert store.get("users/U1/1/r.pdf") == data


def test_s3_missing_key_is_none(s3):
    store, stubber = s3
    stubber.add_client_error(
        "get_object",
        service_error_code="NoSuchKey",
        http_status_code=404,
        expected_params={"Bucket": "resumes", "Key": "users/U1/1/gone.pdf"},
    )
    assert store.get("users/U1/1/gone.pdf") is None


def test_s3_other_errors_propagate(s3):
    store, stubber = s3
    stubber.add_client_error("get_object", service_error_code="SlowDown", http_status_code=503)
    with pytest.raises(ClientError):
        store.get("users/U1/1/r.pdf")


def test_s3_put_sends_content_type_and_delete_targets_key(s3):
    store, stubber = s3
    stubber.add_response(
        "put_object",
        {},
        {"Bucket": "resumes", "Key": "temp/x/r.pdf", "Body": b"%PDF-1.4", "ContentType": "application/pdf"},
    )
    stubber.add_response("delete_object", {}, {"Bucket": "resumes", "Key": "temp/x/r.pdf"})
    store.put("temp/x/r.pdf", b"%PDF-1.4")
    store.delete("temp/x/r.pdf")


def test_s3_backend_requires_bucket():
    with pytest.raises(ValueError):
        make_object_store({"backend": "s3", "bucket": ""})


def test_local_store_rejects_refs_outside_base(tmp_path):
    store = LocalObjectStore(tmp_path)
    with pytest.raises(ValueError):
        store.get("../outside.pdf")


def test_staging_and_owner_refs():
    assert is_staging_ref("temp/abc/r.pdf")
    assert not is_staging_ref("temp/../users/U1/r.pdf")
    assert not is_staging_ref("users/U1/1/r.pdf")
    assert owner_ref("U1", "My Resume (final).pdf", now_ms=42) == "users/U1/42/My_Resume_final_.pdf"
