import json

import pytest

from errors import StorageError
from storage import (
    AUDIO_128,
    S3Storage,
    artifact_key,
    assert_safe_key,
    publish_artifacts,
)


def test_local_put_head_get_delete(storage):
    obj = storage.put_object("u1/transcoded/a/audio_128.mp3", b"abc", "audio/mpeg")
    assert obj.size == 3
    assert obj.content_type == "audio/mpeg"

    head = storage.head_object("u1/transcoded/a/audio_128.mp3")
    assert head is not None and head.size == 3
    assert storage.get_object("u1/transcoded/a/audio_128.mp3") == b"abc"

    assert storage.delete_object("u1/transcoded/a/audio_128.mp3") is True
    assert storage.head_object("u1/transcoded/a/audio_128.mp3") is None
    assert storage.delete_object("u1/transcoded/a/audio_128.mp3") is False


def test_local_list_by_prefix(storage):
    storage.put_object("u1/transcoded/a/audio_128.mp3", b"1", "audio/mpeg")
    storage.put_object("u1/transcoded/a/waveform.json", b"{}", "application/json")
    storage.put_object("u2/transcoded/b/audio_128.mp3", b"2", "audio/mpeg")

    keys = sorted(o.key for o in storage.list_objects("u1/transcoded/a"))
    assert keys == ["u1/transcoded/a/audio_128.mp3", "u1/transcoded/a/waveform.json"]
    assert len(storage.list_objects()) == 3
    assert storage.list_objects("nobody") == []


def test_get_missing_object_raises(storage):
    with pytest.raises(StorageError):
        storage.get_object("missing/key")


@pytest.mark.parametrize("key", ["", "/etc/passwd", "../escape", "a/../../b", "a//b", "a\\b"])
def test_unsafe_keys_rejected(key):
    with pytest.raises(StorageError):
        assert_safe_key(key)


def test_local_storage_rejects_traversal(storage):
    with pytest.raises(StorageError):
        storage.put_object("../outside.mp3", b"x", "audio/mpeg")


def test_artifact_key_layout():
    assert artifact_key("user-1", "up-1", AUDIO_128) == "user-1/transcoded/up-1/audio_128.mp3"


def test_publish_artifacts_without_cover(storage):
    keys = publish_artifacts(storage, "user-1", "up-1", b"128", b"320", {"peaks": [0.5], "duration": 1.0, "sampleRate": 44100})
    assert keys.audio_128 == "user-1/transcoded/up-1/audio_128.mp3"
    assert keys.audio_320 == "user-1/transcoded/up-1/audio_320.mp3"
    assert keys.waveform == "user-1/transcoded/up-1/waveform.json"
    assert keys.cover is None
    doc = json.loads(storage.get_object(keys.waveform))
    assert doc["sampleRate"] == 44100
    assert storage.head_object("user-1/transcoded/up-1/cover.jpg") is None


def test_publish_artifacts_with_cover(storage):
    keys = publish_artifacts(storage, "u", "x", b"a", b"b", {"peaks": []}, cover=b"\xff\xd8jpeg")
    assert keys.cover == "u/transcoded/x/cover.jpg"
    assert storage.get_object(keys.cover) == b"\xff\xd8jpeg"


class RecordingS3Client:
    def __init__(self, fail_key=None):
        self.objects = {}
        self.fail_key = fail_key

    def put_object(self, Bucket, Key, Body, ContentType):
        from botocore.exceptions import ClientError

        if Key == self.fail_key:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        self.objects[Key] = (Body, ContentType)


def test_s3_put_uses_content_type():
    client = RecordingS3Client()
    s3 = S3Storage("bucket", client=client)
    keys = publish_artifacts(s3, "u", "x", b"a", b"b", {"peaks": []}, cover=b"img")
    assert client.objects[keys.audio_128][1] == "audio/mpeg"
    assert client.objects[keys.audio_320][1] == "audio/mpeg"
    assert client.objects[keys.waveform][1] == "application/json"
    assert client.objects[keys.cover][1] == "image/jpeg"


def test_publish_stops_at_first_storage_failure():
    client = RecordingS3Client(fail_key="u/transcoded/x/audio_320.mp3")
    s3 = S3Storage("bucket", client=client)
    with pytest.raises(StorageError):
        publish_artifacts(s3, "u", "x", b"a", b"b", {"peaks": []})
    assert list(client.objects) == ["u/transcoded/x/audio_128.mp3"]



class UnreachableS3Client:
    def _fail(self, **kwargs):
        from botocore.exceptions import EndpointConnectionError

        raise EndpointConnectionError(endpoint_url="http://s3.invalid")

    head_object = _fail
    delete_object = _fail


def test_s3_head_wraps_connection_errors():
    s3 = S3Storage("bucket", client=UnreachableS3Client())
    with pytest.raises(StorageError, match="Failed to stat health-check"):
        s3.head_object("health-check")


def test_s3_delete_reports_connection_errors():
    s3 = S3Storage("bucket", client=UnreachableS3Client())
    assert s3.delete_object("u/transcoded/x/audio_128.mp3") is False
