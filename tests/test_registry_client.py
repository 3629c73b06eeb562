"""
Tests for the registry client against the in-memory fake registry.

Covers blob upload (monolithic and chunked, with resume), verified
downloads, manifest round trips, tag pagination and status mapping.
"""
from __future__ import annotations

import dataclasses

import pytest

from ocipkg.digest import digest_of
from ocipkg.errors import (
    DigestMismatch,
    NotFound,
    RegistryError,
    TransientRegistryError,
    UnsupportedManifestType,
    UploadOffsetMismatch,
)
from ocipkg.image_name import ImageName
from ocipkg.media_types import OCI_IMAGE_MANIFEST
from ocipkg.registry import RegistrySession

NAME = ImageName.parse("localhost:5000/test_repo:tag1")
REPO = "test_repo"

# Above the chunked threshold (4096) of the test settings, chunk size 1024
LARGE = bytes((i * 31 + 7) % 256 for i in range(5000))


@pytest.fixture
def client(session):
    return session.client_for(NAME)


class TestBlobs:
    """Test blob existence, download and upload."""

    def test_monolithic_upload(self, client, fake_registry):
        """Test small blobs go up in one POST + PUT."""
        digest = client.push_blob(b"small blob")
        assert digest == digest_of(b"small blob")
        assert fake_registry.blobs[REPO][str(digest)] == b"small blob"
        assert fake_registry.count("POST") == 1
        assert fake_registry.count("PATCH") == 0

    def test_blob_exists(self, client, fake_registry):
        fake_registry.put_blob(REPO, b"present")
        assert client.blob_exists(digest_of(b"present"))
        assert not client.blob_exists(digest_of(b"absent"))

    def test_get_blob(self, client, fake_registry):
        fake_registry.put_blob(REPO, b"payload")
        assert client.get_blob(digest_of(b"payload")) == b"payload"

    def test_get_missing_blob(self, client):
        with pytest.raises(NotFound):
            client.get_blob(digest_of(b"absent"))

    def test_corrupt_blob_detected(self, client, fake_registry):
        """Test a blob served with a flipped byte fails verification."""
        digest = fake_registry.put_blob(REPO, b"payload")
        fake_registry.corrupt_blobs.add(digest)
        with pytest.raises(DigestMismatch):
            client.get_blob(digest_of(b"payload"))

    def test_transient_failures_retried(self, client, fake_registry):
        """Test 503s within the retry budget are absorbed."""
        fake_registry.put_blob(REPO, b"payload")
        fake_registry.fail("GET", count=2, path_contains="/blobs/")
        assert client.get_blob(digest_of(b"payload")) == b"payload"
        assert fake_registry.count("GET", "/blobs/") == 3

    def test_retry_budget_exhausted(self, client, fake_registry):
        """Test failures beyond the budget surface as TransientRegistryError."""
        fake_registry.put_blob(REPO, b"payload")
        fake_registry.fail("GET", count=3, path_contains="/blobs/")
        with pytest.raises(TransientRegistryError):
            client.get_blob(digest_of(b"payload"))

    def test_monolithic_retry_restarts_session(self, client, fake_registry):
        """Test a failed PUT restarts from a fresh upload session."""
        fake_registry.fail("PUT", count=1, path_contains="/blobs/uploads/")
        digest = client.push_blob(b"small blob")
        assert fake_registry.blobs[REPO][str(digest)] == b"small blob"
        assert fake_registry.count("POST") == 2

    def test_registry_error_codes(self, client, fake_registry):
        """Test non-transient errors carry the registry's error codes."""
        with pytest.raises(RegistryError) as exc_info:
            client.push_blob(b"content", digest=digest_of(b"other content"))
        assert not isinstance(exc_info.value, TransientRegistryError)
        assert exc_info.value.status_code == 400
        assert exc_info.value.codes == ["DIGEST_INVALID"]


class TestChunkedUpload:
    """Test chunked uploads and their recovery paths."""

    def test_chunked_upload(self, client, fake_registry):
        """Test large blobs are sent as sequential PATCH chunks."""
        digest = client.push_blob(LARGE)
        assert fake_registry.blobs[REPO][str(digest)] == LARGE
        assert fake_registry.count("PATCH") == 5

    def test_server_minimum_chunk_length(self, client, fake_registry):
        """Test OCI-Chunk-Min-Length raises the chunk size."""
        fake_registry.chunk_min_length = 2048
        client.push_blob(LARGE)
        assert fake_registry.count("PATCH") == 3

    def test_resume_after_lost_response(self, client, fake_registry):
        """Test a chunk applied by the registry but answered with 503 is not resent."""
        fake_registry.lose_patch_responses(1)
        digest = client.push_blob(LARGE)
        assert fake_registry.blobs[REPO][str(digest)] == LARGE
        assert fake_registry.count("GET", "/blobs/uploads/") == 1
        assert fake_registry.count("PATCH") == 5

    def test_resume_after_failed_chunk(self, client, fake_registry):
        """Test a rejected chunk is resent from the registry's offset."""
        fake_registry.fail("PATCH", count=1)
        digest = client.push_blob(LARGE)
        assert fake_registry.blobs[REPO][str(digest)] == LARGE
        assert fake_registry.count("PATCH") == 6

    def test_offset_mismatch(self, client, fake_registry):
        """Test a registry reporting the wrong offset aborts the upload."""
        fake_registry.offset_skew = -1
        with pytest.raises(UploadOffsetMismatch) as exc_info:
            client.push_blob(LARGE)
        assert exc_info.value.expected == 1024
        assert exc_info.value.actual == 1023
        assert fake_registry.count("PATCH") == 1
        assert str(digest_of(LARGE)) not in fake_registry.blobs.get(REPO, {})

    def test_upload_status(self, client, fake_registry):
        """Test querying an upload session reports bytes received."""
        upload = client._start_upload()
        assert client.upload_status(upload.url)[1] == 0
        client._patch_chunk(upload.url, LARGE, 0, 1024)
        url, offset = client.upload_status(upload.url)
        assert offset == 1024
        assert url == upload.url

    def test_single_byte_session_resumes_after_first_byte(self, settings, credentials, fake_registry):
        """Test `Range: 0-0` counts as one byte once the first byte was acknowledged."""
        tiny = dataclasses.replace(settings, chunk_size=1, chunked_threshold=2)
        fake_registry.fail("PATCH", after=1)
        with RegistrySession(tiny, credentials=credentials, transport=fake_registry.transport) as session:
            digest = session.client_for(NAME).push_blob(b"abc")
        assert fake_registry.blobs[REPO][str(digest)] == b"abc"
        assert fake_registry.count("GET", "/blobs/uploads/") == 1
        assert fake_registry.count("PATCH") == 4


class TestManifests:
    """Test manifest push, pull and resolution."""

    PAYLOAD = b'{"mediaType":"application/vnd.oci.image.manifest.v1+json","schemaVersion":2}'

    def test_push_and_get(self, client, fake_registry):
        """Test a pushed manifest comes back byte-identical."""
        digest = client.push_manifest(self.PAYLOAD, OCI_IMAGE_MANIFEST)
        assert fake_registry.tags[REPO]["tag1"] == str(digest)

        pulled_digest, payload, media_type = client.get_manifest()
        assert pulled_digest == digest == digest_of(self.PAYLOAD)
        assert payload == self.PAYLOAD
        assert media_type == OCI_IMAGE_MANIFEST

    def test_get_by_digest(self, client, fake_registry):
        digest = fake_registry.put_manifest(REPO, "tag1", self.PAYLOAD)
        pulled_digest, payload, _ = client.get_manifest(digest)
        assert str(pulled_digest) == digest
        assert payload == self.PAYLOAD

    def test_head_manifest(self, client, fake_registry):
        """Test HEAD resolves a tag without downloading the manifest."""
        digest = fake_registry.put_manifest(REPO, "tag1", self.PAYLOAD)
        assert str(client.head_manifest()) == digest
        assert fake_registry.count("GET", "/manifests/") == 0

    def test_head_manifest_falls_back_to_get(self, client, fake_registry):
        """Test registries omitting Docker-Content-Digest are resolved by GET."""
        digest = fake_registry.put_manifest(REPO, "tag1", self.PAYLOAD)
        fake_registry.omit_manifest_digest = True
        assert str(client.head_manifest()) == digest
        assert fake_registry.count("GET", "/manifests/") == 1

    def test_missing_manifest(self, client):
        with pytest.raises(NotFound):
            client.get_manifest("nope")
        with pytest.raises(NotFound):
            client.head_manifest("nope")

    def test_unsupported_media_type(self, client, fake_registry):
        """Test manifests of unknown type are refused."""
        fake_registry.put_manifest(REPO, "weird", b'{"schemaVersion":2}', "application/vnd.example+json")
        with pytest.raises(UnsupportedManifestType):
            client.get_manifest("weird")

    def test_manifest_digest_reference_verified(self, client, fake_registry):
        """Test bytes served for a digest reference must hash to it."""
        digest = fake_registry.put_manifest(REPO, "tag1", self.PAYLOAD)
        # Serve other bytes under the same digest
        fake_registry.manifests[REPO][digest] = (OCI_IMAGE_MANIFEST, self.PAYLOAD + b" ")
        with pytest.raises(DigestMismatch):
            client.get_manifest(digest)


class TestTags:
    """Test tag listing."""

    def test_list_tags(self, client, fake_registry):
        fake_registry.put_manifest(REPO, "tag1", b"{}")
        assert client.get_tags() == ["tag1"]

    def test_pagination(self, client, fake_registry):
        """Test Link rel="next" pages are followed."""
        for tag in ["e", "a", "d", "b", "c"]:
            fake_registry.put_manifest(REPO, tag, b"{}")
        fake_registry.tag_page_size = 2
        assert client.get_tags() == ["a", "b", "c", "d", "e"]
        assert fake_registry.count("GET", "/tags/list") == 3

    def test_unknown_repository(self, client):
        with pytest.raises(NotFound):
            client.get_tags()
