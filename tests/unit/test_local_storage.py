"""Tests for LocalStorageProvider."""

import os
import tempfile

import pytest

from news_ingest.storage.base import ContentType
from news_ingest.storage.factory import get_storage_provider, reset_storage_provider, set_storage_provider
from news_ingest.storage.local_provider import LocalStorageProvider


class TestPathTraversal:
    """Verify _get_path rejects path traversal attempts."""

    def setup_method(self):
        self.tmpdir = os.path.realpath(tempfile.mkdtemp())
        self.provider = LocalStorageProvider(base_path=self.tmpdir)

    def test_traversal_with_dotdot(self):
        with pytest.raises(ValueError, match="Path traversal detected"):
            self.provider._get_path("../../../etc/passwd")

    def test_traversal_with_absolute(self):
        with pytest.raises(ValueError, match="Path traversal detected"):
            self.provider._get_path("/etc/passwd")

    def test_normal_key_succeeds(self):
        path = self.provider._get_path("images/borsa-1a2b3c4d.jpg")
        assert str(path).startswith(self.tmpdir)


class TestLocalStorageProvider:
    """Round trip through the filesystem provider."""

    @pytest.fixture
    def provider(self, tmp_path):
        return LocalStorageProvider(base_path=str(tmp_path), url_prefix="/static/")

    def test_upload_download_metadata(self, provider):
        meta = provider.upload(
            "images/a-12345678.webp",
            b"bytes",
            ContentType.IMAGE_WEBP,
            {"originalUrl": "https://x.test/a.png"},
        )
        assert meta.url == "/static/images/a-12345678.webp"
        assert meta.size_bytes == 5

        obj = provider.download("images/a-12345678.webp")
        assert obj.content == b"bytes"
        assert obj.metadata.content_type == ContentType.IMAGE_WEBP
        assert obj.metadata.custom_metadata == {"originalUrl": "https://x.test/a.png"}

    def test_missing_key(self, provider):
        assert provider.download("images/missing.jpg") is None
        assert provider.get_metadata("images/missing.jpg") is None
        assert provider.exists("images/missing.jpg") is False

    def test_missing_sidecar_infers_type_from_key(self, provider, tmp_path):
        provider.upload("images/b-87654321.png", b"png-bytes", ContentType.IMAGE_PNG)
        (tmp_path / "images" / "b-87654321.png.meta.json").unlink()

        obj = provider.download("images/b-87654321.png")
        assert obj.metadata.content_type == ContentType.IMAGE_PNG
        assert obj.metadata.size_bytes == 9
        assert provider.get_metadata("images/b-87654321.png") is None

    def test_delete_and_list(self, provider):
        provider.upload("images/one.jpg", b"1")
        provider.upload("images/two.jpg", b"2")
        provider.upload("other/three.jpg", b"3")

        assert provider.list_all() == ["images/one.jpg", "images/two.jpg"]
        assert provider.delete("images/one.jpg") is True
        assert provider.delete("images/one.jpg") is False
        assert provider.list_all("images/") == ["images/two.jpg"]


class TestFactory:
    """Tests for the provider singleton."""

    def teardown_method(self):
        reset_storage_provider()

    def test_local_by_name(self, tmp_path):
        reset_storage_provider()
        provider = get_storage_provider("local", base_path=str(tmp_path))
        assert provider.name == "local"
        assert get_storage_provider() is provider

    def test_set_provider(self, tmp_path):
        custom = LocalStorageProvider(base_path=str(tmp_path))
        set_storage_provider(custom)
        assert get_storage_provider() is custom

    def test_unknown_provider(self):
        reset_storage_provider()
        with pytest.raises(ValueError, match="Unknown storage provider"):
            get_storage_provider("ftp")
