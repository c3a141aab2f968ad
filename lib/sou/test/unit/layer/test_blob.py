import hashlib
import io

import pytest

from sou.layer.blob import Blob, LocalBlob, open_layer_file


class TestBlob:
    def test_opener_called_each_time(self):
        calls = []

        def opener():
            calls.append(1)
            return io.BytesIO(b"content")

        blob = Blob("sha256:abc", 7, opener)
        assert blob.diff_id == "sha256:abc"
        assert blob.size == 7
        assert calls == []
        assert blob.open().read() == b"content"
        assert blob.open().read() == b"content"
        assert len(calls) == 2
        assert repr(blob) == "<Blob sha256:abc (7 bytes)>"


class TestLocalBlob:
    @pytest.mark.parametrize("compression", [None, "gz", "xz", "bz2"])
    def test_from_path(self, sample_tar, make_layer_file, compression):
        path = make_layer_file(sample_tar, compression=compression)
        blob = LocalBlob.from_path(path)
        assert blob.path == path
        assert blob.diff_id == f"sha256:{hashlib.sha256(sample_tar).hexdigest()}"
        assert blob.size == len(sample_tar)
        with blob.open() as stream:
            assert stream.read() == sample_tar

    def test_same_content_same_id(self, sample_tar, make_layer_file):
        plain = LocalBlob.from_path(make_layer_file(sample_tar, "plain.tar"))
        packed = LocalBlob.from_path(
            make_layer_file(sample_tar, "packed.tar.gz", compression="gz")
        )
        assert plain.diff_id == packed.diff_id

    def test_known_diff_id(self, monkeypatch, sample_tar, make_layer_file):
        """A known diff ID is used without reading the layer content"""

        def no_digest(stream):
            raise AssertionError("the layer content was digested")

        monkeypatch.setattr("sou.layer.blob.digest_stream", no_digest)
        path = make_layer_file(sample_tar, "layer.tar.gz", compression="gz")
        blob = LocalBlob.from_path(path, "sha256:known")
        assert blob.diff_id == "sha256:known"
        assert blob.size == path.stat().st_size
        with blob.open() as stream:
            assert stream.read() == sample_tar

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LocalBlob.from_path(tmp_path / "missing.tar")

    def test_short_file(self, make_layer_file):
        """A file shorter than any compression signature is read as is"""
        path = make_layer_file(b"BZ", "short")
        with open_layer_file(path) as stream:
            assert stream.read() == b"BZ"
