"""
Tests for canonical JSON, timestamps and file helpers.
"""

import pytest


class TestCanonicalJson:

    def test_sorted_and_compact(self):
        from minter.core import canonical_json_bytes

        assert canonical_json_bytes({"b": 1, "a": [True, None, "é"]}) == '{"a":[true,null,"é"],"b":1}'.encode()

    def test_floats_rejected(self):
        from minter.core import canonical_json_bytes

        with pytest.raises(ValueError, match=r"\.price"):
            canonical_json_bytes({"price": 1.5})

    def test_write_returns_digest(self, tmp_path):
        from minter.core import canonical_json_bytes, sha256_bytes, write_canonical_json

        path = tmp_path / "sub" / "doc.json"
        digest = write_canonical_json(path, {"x": 1})

        assert path.read_bytes() == b'{"x":1}\n'
        assert digest == sha256_bytes(canonical_json_bytes({"x": 1}))


class TestTimestamps:

    def test_source_date_epoch(self, monkeypatch):
        from minter.core import now_rfc3339

        monkeypatch.setenv("SOURCE_DATE_EPOCH", "0")
        assert now_rfc3339() == "1970-01-01T00:00:00Z"

    def test_bad_source_date_epoch(self, monkeypatch):
        from minter.core import now_rfc3339

        monkeypatch.setenv("SOURCE_DATE_EPOCH", "yesterday")
        with pytest.raises(ValueError):
            now_rfc3339()


class TestDocuments:

    def test_suffix_selects_parser(self, tmp_path):
        from minter.core import load_document

        (tmp_path / "a.json").write_text('{"k": [1, 2]}')
        (tmp_path / "a.yml").write_text("k:\n  - 1\n  - 2\n")
        assert load_document(tmp_path / "a.json") == load_document(tmp_path / "a.yml") == {"k": [1, 2]}


class TestCodecs:

    def test_b64url_without_padding(self):
        from minter.core import b64url_decode, b64url_encode

        assert b64url_encode(b"\xff\xfe") == "__4"
        assert b64url_decode("__4") == b"\xff\xfe"

    def test_b58_leading_zeros(self):
        from minter.core import b58decode

        assert b58decode("11") == b"\x00\x00"
        assert b58decode("1z") == b"\x00\x39"
        with pytest.raises(ValueError):
            b58decode("0OIl")
