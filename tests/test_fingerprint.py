"""Tests for digest and fingerprint helpers."""

import hashlib

from acorn_builder.cache.fingerprint import (
    bytes_digest,
    canonical_json,
    compute_fingerprint,
    file_digest,
)


class TestDigests:
    """Tests for file_digest() and bytes_digest()."""

    def test_file_digest_matches_hashlib(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"x" * (3 * 1024 * 1024 + 7))

        assert file_digest(path) == hashlib.sha256(path.read_bytes()).hexdigest()

    def test_file_digest_other_algorithm(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"data")

        assert file_digest(path, "sha512") == hashlib.sha512(b"data").hexdigest()

    def test_bytes_digest(self):
        assert bytes_digest(b"abc") == hashlib.sha256(b"abc").hexdigest()


class TestComputeFingerprint:
    """Tests for compute_fingerprint()."""

    def test_stable_for_same_inputs(self):
        first = compute_fingerprint("iso", {"label": "ACORNOS"}, ["a", "b"])
        second = compute_fingerprint("iso", {"label": "ACORNOS"}, ["a", "b"])

        assert first == second

    def test_param_key_order_irrelevant(self):
        first = compute_fingerprint("iso", {"a": 1, "b": 2})
        second = compute_fingerprint("iso", {"b": 2, "a": 1})

        assert first == second

    def test_input_order_matters(self):
        assert compute_fingerprint("s", inputs=["a", "b"]) != compute_fingerprint(
            "s", inputs=["b", "a"]
        )

    def test_stage_id_and_params_matter(self):
        base = compute_fingerprint("squashfs", {"comp": "zstd"})

        assert base != compute_fingerprint("initramfs", {"comp": "zstd"})
        assert base != compute_fingerprint("squashfs", {"comp": "xz"})

    def test_upstream_change_propagates(self):
        """A changed leaf fingerprint changes every fingerprint built on it."""
        leaf_v1 = compute_fingerprint("recipe:kernel", {"digest": "sha256:1"})
        leaf_v2 = compute_fingerprint("recipe:kernel", {"digest": "sha256:2"})
        middle_v1 = compute_fingerprint("rootfs", inputs=[leaf_v1])
        middle_v2 = compute_fingerprint("rootfs", inputs=[leaf_v2])

        assert middle_v1 != middle_v2
        assert compute_fingerprint("iso", inputs=[middle_v1]) != compute_fingerprint(
            "iso", inputs=[middle_v2]
        )

    def test_canonical_json_is_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'
