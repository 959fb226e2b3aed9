"""Tests for RecipeEngine resolution and caching."""

import io
import json
import tarfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from acorn_builder.cache.store import RebuildCache
from acorn_builder.exceptions import (
    DependencyCycleError,
    DependencyFailedError,
    IntegrityError,
    MirrorsExhaustedError,
    ResolutionFailedError,
)
from acorn_builder.recipes.engine import META_FILE, RecipeEngine


def tarball(files):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            bundle.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.fixture
def engine_factory(tmp_path, fake_fetcher):
    def _make(responses, max_workers=2):
        fake_fetcher.responses.update(responses)
        return RecipeEngine(
            cache_dir=tmp_path / "cache", fetcher=fake_fetcher, max_workers=max_workers
        )

    return _make


class TestMirrorFallback:
    """Tests for trying sources in order."""

    def test_falls_back_to_second_mirror_then_reuses_cache(self, engine_factory, make_recipe):
        """First mirror unreachable, second serves the right bytes; next run fetches nothing."""
        recipe = make_recipe(
            "pkgtool",
            b"pkgtool",
            sources=["https://a.example/pkgtool", "https://b.example/pkgtool"],
        )
        engine = engine_factory({"https://b.example/pkgtool": b"pkgtool"})

        report = engine.resolve_all([recipe])

        resolved = report.resolved["pkgtool"]
        assert report.ok
        assert resolved.source == "https://b.example/pkgtool"
        assert resolved.path.read_bytes() == b"pkgtool"
        assert engine.fetcher.calls == ["https://a.example/pkgtool", "https://b.example/pkgtool"]

        engine.fetcher.calls.clear()
        again = engine.resolve_all([recipe])

        assert engine.fetcher.calls == []
        assert again.resolved["pkgtool"].from_cache
        assert again.resolved["pkgtool"].path == resolved.path

    def test_all_mirrors_unreachable(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", sources=["https://a/x", "https://b/x"])
        engine = engine_factory({})

        report = engine.resolve_all([recipe])

        error = report.failures["pkgtool"]
        assert isinstance(error, MirrorsExhaustedError)
        assert set(error.reasons) == {"https://a/x", "https://b/x"}
        assert not engine.entry_dir(recipe).exists()

    def test_env_override_is_tried_first(self, engine_factory, make_recipe, tmp_path, monkeypatch):
        local = tmp_path / "alpine.iso"
        local.write_bytes(b"local iso")
        recipe = make_recipe(
            "alpine-iso", b"local iso", sources=["https://a/alpine.iso"], env_override="ALPINE_ISO_PATH"
        )
        monkeypatch.setenv("ALPINE_ISO_PATH", str(local))
        engine = engine_factory({str(local.resolve()): b"local iso"})

        report = engine.resolve_all([recipe])

        assert report.resolved["alpine-iso"].source == str(local.resolve())
        assert engine.fetcher.calls == [str(local.resolve())]


class TestIntegrity:
    """Tests for digest verification."""

    def test_mismatch_on_every_mirror_fails_with_integrity_error(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"expected", sources=["https://a/x", "https://b/x"])
        engine = engine_factory({"https://a/x": b"tampered", "https://b/x": b"also tampered"})

        report = engine.resolve_all([recipe])

        error = report.failures["pkgtool"]
        assert isinstance(error, IntegrityError)
        assert error.expected == str(recipe.digest)
        assert error.source == "https://a/x"
        assert not engine.entry_dir(recipe).exists()
        assert list((engine.recipes_dir / "pkgtool").iterdir()) == []

    def test_mismatch_then_good_mirror_succeeds(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"expected", sources=["https://a/x", "https://b/x"])
        engine = engine_factory({"https://a/x": b"tampered", "https://b/x": b"expected"})

        report = engine.resolve_all([recipe])

        assert report.resolved["pkgtool"].source == "https://b/x"

    def test_corrupted_cache_entry_is_refetched(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"expected", sources=["https://a/x"])
        engine = engine_factory({"https://a/x": b"expected"})
        first = engine.resolve_all([recipe]).resolved["pkgtool"]
        first.artifact.write_bytes(b"bit rot")
        engine.fetcher.calls.clear()

        second = engine.resolve_all([recipe]).resolved["pkgtool"]

        assert engine.fetcher.calls == ["https://a/x"]
        assert second.artifact.read_bytes() == b"expected"

    def test_incomplete_entry_is_discarded(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"expected", sources=["https://a/x"])
        engine = engine_factory({"https://a/x": b"expected"})
        engine.entry_dir(recipe).mkdir(parents=True)

        report = engine.resolve_all([recipe])

        assert report.ok
        assert (engine.entry_dir(recipe) / META_FILE).exists()

    def test_raise_for_failures(self, engine_factory, make_recipe):
        engine = engine_factory({})
        report = engine.resolve_all([make_recipe("pkgtool")])

        with pytest.raises(ResolutionFailedError, match="pkgtool"):
            report.raise_for_failures()


class TestDependencies:
    """Tests for dependency ordering and failure propagation."""

    def test_failed_dependency_fails_dependents_only(self, engine_factory, make_recipe):
        base = make_recipe("base", b"base", sources=["https://a/base"])
        app = make_recipe("app", b"app", sources=["https://a/app"], depends_on=["base"])
        other = make_recipe("other", b"other", sources=["https://a/other"])
        engine = engine_factory({"https://a/app": b"app", "https://a/other": b"other"})

        report = engine.resolve_all([base, app, other])

        assert isinstance(report.failures["base"], MirrorsExhaustedError)
        assert isinstance(report.failures["app"], DependencyFailedError)
        assert report.failures["app"].dependency == "base"
        assert "other" in report.resolved
        assert "https://a/app" not in engine.fetcher.calls

    def test_cycle_rejected_before_fetching(self, engine_factory, make_recipe):
        first = make_recipe("a", depends_on=["b"])
        second = make_recipe("b", depends_on=["a"])
        engine = engine_factory({})

        with pytest.raises(DependencyCycleError):
            engine.resolve_all([first, second])

        assert engine.fetcher.calls == []

    def test_many_recipes_with_one_worker(self, engine_factory, make_recipe):
        recipes = [
            make_recipe(f"pkg{i}", f"pkg{i}".encode(), sources=[f"https://a/pkg{i}"]) for i in range(5)
        ]
        engine = engine_factory({f"https://a/pkg{i}": f"pkg{i}".encode() for i in range(5)}, max_workers=1)

        report = engine.resolve_all(recipes)

        assert sorted(report.resolved) == [f"pkg{i}" for i in range(5)]


class TestTransformsInCache:
    """Tests for transform outputs stored next to the artifact."""

    def test_transform_output_is_resolved_path(self, engine_factory, make_recipe):
        payload = tarball({"bin/tool": b"tool"})
        recipe = make_recipe(
            "tool", payload, sources=["https://a/tool.tar.gz"], transforms=[{"kind": "unpack"}]
        )
        engine = engine_factory({"https://a/tool.tar.gz": payload})

        resolved = engine.resolve_all([recipe]).resolved["tool"]

        assert resolved.path.name == "output"
        assert (resolved.path / "bin" / "tool").read_bytes() == b"tool"
        assert resolved.artifact.read_bytes() == payload

    def test_changed_transform_list_reruns_without_fetching(self, engine_factory, make_recipe):
        payload = tarball({"bin/tool": b"tool", "doc/readme": b"doc"})
        sources = ["https://a/tool.tar.gz"]
        engine = engine_factory({sources[0]: payload})
        engine.resolve_all([make_recipe("tool", payload, sources=sources, transforms=[{"kind": "unpack"}])])
        engine.fetcher.calls.clear()

        changed = make_recipe(
            "tool",
            payload,
            sources=sources,
            transforms=[{"kind": "unpack"}, {"kind": "filter", "include": ["bin/*"]}],
        )
        resolved = engine.resolve_all([changed]).resolved["tool"]

        assert engine.fetcher.calls == []
        assert (resolved.path / "bin" / "tool").exists()
        assert not (resolved.path / "doc").exists()
        meta = json.loads((engine.entry_dir(changed) / META_FILE).read_text())
        assert meta["transform_fingerprint"] == changed.transform_fingerprint()

    def test_transform_failure_leaves_no_entry(self, engine_factory, make_recipe):
        recipe = make_recipe(
            "blob", b"not an archive", sources=["https://a/blob.bin"], transforms=[{"kind": "unpack"}]
        )
        engine = engine_factory({"https://a/blob.bin": b"not an archive"})

        report = engine.resolve_all([recipe])

        assert "unsupported archive format" in str(report.failures["blob"])
        assert not engine.entry_dir(recipe).exists()


class TestStatusAndClear:
    """Tests for status() and clear()."""

    def test_status_reports_cached_and_missing(self, engine_factory, make_recipe):
        present = make_recipe("present", b"p", sources=["https://a/p"])
        missing = make_recipe("missing", b"m", sources=["https://a/m"])
        engine = engine_factory({"https://a/p": b"p"})
        engine.resolve_all([present])

        statuses = {status.name: status for status in engine.status([present, missing])}

        assert statuses["present"].cached is True
        assert statuses["present"].path == engine.entry_dir(present)
        assert statuses["missing"].cached is False
        assert engine.fetcher.calls == ["https://a/p"]

    def test_status_notes_env_override(self, engine_factory, make_recipe, monkeypatch):
        recipe = make_recipe("alpine-iso", env_override="ALPINE_ISO_PATH")
        monkeypatch.setenv("ALPINE_ISO_PATH", "/tmp/alpine.iso")

        status = engine_factory({}).status([recipe])[0]

        assert status.notes == ["ALPINE_ISO_PATH set"]

    def test_clear_single_recipe(self, engine_factory, make_recipe):
        first = make_recipe("first", b"1", sources=["https://a/1"])
        second = make_recipe("second", b"2", sources=["https://a/2"])
        engine = engine_factory({"https://a/1": b"1", "https://a/2": b"2"})
        engine.resolve_all([first, second])

        engine.clear("first")

        assert not (engine.recipes_dir / "first").exists()
        assert (engine.recipes_dir / "second").exists()


class TestConcurrentInvocations:
    """Tests for invocations sharing one cache directory."""

    def test_two_engines_fetch_each_artifact_once(self, engine_factory, make_recipe):
        """Both invocations end up with the same entry; only one reaches the mirror."""
        recipe = make_recipe("pkgtool", b"pkgtool", sources=["https://a/pkgtool"])
        first = engine_factory({"https://a/pkgtool": b"pkgtool"})
        second = engine_factory({})
        first.fetcher.delay = 0.2

        with ThreadPoolExecutor(max_workers=2) as pool:
            reports = list(pool.map(lambda engine: engine.resolve_all([recipe]), [first, second]))

        assert first.fetcher.calls == ["https://a/pkgtool"]
        resolved = [report.resolved["pkgtool"] for report in reports]
        assert resolved[0].path == resolved[1].path
        assert resolved[0].path.read_bytes() == b"pkgtool"
        assert sorted(item.from_cache for item in resolved) == [False, True]

    def test_engine_uses_the_given_cache(self, tmp_path, fake_fetcher, make_recipe):
        fake_fetcher.responses["https://a/x"] = b"x"
        with RebuildCache(tmp_path / "shared") as cache:
            engine = RecipeEngine(cache=cache, fetcher=fake_fetcher)
            report = engine.resolve_all([make_recipe("pkgtool", b"x", sources=["https://a/x"])])

            assert cache.is_open

        assert report.ok
        assert engine.cache_dir == tmp_path / "shared"
        assert (tmp_path / "shared" / "locks" / "recipe_pkgtool.lock").exists()

    def test_install_keeps_a_valid_existing_entry(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"pkgtool", sources=["https://a/x"])
        engine = engine_factory({"https://a/x": b"pkgtool"})
        resolved = engine.resolve_all([recipe]).resolved["pkgtool"]
        entry = engine.entry_dir(recipe)
        (entry / "in-use").write_text("held by another build")
        tmp = entry.parent / ".tmp-late"
        (tmp / "artifact").mkdir(parents=True)
        (tmp / "artifact" / recipe.artifact_name).write_bytes(b"pkgtool")

        assert engine._install(recipe, tmp, entry) is False
        assert (entry / "in-use").exists()
        assert resolved.path.read_bytes() == b"pkgtool"

    def test_install_replaces_a_corrupted_entry(self, engine_factory, make_recipe):
        recipe = make_recipe("pkgtool", b"pkgtool", sources=["https://a/x"])
        engine = engine_factory({"https://a/x": b"pkgtool"})
        resolved = engine.resolve_all([recipe]).resolved["pkgtool"]
        resolved.artifact.write_bytes(b"bit rot")
        tmp = engine.entry_dir(recipe).parent / ".tmp-repair"
        (tmp / "artifact").mkdir(parents=True)
        (tmp / "artifact" / recipe.artifact_name).write_bytes(b"pkgtool")

        assert engine._install(recipe, tmp, engine.entry_dir(recipe)) is True
        assert resolved.artifact.read_bytes() == b"pkgtool"
        assert not tmp.exists()
