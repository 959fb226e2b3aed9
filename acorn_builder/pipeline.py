"""Build-and-verify pipeline: the stage graph and its walk.

Stages run sequentially in dependency order. Every stage after ``resolve``
goes through the RebuildCache with a fingerprint composed from its own
parameters and the fingerprints of its inputs. A failed stage marks all of its
dependents as skipped; unrelated stages still run, and the final result lists
every failure. A recipe that fails to resolve skips only the stages that
consume it.

The rootfs stage reports the fingerprint of the composed tree rather than of
its inputs, so an input change that leaves the tree identical stops there.

Stage graph:
    resolve -> rootfs -> rootfs-squashfs -+
    resolve -> initramfs -----------------+-> iso -> boot-test
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from acorn_builder.artifacts.generators import (
    InitramfsGenerator,
    IsoGenerator,
    SquashfsGenerator,
    write_checksum,
)
from acorn_builder.cache.fingerprint import compute_fingerprint
from acorn_builder.cache.store import RebuildCache
from acorn_builder.compose.definitions import (
    default_components,
    initramfs_components,
    iso_root_components,
    verify_apk_keys,
)
from acorn_builder.compose.engine import compose
from acorn_builder.compose.operations import Component
from acorn_builder.config.settings import get_setting
from acorn_builder.domain.models import Recipe, ResolvedInput
from acorn_builder.exceptions import BuildError, ConfigurationError, InputUnavailableError
from acorn_builder.harness.session import Verdict, run_test
from acorn_builder.logging import LoggerFactory, operation_context
from acorn_builder.ordering import dependents_of, validate_order
from acorn_builder.recipes.engine import RecipeEngine

log = LoggerFactory.for_pipeline()

BUILT = "built"
REUSED = "reused"
FAILED = "failed"
SKIPPED = "skipped"
TESTED = "tested"

STAGES: dict[str, tuple[str, ...]] = {
    "resolve": (),
    "rootfs": ("resolve",),
    "rootfs-squashfs": ("rootfs",),
    "initramfs": ("resolve",),
    "iso": ("rootfs-squashfs", "initramfs"),
    "boot-test": ("iso",),
}


@dataclass
class BuildConfig:
    """What to build and where.

    ``kernel_path``, ``busybox_path`` and the other ``*_path`` fields are
    relative to the resolved recipe output; an empty file path means the output
    itself is the file. An empty ``modules_path`` means the kernel has every
    boot module built in. Firmware and signing keys are used only when their
    recipes are declared.
    """

    recipes: list[Recipe]
    output_dir: Path
    work_dir: Path | None = None
    rootfs_recipe: str = "alpine-rootfs"
    kernel_recipe: str = "linux-lts"
    kernel_path: str = "boot/vmlinuz-lts"
    modules_path: str = "lib/modules"
    busybox_recipe: str = "busybox-static"
    busybox_path: str = ""
    firmware_recipe: str = "linux-firmware"
    firmware_path: str = "lib/firmware"
    keys_recipe: str = "alpine-keys"
    keys_path: str = "etc/apk/keys"
    iso_name: str = "acornos.iso"
    iso_label: str | None = None
    boot_test: bool = False
    test_commands: list[str] = field(default_factory=list)
    boot_timeout: float | None = None

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        self.work_dir = Path(self.work_dir) if self.work_dir else self.output_dir / "staging"
        self.iso_label = self.iso_label or get_setting("iso_label", "ACORNOS")


@dataclass
class StageResult:
    stage: str
    status: str
    reason: str = ""
    outputs: tuple[Path, ...] = ()
    fingerprint: str | None = None


@dataclass
class PipelineResult:
    stages: list[StageResult] = field(default_factory=list)
    verdict: Verdict | None = None
    recipe_failures: dict[str, str] = field(default_factory=dict)

    @property
    def failed(self) -> list[StageResult]:
        return [stage for stage in self.stages if stage.status == FAILED]

    @property
    def skipped(self) -> list[StageResult]:
        return [stage for stage in self.stages if stage.status == SKIPPED]

    @property
    def ok(self) -> bool:
        if self.failed or self.skipped or self.recipe_failures:
            return False
        return self.verdict is None or self.verdict.passed

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    def summary_lines(self) -> list[str]:
        lines = []
        for result in self.stages:
            line = f"{result.stage:<16} {result.status}"
            if result.reason:
                line += f" ({result.reason})"
            lines.append(line)
        for name, error in sorted(self.recipe_failures.items()):
            lines.append(f"recipe {name} failed: {error}")
        if self.verdict is not None:
            line = f"boot test verdict: {self.verdict.status.value}"
            if self.verdict.reason:
                line += f" ({self.verdict.reason})"
            lines.append(line)
        return lines


@dataclass
class _StageOutput:
    outputs: tuple[Path, ...]
    fingerprint: str | None
    rebuilt: bool
    status: str | None = None
    reason: str = ""


class Pipeline:
    """Walk the stage graph for one BuildConfig."""

    def __init__(
        self,
        config: BuildConfig,
        cache: RebuildCache,
        engine: RecipeEngine | None = None,
        squashfs: SquashfsGenerator | None = None,
        initramfs: InitramfsGenerator | None = None,
        iso: IsoGenerator | None = None,
        test_runner: Callable[..., Verdict] = run_test,
    ):
        self.config = config
        self.cache = cache
        self.engine = engine or RecipeEngine(cache=cache)
        self.squashfs = squashfs or SquashfsGenerator()
        self.initramfs = initramfs or InitramfsGenerator()
        self.iso = iso or IsoGenerator(label=config.iso_label)
        self.test_runner = test_runner
        self.inputs: dict[str, ResolvedInput] = {}
        self.input_failures: dict[str, BuildError] = {}
        self.fingerprints: dict[str, str] = {}
        self.outputs: dict[str, tuple[Path, ...]] = {}
        self.verdict: Verdict | None = None

    def stage_graph(self) -> dict[str, tuple[str, ...]]:
        graph = dict(STAGES)
        if not self.config.boot_test:
            graph.pop("boot-test")
        return graph

    def run(self, stages: Sequence[str] | None = None) -> PipelineResult:
        """Run the pipeline up to and including ``stages`` (all by default).

        Raises:
            ConfigurationError: Unknown stage requested or invalid stage graph
        """
        graph = self.stage_graph()
        order = validate_order(graph, kind="stage")
        if stages is not None:
            wanted = set()
            for name in stages:
                if name not in graph:
                    raise ConfigurationError(f"Unknown stage {name}")
                wanted.add(name)
                wanted.update(_ancestors(graph, name))
            order = [name for name in order if name in wanted]

        result = PipelineResult()
        blocked: dict[str, str] = {}
        for name in order:
            if name in blocked:
                reason = f"blocked by {blocked[name]}"
                log.warning(f"Stage {name} skipped: {reason}")
                result.stages.append(StageResult(name, SKIPPED, reason))
                continue
            try:
                produced = getattr(self, "_stage_" + name.replace("-", "_"))()
            except InputUnavailableError as error:
                reason = f"blocked by recipe {error.recipe_name}"
                log.warning(f"Stage {name} skipped: {reason}")
                result.stages.append(StageResult(name, SKIPPED, reason))
                for dependent in dependents_of(graph, name):
                    blocked.setdefault(dependent, name)
                continue
            except BuildError as error:
                log.error(f"Stage {name} failed: {error}")
                result.stages.append(StageResult(name, FAILED, str(error)))
                for dependent in dependents_of(graph, name):
                    blocked.setdefault(dependent, name)
                continue
            self.outputs[name] = produced.outputs
            if produced.fingerprint is not None:
                self.fingerprints[name] = produced.fingerprint
            result.stages.append(
                StageResult(
                    name,
                    produced.status or (BUILT if produced.rebuilt else REUSED),
                    produced.reason,
                    outputs=produced.outputs,
                    fingerprint=produced.fingerprint,
                )
            )
        result.verdict = self.verdict
        result.recipe_failures = {name: str(error) for name, error in self.input_failures.items()}
        if result.ok:
            log.success(f"Pipeline finished: {len(result.stages)} stages ok")
        else:
            log.error(
                f"Pipeline finished with {len(result.failed)} failed and "
                f"{len(result.skipped)} skipped stages"
            )
        return result

    # ==========================================================================
    # Stages
    # ==========================================================================

    def _declared(self, recipe_name: str) -> bool:
        return recipe_name in self.inputs or recipe_name in self.input_failures

    def _input(self, recipe_name: str) -> ResolvedInput:
        """The resolved recipe a stage consumes.

        Raises:
            InputUnavailableError: The recipe failed to resolve
            ConfigurationError: The recipe is not declared
        """
        failure = self.input_failures.get(recipe_name)
        if failure is not None:
            raise InputUnavailableError(recipe_name, failure)
        resolved = self.inputs.get(recipe_name)
        if resolved is None:
            raise ConfigurationError(f"Recipe {recipe_name} is not declared")
        return resolved

    def _input_file(self, recipe_name: str, relative: str) -> Path:
        resolved = self._input(recipe_name)
        path = resolved.path / relative if relative else resolved.path
        if not path.is_file():
            raise ConfigurationError(f"Recipe {recipe_name} does not provide {relative or 'a file'}")
        return path

    def _input_dir(self, recipe_name: str, relative: str) -> Path:
        path = self._input(recipe_name).path / relative
        if not path.is_dir():
            raise ConfigurationError(f"Recipe {recipe_name} does not provide {relative}/")
        return path

    def _run_cached(
        self, stage_id: str, fingerprint: str, build: Callable[[], Path | Sequence[Path]]
    ) -> _StageOutput:
        run = self.cache.run_stage(stage_id, fingerprint, build)
        return _StageOutput(run.outputs, fingerprint, run.rebuilt)

    @staticmethod
    def _components_fingerprint(stage_id: str, params: dict, inputs: list[str], components: list[Component]) -> str:
        return compute_fingerprint(
            stage_id, params, inputs + [component.fingerprint() for component in components]
        )

    def _stage_resolve(self) -> _StageOutput:
        report = self.engine.resolve_all(self.config.recipes)
        self.inputs = dict(report.resolved)
        self.input_failures = dict(report.failures)
        rebuilt = any(not resolved.from_cache for resolved in self.inputs.values())
        outputs = tuple(resolved.path for resolved in self.inputs.values())
        if self.input_failures:
            names = ", ".join(sorted(self.input_failures))
            log.error(f"Recipes failed to resolve: {names}")
            return _StageOutput(
                outputs, None, rebuilt, status=FAILED, reason=f"failed recipes: {names}"
            )
        return _StageOutput(outputs, None, rebuilt)

    def _stage_rootfs(self) -> _StageOutput:
        config = self.config
        base = self._input(config.rootfs_recipe)
        used = [base]
        modules_root = firmware_root = keys_root = None
        if config.modules_path:
            modules_root = self._input_dir(config.kernel_recipe, config.modules_path)
            used.append(self._input(config.kernel_recipe))
        if self._declared(config.firmware_recipe):
            firmware_root = self._input_dir(config.firmware_recipe, config.firmware_path)
            used.append(self._input(config.firmware_recipe))
        if self._declared(config.keys_recipe):
            keys_root = self._input_dir(config.keys_recipe, config.keys_path)
            used.append(self._input(config.keys_recipe))
        required_keys = sorted(get_setting("apk_required_keys", []) or [])
        components = default_components(base.path, modules_root, firmware_root, keys_root)
        fingerprint = self._components_fingerprint(
            "rootfs",
            {"required_keys": required_keys},
            [resolved.fingerprint for resolved in used],
            components,
        )
        root = config.work_dir / "rootfs"
        marker = config.work_dir / "rootfs.tree-fingerprint"

        def build() -> list[Path]:
            tree = compose(components)
            tree.materialize(root)
            if keys_root is not None or required_keys:
                verify_apk_keys(root, required_keys)
            marker.write_text(tree.fingerprint(), encoding="utf-8")
            return [root, marker]

        produced = self._run_cached("rootfs", fingerprint, build)
        # downstream stages key on the tree content, not on the inputs
        produced.fingerprint = produced.outputs[1].read_text(encoding="utf-8").strip()
        return produced

    def _stage_rootfs_squashfs(self) -> _StageOutput:
        rootfs = self.outputs["rootfs"][0]
        fingerprint = compute_fingerprint(
            self.squashfs.stage_id, self.squashfs.params(), [self.fingerprints["rootfs"]]
        )
        output = self.config.output_dir / "filesystem.squashfs"
        return self._run_cached(
            self.squashfs.stage_id, fingerprint, lambda: self.squashfs.generate(rootfs, output)
        )

    def _stage_initramfs(self) -> _StageOutput:
        config = self.config
        used = [self._input(config.busybox_recipe)]
        busybox = self._input_file(config.busybox_recipe, config.busybox_path)
        modules_root = None
        if config.modules_path:
            modules_root = self._input_dir(config.kernel_recipe, config.modules_path)
            used.append(self._input(config.kernel_recipe))
        components = initramfs_components(busybox, config.iso_label, modules_root)
        fingerprint = self._components_fingerprint(
            self.initramfs.stage_id,
            self.initramfs.params(),
            [resolved.fingerprint for resolved in used],
            components,
        )
        root = self.config.work_dir / "initramfs"
        output = self.config.output_dir / "initramfs.img"

        def build() -> Path:
            compose(components).materialize(root, essentials=())
            return self.initramfs.generate(root, output)

        return self._run_cached(self.initramfs.stage_id, fingerprint, build)

    def _stage_iso(self) -> _StageOutput:
        kernel_input = self._input(self.config.kernel_recipe)
        kernel = self._input_file(self.config.kernel_recipe, self.config.kernel_path)
        (squashfs,) = self.outputs["rootfs-squashfs"]
        (initramfs,) = self.outputs["initramfs"]
        components = iso_root_components(kernel, initramfs, squashfs, self.config.iso_label)
        fingerprint = self._components_fingerprint(
            self.iso.stage_id,
            self.iso.params(),
            [
                kernel_input.fingerprint,
                self.fingerprints["initramfs"],
                self.fingerprints["rootfs-squashfs"],
            ],
            components,
        )
        root = self.config.work_dir / "iso"
        output = self.config.output_dir / self.config.iso_name

        def build() -> list[Path]:
            compose(components).materialize(root, essentials=())
            image = self.iso.generate(root, output)
            return [image, write_checksum(image)]

        return self._run_cached(self.iso.stage_id, fingerprint, build)

    def _stage_boot_test(self) -> _StageOutput:
        image = self.outputs["iso"][0]
        self.verdict = self.test_runner(
            image, timeout=self.config.boot_timeout, commands=self.config.test_commands
        )
        return _StageOutput((image,), None, rebuilt=False, status=TESTED)


def _ancestors(graph: dict[str, tuple[str, ...]], name: str) -> set[str]:
    found: set[str] = set()
    pending = list(graph[name])
    while pending:
        current = pending.pop()
        if current not in found:
            found.add(current)
            pending.extend(graph[current])
    return found


def run_pipeline(config: BuildConfig, cache_dir: Path | None = None, **components) -> PipelineResult:
    """Open the rebuild cache, run every stage and close the cache again."""
    with operation_context("build", output=str(config.output_dir)) as build_log:
        with RebuildCache(cache_dir) as cache:
            result = Pipeline(config, cache, **components).run()
        if not result.ok:
            build_log.warning(f"{len(result.failed)} failed, {len(result.skipped)} skipped")
        return result
