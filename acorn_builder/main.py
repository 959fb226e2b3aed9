"""Command line entry point: ``acorn-builder build|fetch|test|status|preflight``."""

import argparse
import sys
from pathlib import Path

from acorn_builder.cache.store import RebuildCache
from acorn_builder.config.settings import get_path
from acorn_builder.exceptions import BuildError
from acorn_builder.harness.session import run_test
from acorn_builder.logging import get_logger, setup_logging
from acorn_builder.pipeline import BuildConfig, run_pipeline
from acorn_builder.preflight import run_preflight
from acorn_builder.recipes.engine import RecipeEngine
from acorn_builder.recipes.loader import load_recipes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acorn-builder", description="Build and boot-test AcornOS images"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (very verbose)")
    parser.add_argument("--cache-dir", type=Path, help="Cache directory (default from settings)")
    parser.add_argument("--log-dir", type=Path, help="Log directory")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Resolve inputs and build the ISO")
    build.add_argument("--recipes", type=Path, required=True, help="Recipe description (JSON)")
    build.add_argument("-o", "--output", type=Path, default=Path("output"), help="Output directory")
    build.add_argument("--rootfs-recipe", default="alpine-rootfs")
    build.add_argument("--kernel-recipe", default="linux-lts")
    build.add_argument("--kernel-path", default="boot/vmlinuz-lts")
    build.add_argument(
        "--modules-path", default="lib/modules", help="Kernel modules in the kernel recipe (\"\" if built in)"
    )
    build.add_argument("--busybox-recipe", default="busybox-static")
    build.add_argument("--busybox-path", default="")
    build.add_argument("--firmware-recipe", default="linux-firmware")
    build.add_argument("--keys-recipe", default="alpine-keys")
    build.add_argument("--label", help="ISO volume label")
    build.add_argument("--boot-test", action="store_true", help="Boot the finished ISO")
    build.add_argument(
        "-c", "--run", dest="commands", action="append", default=[], help="Command for the boot test"
    )
    build.add_argument("--timeout", type=float, help="Boot test timeout in seconds")

    fetch = subparsers.add_parser("fetch", help="Download and verify every recipe")
    fetch.add_argument("--recipes", type=Path, required=True, help="Recipe description (JSON)")

    test = subparsers.add_parser("test", help="Boot-test an existing image")
    test.add_argument("image", type=Path)
    test.add_argument("-c", "--run", dest="commands", action="append", default=[])
    test.add_argument("--timeout", type=float)

    status = subparsers.add_parser("status", help="Show cached recipes and stages")
    status.add_argument("--recipes", type=Path, required=True)

    preflight = subparsers.add_parser("preflight", help="Check host tools, disk space and network")
    preflight.add_argument(
        "--skip-network", action="store_true", help="Do not check that the Alpine mirror is reachable"
    )
    return parser


def _build(args, cache_dir: Path) -> int:
    config = BuildConfig(
        recipes=load_recipes(args.recipes),
        output_dir=args.output,
        rootfs_recipe=args.rootfs_recipe,
        kernel_recipe=args.kernel_recipe,
        kernel_path=args.kernel_path,
        modules_path=args.modules_path,
        busybox_recipe=args.busybox_recipe,
        busybox_path=args.busybox_path,
        firmware_recipe=args.firmware_recipe,
        keys_recipe=args.keys_recipe,
        iso_label=args.label,
        boot_test=args.boot_test,
        test_commands=list(args.commands),
        boot_timeout=args.timeout,
    )
    result = run_pipeline(config, cache_dir)
    for line in result.summary_lines():
        print(line)
    return 0 if result.ok else 1


def _fetch(args, cache_dir: Path) -> int:
    report = RecipeEngine(cache_dir=cache_dir).resolve_all(load_recipes(args.recipes))
    for name, resolved in sorted(report.resolved.items()):
        print(f"{name}: {resolved.path} ({resolved.source})")
    report.raise_for_failures()
    return 0


def _test(args) -> int:
    verdict = run_test(args.image, timeout=args.timeout, commands=args.commands)
    print(f"{verdict.status.value}: {verdict.reason or 'ready'} ({verdict.elapsed:.1f}s)")
    for result in verdict.transcript:
        print(f"$ {result.command}")
        for line in result.output:
            print(f"  {line}")
    return 0 if verdict.passed else 1


def _status(args, cache_dir: Path) -> int:
    engine = RecipeEngine(cache_dir=cache_dir)
    for status in engine.status(load_recipes(args.recipes)):
        marker = "[cached] " if status.cached else "[missing]"
        notes = f" ({', '.join(status.notes)})" if status.notes else ""
        print(f"{marker} {status.name} {status.digest.short}{notes}")
    with RebuildCache(cache_dir) as cache:
        for entry in cache.entries():
            state = "ok" if entry.outputs_exist() else "outputs missing"
            print(f"stage {entry.stage_id}: {entry.fingerprint[:12]} {state}")
    return 0


def _preflight(args, cache_dir: Path) -> int:
    report = run_preflight(cache_dir, check_mirrors=not args.skip_network)
    for line in report.summary_lines():
        print(line)
    return 0 if report.is_ok() else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = get_logger(source="cli")
    cache_dir = args.cache_dir or get_path("cache_dir")

    try:
        if args.command == "build":
            return _build(args, cache_dir)
        if args.command == "fetch":
            return _fetch(args, cache_dir)
        if args.command == "test":
            return _test(args)
        if args.command == "status":
            return _status(args, cache_dir)
        return _preflight(args, cache_dir)
    except BuildError as error:
        log.error(str(error))
        return 1


if __name__ == "__main__":
    sys.exit(main())
