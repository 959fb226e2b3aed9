"""Post-fetch transform steps: unpack, filter, flatten, executable.

Transforms run against a fresh working directory that the recipe engine later
moves into the cache. They never touch the verified artifact itself.
"""

from __future__ import annotations

import fnmatch
import os
import shutil
import stat
import tarfile
import uuid
import zipfile
from pathlib import Path, PurePosixPath
from typing import Mapping

from acorn_builder.artifacts.command_runners import run_checked_command
from acorn_builder.domain import Recipe, ResolvedInput, TransformKind, TransformStep
from acorn_builder.exceptions import GeneratorError, TransformError
from acorn_builder.logging import LoggerFactory

log = LoggerFactory.for_recipes(job_id="transforms")

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".apk")


def apply_transforms(
    recipe: Recipe,
    artifact: Path,
    workdir: Path,
    tools: Mapping[str, ResolvedInput] | None = None,
) -> Path:
    """Apply every transform step of ``recipe`` and return the output directory.

    Args:
        recipe: Recipe whose steps to run
        artifact: Verified artifact to start from
        workdir: Empty directory that receives the output
        tools: Resolved inputs of recipes named as transform tools

    Raises:
        TransformError: Any step failed
    """
    tools = tools or {}
    workdir.mkdir(parents=True, exist_ok=True)
    steps = list(recipe.transforms)
    if not steps or steps[0].kind is not TransformKind.UNPACK:
        shutil.copy2(artifact, workdir / recipe.artifact_name)

    for index, step in enumerate(steps):
        label = f"{index}:{step.kind.value}"
        log.debug(f"Applying transform {label} to {recipe.name}")
        try:
            if step.kind is TransformKind.UNPACK:
                _unpack(recipe, step, artifact, workdir, tools)
            elif step.kind is TransformKind.FILTER:
                _filter(step, workdir)
            elif step.kind is TransformKind.FLATTEN:
                _flatten(step, workdir)
            elif step.kind is TransformKind.EXECUTABLE:
                _make_executable(recipe, step, workdir)
        except TransformError:
            raise
        except (OSError, tarfile.TarError, zipfile.BadZipFile, ValueError) as error:
            raise TransformError(recipe.name, label, str(error)) from error
        except GeneratorError as error:
            raise TransformError(recipe.name, label, error.diagnostic) from error
    return workdir


def _within(root: Path, relative: str, recipe_name: str, step: str) -> Path:
    parts = PurePosixPath(relative).parts
    if PurePosixPath(relative).is_absolute() or ".." in parts:
        raise TransformError(recipe_name, step, f"path escapes output directory: {relative}")
    return root.joinpath(*parts) if parts else root


def _unpack(
    recipe: Recipe,
    step: TransformStep,
    artifact: Path,
    workdir: Path,
    tools: Mapping[str, ResolvedInput],
) -> None:
    archive = artifact
    if step.option("archive"):
        archive = _within(workdir, step.option("archive"), recipe.name, "unpack")
    dest = _within(workdir, step.option("into", "."), recipe.name, "unpack")
    dest.mkdir(parents=True, exist_ok=True)

    if step.tool:
        _unpack_with_tool(recipe, step, archive, dest, tools)
        return

    name = archive.name.lower()
    if name.endswith(".zip"):
        with zipfile.ZipFile(archive) as bundle:
            bundle.extractall(dest)
    elif name.endswith(TAR_SUFFIXES) or tarfile.is_tarfile(archive):
        # apk packages are concatenated gzip'd tar streams
        with tarfile.open(archive, "r:*", ignore_zeros=name.endswith(".apk")) as bundle:
            _extract_tar(recipe, bundle, dest)
    else:
        raise TransformError(recipe.name, "unpack", f"unsupported archive format: {archive.name}")

    if archive.parent == workdir and archive != artifact:
        archive.unlink()


def _extract_tar(recipe: Recipe, bundle: tarfile.TarFile, dest: Path) -> None:
    members = bundle.getmembers()
    for member in members:
        parts = PurePosixPath(member.name).parts
        if ".." in parts:
            raise TransformError(recipe.name, "unpack", f"unsafe archive member: {member.name}")
        if member.isdev():
            raise TransformError(recipe.name, "unpack", f"device node in archive: {member.name}")
    if hasattr(tarfile, "tar_filter"):
        bundle.extractall(dest, members=members, filter="tar")
    else:
        for member in members:
            member.name = member.name.lstrip("/")
        bundle.extractall(dest, members=members)


def _unpack_with_tool(
    recipe: Recipe,
    step: TransformStep,
    archive: Path,
    dest: Path,
    tools: Mapping[str, ResolvedInput],
) -> None:
    tool_input = tools.get(step.tool)
    if tool_input is None:
        raise TransformError(recipe.name, "unpack", f"tool recipe {step.tool} is not resolved")
    executable = tool_input.path
    if step.option("tool_path"):
        executable = _within(tool_input.path, step.option("tool_path"), recipe.name, "unpack")
    if not executable.is_file():
        raise TransformError(recipe.name, "unpack", f"tool executable not found: {executable}")
    args = step.option("args") or ["{archive}", "{dest}"]
    command = [str(executable)] + [
        str(arg).format(archive=archive, dest=dest) for arg in args
    ]
    run_checked_command(command, stage_id=f"recipe:{recipe.name}")


def _filter(step: TransformStep, workdir: Path) -> None:
    include = step.option("include") or []
    exclude = step.option("exclude") or []
    for path in sorted(workdir.rglob("*"), reverse=True):
        if path.is_dir() and not path.is_symlink():
            continue
        relative = path.relative_to(workdir).as_posix()
        keep = not include or any(fnmatch.fnmatchcase(relative, pattern) for pattern in include)
        if keep and any(fnmatch.fnmatchcase(relative, pattern) for pattern in exclude):
            keep = False
        if not keep:
            path.unlink()
    _prune_empty_dirs(workdir)


def _prune_empty_dirs(root: Path) -> None:
    for current, _dirs, _files in os.walk(root, topdown=False):
        path = Path(current)
        if path != root and not any(path.iterdir()):
            path.rmdir()


def _flatten(step: TransformStep, workdir: Path) -> None:
    levels = int(step.option("strip_components", 1))
    for _ in range(levels):
        entries = list(workdir.iterdir())
        if len(entries) != 1 or not entries[0].is_dir() or entries[0].is_symlink():
            names = ", ".join(sorted(entry.name for entry in entries)) or "nothing"
            raise ValueError(f"expected a single top-level directory, found {names}")
        holder = workdir / f".flatten-{uuid.uuid4().hex[:8]}"
        entries[0].rename(holder)
        for child in holder.iterdir():
            child.rename(workdir / child.name)
        holder.rmdir()


def _make_executable(recipe: Recipe, step: TransformStep, workdir: Path) -> None:
    for relative in step.option("paths") or []:
        target = _within(workdir, relative, recipe.name, "executable")
        if not target.is_file():
            raise ValueError(f"cannot mark missing file executable: {relative}")
        mode = target.stat().st_mode
        target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
