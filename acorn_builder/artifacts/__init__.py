"""Thin wrappers around the external image generators.

Command Execution:
    - run_checked_command(): Run a command and check the result
    - run_checked_to_file(): Run a command with stdout redirected to a file

Generators:
    - SquashfsGenerator, InitramfsGenerator, IsoGenerator
"""

from .command_runners import run_checked_command, run_checked_to_file
from .generators import (
    ImageGenerator,
    InitramfsGenerator,
    IsoGenerator,
    SquashfsGenerator,
    write_checksum,
)


__all__ = [
    "ImageGenerator",
    "InitramfsGenerator",
    "IsoGenerator",
    "SquashfsGenerator",
    "run_checked_command",
    "run_checked_to_file",
    "write_checksum",
]
