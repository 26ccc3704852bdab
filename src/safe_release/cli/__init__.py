"""CLI module - Command-line interface components."""

from safe_release.cli.main import build_release_record, main
from safe_release.cli.parser import build_parser, parse_arguments

__all__ = [
    "build_parser",
    "build_release_record",
    "main",
    "parse_arguments",
]
