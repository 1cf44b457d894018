# main.py
"""CLI entry point for the Reader Panel manuscript analysis."""

from __future__ import annotations

import argparse
import sys

from orchestration.cli_runner import MODE_STANDARD, MODE_TWO_LAYER, run


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Simulate a panel of reader archetypes evaluating a manuscript."
    )
    parser.add_argument("manuscript", help="Path to a .txt or .md manuscript")
    parser.add_argument(
        "--archetypes",
        default=None,
        help="YAML or JSON file with archetypes (defaults to the bundled panel)",
    )
    parser.add_argument(
        "--mode",
        choices=[MODE_STANDARD, MODE_TWO_LAYER],
        default=MODE_STANDARD,
        help="standard: every archetype rates every chunk; two_layer: one archetype, emotional + analytical",
    )
    parser.add_argument("--archetype-id", default=None, help="Only use this archetype")
    parser.add_argument("--output", default=None, help="Where to write the JSON results")
    parser.add_argument("--model", default=None, help="Override DEFAULT_MODEL")
    parser.add_argument(
        "--background",
        action="store_true",
        help="Run as a persisted background job",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and start the analysis."""
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
