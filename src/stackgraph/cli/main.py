from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stackgraph.config.settings import get_settings
from stackgraph.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackgraph", description="stackgraph CLI")
    subparsers = parser.add_subparsers(dest="command")

    plan_parser = subparsers.add_parser("plan", help="Preview changes to a stack (dry-run)")
    plan_parser.add_argument("stack_yaml", help="Path to stack YAML file")
    plan_parser.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )
    plan_parser.add_argument(
        "-v", "--verbose", action="store_true", help="Also list unchanged resources"
    )
    plan_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit with 1 when the plan has pending changes",
    )

    up_parser = subparsers.add_parser("up", help="Plan and apply a stack")
    up_parser.add_argument("stack_yaml", help="Path to stack YAML file")
    up_parser.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )

    destroy_parser = subparsers.add_parser("destroy", help="Delete every resource of a stack")
    destroy_parser.add_argument("stack_yaml", help="Path to stack YAML file")
    destroy_parser.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )

    state_parser = subparsers.add_parser("state", help="Inspect recorded stack state")
    state_subparsers = state_parser.add_subparsers(dest="state_command")
    show_parser = state_subparsers.add_parser("show", help="Show recorded resources")
    show_parser.add_argument("stack_yaml", help="Path to stack YAML file")
    show_parser.add_argument(
        "--output", choices=["text", "json"], default="text", help="Output format"
    )

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)

    if args.command == "plan":
        from stackgraph.cli.plan import plan_command

        sys.exit(
            plan_command(
                stack_yaml=args.stack_yaml,
                output_format=args.output,
                verbose=args.verbose,
                detailed_exitcode=args.detailed_exitcode,
            )
        )

    if args.command == "up":
        from stackgraph.cli.apply import up_command

        sys.exit(up_command(stack_yaml=args.stack_yaml, output_format=args.output))

    if args.command == "destroy":
        from stackgraph.cli.apply import destroy_command

        sys.exit(destroy_command(stack_yaml=args.stack_yaml, output_format=args.output))

    if args.command == "state" and args.state_command == "show":
        from stackgraph.cli.state import state_show_command

        sys.exit(state_show_command(stack_yaml=args.stack_yaml, output_format=args.output))

    parser.print_help()
    sys.exit(0 if args.command is None else 2)


if __name__ == "__main__":
    main()
