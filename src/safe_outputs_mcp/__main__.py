#!/usr/bin/env python3
"""safe-outputs-mcp entry point.

Run:
  python -m safe_outputs_mcp                  # serve the enabled safe-output tools over stdio
  python -m safe_outputs_mcp --check-config   # load policy, run context and credentials, list tools, exit

Configuration errors exit with status 2 and a non-secret message, before any
request is accepted.
"""

import argparse
import asyncio
import sys

from safe_outputs_mcp.errors import FatalConfigError
from safe_outputs_mcp.server import check_server, run_server


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(prog="safe_outputs_mcp", add_help=True)
    parser.add_argument(
        "--check-config",
        "--test",
        dest="check_config",
        action="store_true",
        help=(
            "Load the safe-outputs policy document, the workflow run context and the "
            "GitHub credentials, print the safe-output tools that would be exposed, then exit."
        ),
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the server, or only check its configuration."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        if args.check_config:
            asyncio.run(check_server())
        else:
            asyncio.run(run_server())
    except FatalConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print("\nServer stopped by user", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
