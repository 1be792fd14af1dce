#!/usr/bin/env python3
"""
CMS Edge Gateway
Serves the Decap CMS bundle and bridges OAuth traffic to a loopback-only helper.
"""

import argparse
import json
import sys


def print_config() -> None:
    """Print the resolved configuration as JSON."""
    from dataclasses import asdict

    from cms_gateway.config import load_gateway_config

    cfg = load_gateway_config()
    payload = asdict(cfg)
    payload["allowed_origins"] = sorted(cfg.allowed_origins)
    payload["cookie_secure"] = cfg.cookie_secure
    print(json.dumps(payload, indent=2, sort_keys=False, default=str))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="CMS edge gateway: static CMS assets + OAuth bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve with settings from the environment (PORT, ORIGINS, OAUTH_PORT, ...)
  python main.py --serve

  # Override the listen address
  python main.py --serve --host 127.0.0.1 --port 8000

  # Show what the environment resolves to
  python main.py --print-config
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the gateway HTTP server")
    parser.add_argument("--host", default=None, help="Listen host (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: $PORT or 80)")
    parser.add_argument("--print-config", action="store_true", help="Print the resolved configuration as JSON")

    args = parser.parse_args(argv)

    from cms_gateway.config import ConfigError

    try:
        if args.print_config:
            print_config()
            return 0

        if args.serve:
            from cms_gateway.api.server import run

            return run(host=args.host, port=args.port)

        parser.print_help()
        return 0
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
