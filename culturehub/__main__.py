"""
culturehub/__main__.py
-----------------------------------------------------------------------------
Command-line entrypoint.

    python -m culturehub                    # serve with uvicorn on $PORT
    python -m culturehub --generate-secret  # print a fresh JWT_SECRET
"""

from __future__ import annotations

import argparse
import secrets

import uvicorn

from culturehub.config import Settings


def generate_secret() -> str:
    """64 random bytes as hex, suitable for ``JWT_SECRET``."""
    return secrets.token_hex(64)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="culturehub", description="Culture Hub site backend")
    parser.add_argument("--generate-secret", action="store_true", help="print a new JWT_SECRET and exit")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=None, help="defaults to $PORT or 5000")
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args(argv)

    if args.generate_secret:
        print(f"JWT_SECRET={generate_secret()}")
        print("Add this line to your .env file and keep it out of version control.")
        return 0

    # A bad configuration stops here, before uvicorn starts.
    settings = Settings.from_env()
    uvicorn.run(
        "culturehub.main:app",
        host=args.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
