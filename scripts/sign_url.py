#!/usr/bin/env python3
"""
Sign gateway URLs using HMAC-SHA256.

The signature covers the request path plus the query string (keys sorted,
``sign`` excluded), so any tampering with the path or parameters is rejected.

Usage:
    # Print the signed path + query
    python scripts/sign_url.py /resize "url=https://cdn.example.com/a.jpg&width=300"

    # Full URL ready for curl
    python scripts/sign_url.py /resize "width=300&url=https://cdn.example.com/a.jpg" --host http://localhost:9000

Environment:
    URL_SIGNATURE_KEY: Signing key (required, at least 32 characters)

Output:
    /resize?url=https%3A%2F%2Fcdn.example.com%2Fa.jpg&width=300&sign=Hx3k...
"""
import argparse
import os
import sys
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pixelgate.transport.security import canonical_query, sign_url_path  # noqa: E402


def main():
    parser = argparse.ArgumentParser(
        description="Sign gateway URLs with HMAC-SHA256",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("path", help="Request path (e.g., /resize)")
    parser.add_argument("query", nargs="?", default="", help="Query string without '?'")
    parser.add_argument("--host", "-H", default="", help="Prefix the output with this host URL")
    parser.add_argument("--key", "-k", help="Signing key (or use URL_SIGNATURE_KEY env var)")

    args = parser.parse_args()

    key = args.key or os.environ.get("URL_SIGNATURE_KEY")
    if not key:
        print("Error: URL_SIGNATURE_KEY environment variable not set", file=sys.stderr)
        print("Set it with: export URL_SIGNATURE_KEY=your-signing-key", file=sys.stderr)
        sys.exit(1)

    query = args.query.lstrip("?")
    signature = sign_url_path(key, args.path, query)

    canonical = canonical_query(query)
    separator = "&" if canonical else ""
    print(f"{args.host.rstrip('/')}{args.path}?{canonical}{separator}sign={signature}")


if __name__ == "__main__":
    main()
