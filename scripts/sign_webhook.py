#!/usr/bin/env python3
"""
Sign a Meta webhook payload the way Meta does, for local testing.

The webhook checks ``X-Hub-Signature-256: sha256=<hex>``, an HMAC-SHA256 of
the raw request body keyed with the app secret.

Usage:
    # Print the signature header for a payload file
    python scripts/sign_webhook.py payload.json

    # Read the payload from stdin
    cat payload.json | python scripts/sign_webhook.py -

    # Print a ready-to-run curl command
    python scripts/sign_webhook.py payload.json --curl --host http://localhost:8099

Environment:
    META_APP_SECRET: Meta app secret (required unless --secret is given)
"""
import argparse
import hashlib
import hmac
import os
import shlex
import sys


def compute_signature(secret: str, body: bytes) -> str:
    """Signature header value matching the webhook's verify_meta_signature."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def read_body(source: str) -> bytes:
    if source == "-":
        return sys.stdin.buffer.read()
    with open(source, "rb") as fh:
        return fh.read()


def main():
    parser = argparse.ArgumentParser(
        description="Sign Meta webhook payloads with HMAC-SHA256",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("payload", help="Path to the JSON payload, or '-' for stdin")
    parser.add_argument("--curl", "-c", action="store_true", help="Output as curl command")
    parser.add_argument("--host", "-H", default="http://localhost:8099", help="Host URL for curl")
    parser.add_argument("--secret", "-s", help="App secret (or use META_APP_SECRET env var)")

    args = parser.parse_args()

    secret = args.secret or os.environ.get("META_APP_SECRET")
    if not secret:
        print("Error: META_APP_SECRET environment variable not set", file=sys.stderr)
        print("Set it with: export META_APP_SECRET=your-app-secret", file=sys.stderr)
        sys.exit(1)

    body = read_body(args.payload)
    signature = compute_signature(secret, body)

    if args.curl:
        cmd_parts = [
            "curl",
            "-X POST",
            '-H "Content-Type: application/json"',
            f'-H "X-Hub-Signature-256: {signature}"',
            f"--data-binary {shlex.quote(body.decode('utf-8'))}",
            f'"{args.host}/webhooks/meta"',
        ]
        print(" \\\n  ".join(cmd_parts))
    else:
        print(f"X-Hub-Signature-256: {signature}")


if __name__ == "__main__":
    main()
