#!/usr/bin/env python3
"""
Generate random secrets for the bot's configuration.

Usage:
    python scripts/generate_token.py              # One 32-byte token
    python scripts/generate_token.py 48           # One 48-byte token
    python scripts/generate_token.py --env        # All secrets in .env format

Example output:
    CRON_SECRET=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
    METRICS_TOKEN=fG2hJ4kL6mN8pQ0rS2tU4vW6xZ8aB0cD
    META_WEBHOOK_VERIFY_TOKEN=pQ0rS2tU4vW6xZ8aB0cDfG2hJ4kL6mN8
"""
import secrets
import sys

ENV_NAMES = ("CRON_SECRET", "METRICS_TOKEN", "META_WEBHOOK_VERIFY_TOKEN")


def generate_token(length: int = 32) -> str:
    """Generate a URL-safe random token."""
    return secrets.token_urlsafe(length)


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    if env_format:
        for name in ENV_NAMES:
            print(f"{name}={generate_token(length)}")
    else:
        print(generate_token(length))


if __name__ == "__main__":
    main()
