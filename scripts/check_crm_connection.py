#!/usr/bin/env python3
"""CLI script to check a CRM connection.

Usage:
    python scripts/check_crm_connection.py --provider hubspot
    python scripts/check_crm_connection.py --provider salesforce --auth-url --state abc123

Credentials come from the environment or .env:
    SALESFORCE_ACCESS_TOKEN / SALESFORCE_REFRESH_TOKEN / SALESFORCE_INSTANCE_URL
    HUBSPOT_ACCESS_TOKEN / HUBSPOT_REFRESH_TOKEN
    PIPEDRIVE_API_TOKEN

Exit code 0 if the connection is healthy, 1 otherwise.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys

# Ensure project root is on sys.path so we can import src.crm_sync
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def build_credentials(provider: str):
    """Assemble Credentials for ``provider`` from environment variables."""
    from src.crm_sync.config import get_settings
    from src.crm_sync.crm.schemas import Credentials

    prefix = provider.upper()
    if provider == "pipedrive":
        return Credentials(api_key=os.getenv("PIPEDRIVE_API_TOKEN") or get_settings().PIPEDRIVE_API_TOKEN)
    return Credentials(
        access_token=os.getenv(f"{prefix}_ACCESS_TOKEN"),
        refresh_token=os.getenv(f"{prefix}_REFRESH_TOKEN"),
        instance_url=os.getenv(f"{prefix}_INSTANCE_URL"),
    )


async def check(provider: str, auth_url: bool, state: str | None) -> int:
    from src.crm_sync.crm.factory import create_client
    from src.crm_sync.observability.logging import configure_structlog

    configure_structlog()
    async with create_client(provider, build_credentials(provider)) as client:
        if auth_url:
            get_url = getattr(client.auth, "get_authorization_url", None)
            if get_url is None:
                print(f"{provider} uses a static API token; there is no authorization URL")
                return 1
            print(get_url(state or secrets.token_urlsafe(16)))
            return 0

        status = await client.validate_connection()

    print(f"provider:     {provider}")
    print(f"connected:    {status.connected}")
    print(f"record count: {status.record_count if status.record_count is not None else 'unknown'}")
    if status.last_error:
        print(f"last error:   {status.last_error}")
    return 0 if status.connected else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Check a CRM connection")
    parser.add_argument(
        "--provider",
        required=True,
        choices=["salesforce", "hubspot", "pipedrive"],
        help="CRM provider to check",
    )
    parser.add_argument("--auth-url", action="store_true", help="Print the OAuth authorization URL and exit")
    parser.add_argument("--state", default=None, help="OAuth state value (random if omitted)")
    args = parser.parse_args()

    sys.exit(asyncio.run(check(args.provider, args.auth_url, args.state)))


if __name__ == "__main__":
    main()
