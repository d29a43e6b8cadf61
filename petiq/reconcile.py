"""Trigger a saved-card reconciliation sweep and print the result."""

import argparse
import json
import os

import httpx


def main() -> None:
    """CLI entrypoint, meant for cron."""

    parser = argparse.ArgumentParser(description="Reconcile mirrored cards against the payment gateway.")
    parser.add_argument("--api-url", default="http://localhost:4242/api")
    parser.add_argument("--token", default=os.getenv("PETIQ_ADMIN_TOKEN"), help="bearer token of the customer to sweep; must carry the admin role")
    args = parser.parse_args()
    if not args.token:
        parser.error("--token or PETIQ_ADMIN_TOKEN is required")

    resp = httpx.post(
        f"{args.api_url}/admin/cards/reconcile",
        headers={"Authorization": f"Bearer {args.token}"},
        timeout=30.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
