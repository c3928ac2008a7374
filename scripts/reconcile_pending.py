"""Sweep stale card checkouts whose gateway webhook never arrived."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for the stale-checkout sweep."""

    parser = argparse.ArgumentParser(description="Poll the gateway for stale payment_initiated checkouts.")
    parser.add_argument("--payments-url", default="http://localhost:8000")
    parser.add_argument("--admin-id", default="ops-admin")
    parser.add_argument("--older-than-minutes", type=int, default=30)
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    resp = httpx.post(
        f"{args.payments_url}/admin/payments/reconcile-stale",
        params={"older_than_minutes": args.older_than_minutes, "limit": args.limit},
        headers={"x-user-id": args.admin_id, "x-user-role": "admin"},
        timeout=60.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
