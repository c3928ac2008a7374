"""Fetch and print transactions whose amounts do not balance."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for ledger amount audits."""

    parser = argparse.ArgumentParser(description="Fetch the payments ledger audit report.")
    parser.add_argument("--payments-url", default="http://localhost:8000")
    parser.add_argument("--admin-id", default="ops-admin")
    parser.add_argument("--limit", type=int, default=1000)
    args = parser.parse_args()

    resp = httpx.get(
        f"{args.payments_url}/admin/payments/audit",
        params={"limit": args.limit},
        headers={"x-user-id": args.admin_id, "x-user-role": "admin"},
        timeout=10.0,
    )
    resp.raise_for_status()
    report = resp.json()
    print(json.dumps(report, indent=2))
    if not report.get("ok"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
