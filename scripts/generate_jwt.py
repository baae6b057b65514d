from __future__ import annotations

import argparse
import os
from datetime import datetime, timedelta

import jwt

KNOWN_ROLES = {"admin", "owner", "service"}


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a bearer token for the Campaign Minutes API.")
    parser.add_argument("--secret", default=os.getenv("JWT_SECRET", ""))
    parser.add_argument("--subject", required=True, help="User id the token acts as.")
    parser.add_argument("--roles", default="owner", help="Comma-separated roles.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default=os.getenv("JWT_ALGORITHM", "HS256"))
    args = parser.parse_args()

    if not args.secret:
        parser.error("--secret or JWT_SECRET is required")
    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - KNOWN_ROLES)
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
