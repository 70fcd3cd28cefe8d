#!/usr/bin/env python3
"""Request a hostgate bearer token on behalf of an end user.

Run by the host: signs a short-lived RS256 assertion with the host private
key and exchanges it at ``POST /token``. Each assertion carries a random
``jti`` and is accepted once.

Usage:
    python scripts/host_request_token.py --url http://localhost:8000 \\
        --key host_private.pem --issuer host-portal --user u1 --org acme

Environment Variables:
    HOSTGATE_URL: Base URL of the gateway
    HOST_PRIVATE_KEY_PATH: Host assertion signing key (PEM)
    HOST_ASSERTION_ISSUER: ``iss`` claim the gateway expects
    HOST_ASSERTION_AUDIENCE: ``aud`` claim the gateway expects (default: hostgate)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
import time
from pathlib import Path

import httpx
import jwt

ASSERTION_LIFETIME_SECONDS = 60


def build_assertion(private_key_pem: str, *, issuer: str, audience: str, subject: str | None = None) -> str:
    now = int(time.time())
    claims = {
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + ASSERTION_LIFETIME_SECONDS,
        "jti": secrets.token_urlsafe(16),
    }
    if subject:
        claims["sub"] = subject
    return jwt.encode(claims, private_key_pem, algorithm="RS256")


def request_token(
    base_url: str,
    assertion: str,
    *,
    user_id: str,
    org_id: str,
    timeout: float = 10.0,
) -> dict:
    response = httpx.post(
        f"{base_url.rstrip('/')}/token",
        json={"userId": user_id, "orgId": org_id},
        headers={"Authorization": f"Bearer {assertion}"},
        timeout=timeout,
    )
    body = response.json()
    if response.status_code != 200 or "token" not in body:
        error = body.get("error") or {}
        raise RuntimeError(
            f"token request failed ({response.status_code}): {error.get('code')} {error.get('message')}"
        )
    return body


def main():
    parser = argparse.ArgumentParser(
        description="Exchange a host assertion for a hostgate bearer token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--url", default=os.environ.get("HOSTGATE_URL", "http://localhost:8000"))
    parser.add_argument("--key", default=os.environ.get("HOST_PRIVATE_KEY_PATH"))
    parser.add_argument("--issuer", default=os.environ.get("HOST_ASSERTION_ISSUER"))
    parser.add_argument(
        "--audience", default=os.environ.get("HOST_ASSERTION_AUDIENCE", "hostgate")
    )
    parser.add_argument("--user", required=True, help="End user id")
    parser.add_argument("--org", required=True, help="Organization id")

    args = parser.parse_args()

    if not args.key:
        print("Error: --key or HOST_PRIVATE_KEY_PATH environment variable required")
        sys.exit(1)
    if not args.issuer:
        print("Error: --issuer or HOST_ASSERTION_ISSUER environment variable required")
        sys.exit(1)

    try:
        private_key_pem = Path(args.key).read_text()
        assertion = build_assertion(
            private_key_pem, issuer=args.issuer, audience=args.audience, subject=args.user
        )
        data = request_token(args.url, assertion, user_id=args.user, org_id=args.org)
    except (OSError, httpx.HTTPError, RuntimeError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(data["token"])
    print(f"expires in {data['expires_in']}s", file=sys.stderr)


if __name__ == "__main__":
    main()
