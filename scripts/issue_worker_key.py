#!/usr/bin/env python3
"""Issue an API key for a machine caller and print its credentials entry."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets

DEFAULT_SCOPES = ("jobs:lease", "jobs:report")
KNOWN_SCOPES = ("jobs:lease", "jobs:report", "analytics:write")


def render_credentials(*, module_id: str, api_key: str, scopes: list[str], existing: str | None = None) -> str:
    credentials = json.loads(existing) if existing else {}
    if not isinstance(credentials, dict):
        raise SystemExit("--existing must be a JSON object")
    credentials[module_id] = {
        "key_hash": hashlib.sha256(api_key.encode("utf-8")).hexdigest(),
        "scopes": sorted(set(scopes)),
    }
    return json.dumps(credentials, sort_keys=True, separators=(",", ":"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a worker API key for HV_WORKER_CREDENTIALS_JSON.")
    parser.add_argument("--module-id", required=True, help="Value the caller sends in X-Module-Id")
    parser.add_argument(
        "--scope",
        action="append",
        choices=KNOWN_SCOPES,
        dest="scopes",
        help="Scope to grant; repeat for several (default: jobs:lease, jobs:report)",
    )
    parser.add_argument("--api-key", help="Use this key instead of generating one")
    parser.add_argument("--existing", help="Current HV_WORKER_CREDENTIALS_JSON value to extend")
    args = parser.parse_args()

    api_key = args.api_key or secrets.token_urlsafe(32)
    print(f"# api key for {args.module_id} (shown once): {api_key}")
    print(
        "HV_WORKER_CREDENTIALS_JSON="
        + render_credentials(
            module_id=args.module_id,
            api_key=api_key,
            scopes=args.scopes or list(DEFAULT_SCOPES),
            existing=args.existing,
        )
    )


if __name__ == "__main__":
    main()
