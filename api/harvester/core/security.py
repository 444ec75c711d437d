import hashlib
import hmac
import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from harvester.core.auth import (
    ANALYTICS_READ,
    ANALYTICS_WRITE,
    JOBS_LEASE,
    JOBS_REPORT,
    JOBS_WRITE,
    KEYWORDS_WRITE,
    MACHINE_SCOPES,
    Principal,
    PrincipalType,
)
from harvester.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {JOBS_WRITE, KEYWORDS_WRITE, ANALYTICS_READ},
    "admin": {JOBS_WRITE, KEYWORDS_WRITE, ANALYTICS_READ, ANALYTICS_WRITE},
}
DEFAULT_WORKER_SCOPES = frozenset({JOBS_LEASE, JOBS_REPORT})


@dataclass(slots=True, frozen=True)
class WorkerCredential:
    module_id: str
    key_hash: str
    scopes: frozenset[str]


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


@lru_cache(maxsize=8)
def load_worker_credentials(raw: str | None) -> dict[str, WorkerCredential]:
    """Parse ``{"module-id": {"key_hash": "...", "scopes": [...]}}`` into credentials."""
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("worker credentials must be a JSON object") from exc
    if not isinstance(payload, dict):
        raise ValueError("worker credentials must be a JSON object")

    credentials: dict[str, WorkerCredential] = {}
    for module_id, entry in payload.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("key_hash"), str):
            raise ValueError(f"worker credential for {module_id!r} needs a key_hash")
        scopes = entry.get("scopes")
        if isinstance(scopes, list) and not set(scopes) <= MACHINE_SCOPES:
            raise ValueError(f"worker credential for {module_id!r} grants unknown scopes")
        credentials[module_id] = WorkerCredential(
            module_id=module_id,
            key_hash=entry["key_hash"],
            scopes=frozenset(scopes) if isinstance(scopes, list) else DEFAULT_WORKER_SCOPES,
        )
    return credentials


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    try:
        credentials = load_worker_credentials(settings.worker_credentials_json)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    credential = credentials.get(x_module_id)
    if credential is None or not hmac.compare_digest(credential.key_hash, hash_api_key(x_api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=set(credential.scopes),
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    # user_metadata is editable by the user, so roles come from app_metadata only.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    role = app_metadata.get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role

    roles = app_metadata.get("roles")
    if isinstance(roles, list) and "admin" in roles:
        return "admin"
    return "user"
