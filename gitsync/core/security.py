import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from gitsync.core.config import Settings, get_settings


async def require_worker_key(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    expected = (settings.worker_api_key or "").strip()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="worker api key is not configured",
        )
    if not x_api_key or not hmac.compare_digest(x_api_key.strip().encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid worker credentials")


async def get_workspace_id(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_org_id: str | None = Header(default=None, alias="X-Org-ID"),
) -> str:
    """Resolve the caller's workspace from a workspace API key bound to ``X-Org-ID``.

    ``workspace_api_key_hashes`` maps each org id to the hex SHA-256 of its key;
    the key itself is never stored.
    """
    org_id = (x_org_id or "").strip()
    api_key = (x_api_key or "").strip()
    if not org_id or not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="workspace auth requires X-API-Key and X-Org-ID",
        )

    if not settings.workspace_api_key_hashes:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="workspace credentials are not configured",
        )

    expected = (settings.workspace_api_key_hashes.get(org_id) or "").strip().lower()
    key_hash = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    if not expected or not hmac.compare_digest(expected, key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid workspace credentials")
    return org_id
