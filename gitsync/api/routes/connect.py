import logging
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, HTTPException, status

from gitsync.core.config import Settings, get_settings
from gitsync.core.errors import repository_http_error
from gitsync.core.security import get_workspace_id
from gitsync.schemas.github import ConnectCallbackResponse, ConnectStartResponse
from gitsync.services.repository import RepositoryError, get_repository
from gitsync.services.ttl_stores import ConnectStateStore, get_connect_state_store

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT_TYPE = "Organization"


def resolve_install_url(settings: Settings) -> str | None:
    configured = (settings.github_app_install_url or "").strip()
    if configured:
        return configured
    slug = (settings.github_app_slug or "").strip()
    if slug:
        return f"https://github.com/apps/{slug}/installations/new"
    return None


def with_state(url: str, state: str) -> str:
    parts = urlsplit(url)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "state"]
    query.append(("state", state))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@router.post("/start", response_model=ConnectStartResponse)
async def start_connect(
    org_id: str = Depends(get_workspace_id),
    settings: Settings = Depends(get_settings),
    states: ConnectStateStore = Depends(get_connect_state_store),
) -> ConnectStartResponse:
    install_url = resolve_install_url(settings)
    if not install_url:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="github app install url is not configured",
        )

    token, _expires_at = states.create(org_id)
    logger.info("github connect started org_id=%s", org_id)
    return ConnectStartResponse(
        install_url=with_state(install_url, token),
        state=token,
        expires_in_seconds=int(states.ttl.total_seconds()),
    )


@router.get("/callback", response_model=ConnectCallbackResponse)
async def connect_callback(
    state: str = "",
    installation_id: str = "",
    account_login: str = "",
    account_type: str = "",
    states: ConnectStateStore = Depends(get_connect_state_store),
    repository=Depends(get_repository),
) -> ConnectCallbackResponse:
    org_id = states.consume(state)
    if org_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid or expired state")

    try:
        parsed_installation_id = int(installation_id.strip())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid installation_id") from exc
    if parsed_installation_id <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid installation_id")

    login = account_login.strip() or f"installation-{parsed_installation_id}"
    kind = account_type.strip() or DEFAULT_ACCOUNT_TYPE
    try:
        record = await repository.upsert_installation(
            org_id=org_id,
            installation_id=parsed_installation_id,
            account_login=login,
            account_type=kind,
        )
    except RepositoryError as exc:
        raise repository_http_error(exc) from exc

    logger.info("github installation connected org_id=%s installation_id=%s", org_id, parsed_installation_id)
    return ConnectCallbackResponse(
        org_id=record.org_id,
        installation_id=record.installation_id,
        account_login=record.account_login,
        account_type=record.account_type,
    )
