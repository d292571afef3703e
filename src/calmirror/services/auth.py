"""Google OAuth token lifecycle."""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from google_auth_oauthlib.flow import InstalledAppFlow
import httpx
import pytz

from ..config import Settings
from ..models import OAuthTokens, utcnow
from .base import AuthenticationError, NotConnectedError, TokenRefreshError

logger = logging.getLogger(__name__)


class TokenStore:
    """JSON file holding the OAuth tokens, readable by the owner only."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> OAuthTokens:
        if not self.path.exists():
            return OAuthTokens()
        with open(self.path, 'r') as f:
            data = json.load(f)
        return OAuthTokens(**data)

    def save(self, tokens: OAuthTokens) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        with open(self.path, 'w') as f:
            f.write(tokens.model_dump_json())
        # Owner read/write only
        self.path.chmod(0o600)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


class TokenManager:
    """Keeps a valid Google access token available to callers."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[TokenStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the token manager.

        Args:
            settings: Application settings
            store: Token persistence (defaults to the credentials directory)
            http_client: Client used for the token endpoint
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.store = store or TokenStore(settings.google_token_path)
        self.margin = timedelta(seconds=settings.sync_config.token_expiry_margin_seconds)
        self._http_client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._clock = clock
        self._tokens: Optional[OAuthTokens] = None
        self.logger = logger.getChild('token_manager')

    @property
    def tokens(self) -> OAuthTokens:
        if self._tokens is None:
            self._tokens = self.store.load()
        return self._tokens

    @property
    def is_connected(self) -> bool:
        return bool(self.tokens.refresh_token)

    def _is_fresh(self, tokens: OAuthTokens) -> bool:
        if not tokens.access_token or tokens.expiry is None:
            return False
        return tokens.expiry - self._clock() > self.margin

    async def ensure_valid_token(self) -> str:
        """Return an access token valid for at least the expiry margin.

        Raises:
            NotConnectedError: If no refresh token is stored
            TokenRefreshError: If the refresh request fails
        """
        tokens = self.tokens
        if self._is_fresh(tokens):
            return tokens.access_token
        if not tokens.refresh_token:
            raise NotConnectedError("Google is not connected")
        refreshed = await self._refresh(tokens.refresh_token)
        self.save(refreshed)
        self.logger.info(f"Refreshed Google access token, valid until {refreshed.expiry.isoformat()}")
        return refreshed.access_token

    async def _refresh(self, refresh_token: str) -> OAuthTokens:
        data = {
            'client_id': self.settings.google_client_id or '',
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        }
        if self.settings.google_client_secret:
            data['client_secret'] = self.settings.google_client_secret

        try:
            response = await self._http_client.post(self.settings.google_token_uri, data=data)
        except httpx.HTTPError as e:
            raise TokenRefreshError(f"Token refresh failed: {e}")
        if response.status_code != 200:
            raise TokenRefreshError(f"Token refresh failed ({response.status_code}): {response.text}")

        try:
            payload = response.json()
            access_token = payload['access_token']
            expires_in = int(payload.get('expires_in', 3600))
        except (ValueError, KeyError) as e:
            raise TokenRefreshError(f"Malformed token response: {e}")

        return OAuthTokens(
            access_token=access_token,
            # Google only sometimes rotates the refresh token
            refresh_token=payload.get('refresh_token') or refresh_token,
            expiry=self._clock() + timedelta(seconds=expires_in),
        )

    def save(self, tokens: OAuthTokens) -> None:
        self.store.save(tokens)
        self._tokens = tokens

    def connect(self) -> OAuthTokens:
        """Run the browser consent flow and store the resulting tokens."""
        tokens = run_authorization_flow(self.settings)
        self.save(tokens)
        return tokens

    def disconnect(self) -> None:
        self.store.clear()
        self._tokens = OAuthTokens()

    async def close(self) -> None:
        await self._http_client.aclose()


def run_authorization_flow(settings: Settings) -> OAuthTokens:
    """Authorization-code + PKCE flow through a local loopback listener.

    Raises:
        AuthenticationError: If the client is not configured or consent fails
    """
    if not settings.google_client_id:
        raise AuthenticationError("GOOGLE_CLIENT_ID is not configured")

    client_config = {
        "installed": {
            "client_id": settings.google_client_id,
            "auth_uri": settings.google_auth_uri,
            "token_uri": settings.google_token_uri,
            "redirect_uris": ["http://127.0.0.1"],
        }
    }
    if settings.google_client_secret:
        client_config["installed"]["client_secret"] = settings.google_client_secret

    flow = InstalledAppFlow.from_client_config(
        client_config,
        scopes=settings.google_scopes,
        autogenerate_code_verifier=True,
    )
    logger.info("Starting Google OAuth flow in browser...")
    try:
        creds = flow.run_local_server(
            host='127.0.0.1', port=0, access_type='offline', prompt='consent'
        )
    except Exception as e:
        raise AuthenticationError(f"Google authorization failed: {e}")
    logger.info("OAuth flow completed successfully")

    expiry = creds.expiry
    if expiry is not None and expiry.tzinfo is None:
        # google-auth reports naive UTC
        expiry = expiry.replace(tzinfo=pytz.UTC)
    return OAuthTokens(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=expiry,
    )
