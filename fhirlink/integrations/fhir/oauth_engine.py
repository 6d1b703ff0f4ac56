"""
OAuth Flow Engine

Drives the authorization-code flow (optionally with PKCE) against any
provider in the registry. Two transitions:

- initiate(): build the provider's authorization URL and a signed,
  self-contained state token. No server-side session is kept.
- complete(): verify and consume the state exactly once, then exchange the
  authorization code at the provider's token endpoint.

The engine never touches persistence; callers write the resulting token
triple into the Token Vault. Authorization codes and PKCE verifiers are
never logged.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
from fhirlink.core.config import settings
from fhirlink.core.encryption import TokenCipher, get_token_cipher
from fhirlink.core.exceptions import (
    InvalidOrExpiredState,
    ReauthorizationRequired,
    TokenDecryptionError,
    TokenExchangeFailed,
    TokenRefreshFailed,
)
from fhirlink.core.logging import get_logger
from fhirlink.core.resilience import retry_token_refresh
from fhirlink.core.security import create_state_token, decode_state_token, generate_pkce_pair
from fhirlink.integrations.fhir.providers import AuthStrategy, ProviderConfig, ProviderRegistry, get_provider_registry
from fhirlink.services.state_store import StateStore, get_state_store

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600
UNKNOWN_PATIENT_ID = "unknown"


@dataclass
class WidgetContext:
    """Connect-widget session that started the flow."""

    widget_token_id: str
    client_user_id: Optional[str] = None
    redirect_uri: Optional[str] = None


@dataclass
class AuthorizationRequest:
    """Result of initiate(): where to send the user."""

    url: str
    state: str
    state_id: str
    provider: str
    code_challenge: Optional[str] = None


@dataclass
class TokenResult:
    """Token triple returned by a token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = DEFAULT_EXPIRES_IN
    token_type: str = "Bearer"
    scope: Optional[str] = None
    patient_id: str = UNKNOWN_PATIENT_ID
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    def __repr__(self) -> str:
        return (
            f"TokenResult(patient_id={self.patient_id!r}, expires_in={self.expires_in}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )


@dataclass
class CompletedAuthorization:
    """Result of complete(): tokens plus the context carried in the state."""

    provider: str
    subject_id: str
    tokens: TokenResult
    return_url: Optional[str] = None
    widget_token_id: Optional[str] = None
    client_user_id: Optional[str] = None


# ==============================================================================
# Token request builders (selected by auth strategy)
# ==============================================================================

RequestShape = Tuple[Dict[str, str], Dict[str, str]]


def _basic_auth_header(client_id: str, client_secret: str) -> str:
    credentials = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    return f"Basic {credentials}"


def build_basic_request(provider: ProviderConfig, grant: Dict[str, str]) -> RequestShape:
    """Confidential client: credentials in the Authorization header only."""
    headers = {"Authorization": _basic_auth_header(provider.client_id or "", provider.client_secret or "")}
    return dict(grant), headers


def build_pkce_request(provider: ProviderConfig, grant: Dict[str, str]) -> RequestShape:
    """Public client: client_id (and the secret, when one is issued) in the body."""
    body = dict(grant)
    body["client_id"] = provider.client_id or ""
    if provider.client_secret:
        body["client_secret"] = provider.client_secret
    return body, {}


TOKEN_REQUEST_BUILDERS: Dict[AuthStrategy, Callable[[ProviderConfig, Dict[str, str]], RequestShape]] = {
    AuthStrategy.BASIC: build_basic_request,
    AuthStrategy.PKCE: build_pkce_request,
}


def parse_token_response(payload: Any) -> TokenResult:
    """
    Parse a token endpoint JSON body.

    Raises:
        ValueError: If the body is not a token response
    """
    if not isinstance(payload, dict):
        raise ValueError("token response is not a JSON object")
    access_token = payload.get("access_token")
    if not access_token or not isinstance(access_token, str):
        raise ValueError("token response has no access_token")

    expires_in = payload.get("expires_in", DEFAULT_EXPIRES_IN)
    try:
        expires_in = int(expires_in)
    except (TypeError, ValueError):
        raise ValueError("token response has a non-numeric expires_in")

    return TokenResult(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or None,
        expires_in=expires_in,
        token_type=payload.get("token_type", "Bearer"),
        scope=payload.get("scope"),
        patient_id=str(payload.get("patient") or UNKNOWN_PATIENT_ID),
    )


class OAuthFlowEngine:
    """
    Authorization-code flow for every registered provider.

    Args:
        registry: Provider lookup
        state_store: Single-use marker for state ids
        cipher: Encrypts the PKCE verifier inside the state token
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        state_store: Optional[StateStore] = None,
        cipher: Optional[TokenCipher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        redirect_uri: Optional[str] = None,
    ):
        self.registry = registry or get_provider_registry()
        self.state_store = state_store or get_state_store()
        self._cipher = cipher
        self._transport = transport
        self.redirect_uri = redirect_uri or settings.OAUTH_REDIRECT_URI

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_token_cipher()
        return self._cipher

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)

    # =========================================================================
    # Initiate
    # =========================================================================

    def initiate(
        self,
        provider_id: str,
        subject_id: str,
        return_url: Optional[str] = None,
        widget_context: Optional[WidgetContext] = None,
    ) -> AuthorizationRequest:
        """
        Build the provider authorization URL.

        Raises:
            UnknownProvider: provider id not in the registry
            ProviderMisconfigured: endpoints or client id missing
        """
        provider = self.registry.require_configured(provider_id)

        code_verifier = code_challenge = None
        if provider.uses_pkce:
            code_verifier, code_challenge = generate_pkce_pair()

        claims: Dict[str, Any] = {
            "provider": provider.id,
            "sub": subject_id,
            "cv": self.cipher.encrypt(code_verifier) if code_verifier else None,
            "ret": return_url,
        }
        if widget_context:
            claims["wt"] = widget_context.widget_token_id
            claims["cuid"] = widget_context.client_user_id
        state, state_id = create_state_token(claims)

        params = {
            "client_id": provider.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": provider.scope,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        audience = provider.audience_value
        if audience:
            params["aud"] = audience

        separator = "&" if "?" in (provider.authorization_url or "") else "?"
        url = f"{provider.authorization_url}{separator}{urlencode(params)}"

        logger.info(
            "oauth_flow_initiated",
            provider=provider.id,
            subject_id=subject_id,
            state_id=state_id,
            pkce=provider.uses_pkce,
            widget=widget_context is not None,
        )
        return AuthorizationRequest(
            url=url,
            state=state,
            state_id=state_id,
            provider=provider.id,
            code_challenge=code_challenge,
        )

    # =========================================================================
    # Complete
    # =========================================================================

    async def complete(self, state_token: str, code: str) -> CompletedAuthorization:
        """
        Consume the state and exchange the authorization code.

        The state is marked consumed before the exchange, so a replayed state
        fails even when the first exchange failed.

        Raises:
            InvalidOrExpiredState: state did not verify or was already used
            TokenExchangeFailed: token endpoint error or malformed response
        """
        claims = decode_state_token(state_token) if state_token else None
        if claims is None:
            logger.warning("oauth_state_rejected", reason="invalid_or_expired")
            raise InvalidOrExpiredState()

        state_id = claims["jti"]
        if not await self.state_store.consume(state_id):
            logger.warning("oauth_state_rejected", reason="already_consumed", state_id=state_id)
            raise InvalidOrExpiredState("OAuth state has already been used")

        provider = self.registry.require_configured(claims.get("provider", ""))

        grant = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
        }
        if provider.uses_pkce:
            encrypted_verifier = claims.get("cv")
            if not encrypted_verifier:
                raise InvalidOrExpiredState("OAuth state is missing its PKCE verifier")
            try:
                grant["code_verifier"] = self.cipher.decrypt(encrypted_verifier)
            except TokenDecryptionError:
                raise InvalidOrExpiredState("OAuth state verifier could not be decrypted")

        # Codes are single-use: the exchange is never retried
        tokens = await self._post_token_request(provider, grant, TokenExchangeFailed)

        logger.info(
            "oauth_token_exchange_succeeded",
            provider=provider.id,
            subject_id=claims.get("sub"),
            state_id=state_id,
            has_refresh_token=tokens.refresh_token is not None,
        )
        return CompletedAuthorization(
            provider=provider.id,
            subject_id=claims.get("sub", ""),
            tokens=tokens,
            return_url=claims.get("ret"),
            widget_token_id=claims.get("wt"),
            client_user_id=claims.get("cuid"),
        )

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, provider_id: str, refresh_token: Optional[str]) -> TokenResult:
        """
        Run a refresh_token grant.

        Raises:
            ReauthorizationRequired: no refresh token (before any network call)
            TokenRefreshFailed: token endpoint error or malformed response
        """
        if not refresh_token:
            raise ReauthorizationRequired(provider_id=provider_id)

        provider = self.registry.get(provider_id)
        if not provider.token_url or not provider.client_id:
            raise TokenRefreshFailed(provider_id, "provider token endpoint is not configured")

        grant = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            return await self._refresh_with_retry(provider, grant)
        except httpx.HTTPError as e:
            raise TokenRefreshFailed(provider_id, f"transport error ({type(e).__name__})")

    @retry_token_refresh()
    async def _refresh_with_retry(self, provider: ProviderConfig, grant: Dict[str, str]) -> TokenResult:
        return await self._post_token_request(provider, grant, TokenRefreshFailed, raise_transport=True)

    async def _post_token_request(
        self,
        provider: ProviderConfig,
        grant: Dict[str, str],
        error_cls,
        raise_transport: bool = False,
    ) -> TokenResult:
        build = TOKEN_REQUEST_BUILDERS[provider.auth_strategy]
        body, headers = build(provider, grant)
        headers = {**headers, "Accept": "application/json"}

        try:
            async with self._http_client() as client:
                response = await client.post(provider.token_url, data=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "oauth_token_request_transport_error",
                provider=provider.id,
                grant_type=grant["grant_type"],
                error_type=type(e).__name__,
            )
            if raise_transport:
                raise
            raise error_cls(provider.id, f"transport error ({type(e).__name__})")

        if not response.is_success:
            logger.warning(
                "oauth_token_request_rejected",
                provider=provider.id,
                grant_type=grant["grant_type"],
                status_code=response.status_code,
            )
            raise error_cls(provider.id, f"token endpoint returned {response.status_code}", response.status_code)

        try:
            return parse_token_response(response.json())
        except ValueError as e:
            logger.warning("oauth_token_response_malformed", provider=provider.id, error=str(e))
            raise error_cls(provider.id, f"malformed token response: {e}", response.status_code)


# Global engine instance
_oauth_engine: Optional[OAuthFlowEngine] = None


def get_oauth_engine() -> OAuthFlowEngine:
    global _oauth_engine
    if _oauth_engine is None:
        _oauth_engine = OAuthFlowEngine()
    return _oauth_engine


__all__ = [
    "AuthorizationRequest",
    "CompletedAuthorization",
    "OAuthFlowEngine",
    "TOKEN_REQUEST_BUILDERS",
    "TokenResult",
    "WidgetContext",
    "build_basic_request",
    "build_pkce_request",
    "get_oauth_engine",
    "parse_token_response",
]
