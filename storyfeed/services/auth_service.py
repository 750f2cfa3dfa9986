from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import httpx
import logging

from storyfeed.config import Settings
from storyfeed.exceptions import Unauthenticated, UpstreamFailure
from storyfeed.schemas.auth_schema import Identity

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

class IdentityProvider:
    """Resolves a bearer token to a verified identity"""

    async def resolve(self, token: str) -> Identity:
        raise NotImplementedError

    async def close(self) -> None:
        pass

class JWTIdentityProvider(IdentityProvider):
    """Verifies tokens locally against the shared signing secret"""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience

    async def resolve(self, token: str) -> Identity:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            raise Unauthenticated()

        user_id = payload.get("sub")
        if not user_id:
            raise Unauthenticated()

        metadata = payload.get("user_metadata") or {}
        return Identity(
            user_id=str(user_id),
            email=payload.get("email"),
            display_name=metadata.get("full_name") or metadata.get("name"),
        )

class SupabaseIdentityProvider(IdentityProvider):
    """Asks the Supabase auth server who the token belongs to.

    Every call is a round trip; nothing is cached so revocations take
    effect immediately.
    """

    def __init__(self, url: str, anon_key: str, timeout: float = 5.0, client: httpx.AsyncClient = None):
        self.client = client or httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/auth/v1",
            headers={"apikey": anon_key},
            timeout=timeout,
        )

    async def resolve(self, token: str) -> Identity:
        try:
            response = await self.client.get(
                "/user",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise UpstreamFailure("Identity provider unavailable") from e

        if response.status_code >= 500:
            logger.error(f"Identity provider error: {response.status_code}")
            raise UpstreamFailure("Identity provider unavailable")
        if response.is_error:
            raise Unauthenticated()

        try:
            user = response.json()
        except ValueError as e:
            logger.error(f"Identity provider returned a non-JSON body: {e}")
            raise UpstreamFailure("Identity provider unavailable") from e

        if not isinstance(user, dict) or not user.get("id"):
            raise Unauthenticated()

        metadata = user.get("user_metadata") or {}
        return Identity(
            user_id=str(user["id"]),
            email=user.get("email"),
            display_name=metadata.get("full_name") or metadata.get("name"),
        )

    async def close(self) -> None:
        await self.client.aclose()

def create_identity_provider(settings: Settings) -> IdentityProvider:
    """Build the identity provider selected by AUTH_PROVIDER"""
    if settings.AUTH_PROVIDER == "supabase":
        if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required for supabase auth")
        return SupabaseIdentityProvider(
            settings.SUPABASE_URL,
            settings.SUPABASE_ANON_KEY,
            timeout=settings.AUTH_TIMEOUT_SECONDS,
        )

    return JWTIdentityProvider(
        settings.jwt_secret,
        algorithm=settings.JWT_ALGORITHM,
        audience=settings.JWT_AUDIENCE,
    )

async def get_current_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    """Dependency to get the verified caller identity"""
    if credentials is None or not credentials.credentials.strip():
        raise Unauthenticated()

    provider: IdentityProvider = request.app.state.identity_provider
    return await provider.resolve(credentials.credentials.strip())
