from __future__ import annotations

from urllib.parse import urlencode

from platformcore.core.errors import UpstreamFailure
from platformcore.services.auth.oauth import OAuthProfile


class StubOAuthProvider:
    """Offline provider: any code maps to the configured profile, "bad" codes fail upstream."""

    def __init__(self, name: str = "github", *, profile: OAuthProfile | None = None) -> None:
        self.name = name
        self.profile = profile or OAuthProfile(
            email="Ada.Lovelace@Example.com",
            first_name="Ada",
            last_name="Lovelace",
            provider_account_id="4242",
            access_token="gho_test_access",
            refresh_token=None,
            scopes=["read:user", "user:email"],
        )
        self.exchanged_codes: list[str] = []

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str:
        query = urlencode({"state": state, "redirect_uri": redirect_uri})
        return f"https://provider.test/{self.name}/authorize?{query}"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile:
        self.exchanged_codes.append(code)
        if code == "bad":
            raise UpstreamFailure(
                f"{self.name} token exchange failed: bad_verification_code",
                provider=self.name,
                upstream_status=400,
                upstream_text="bad_verification_code",
            )
        return self.profile


def stub_factory(provider: StubOAuthProvider):
    def _factory(name: str) -> StubOAuthProvider:
        return provider

    return _factory
