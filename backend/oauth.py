"""Authorization-code flow for the Google and Facebook sign-in buttons."""

from typing import Dict, Optional
from urllib.parse import urlencode

import requests

OAUTH_TIMEOUT_SECONDS = 10

PROVIDERS = {
    "google": {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "profile_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid profile email",
        "client_id_key": "GOOGLE_CLIENT_ID",
        "client_secret_key": "GOOGLE_CLIENT_SECRET",
    },
    "facebook": {
        "authorize_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "profile_url": "https://graph.facebook.com/me",
        "scope": "email",
        "client_id_key": "FACEBOOK_APP_ID",
        "client_secret_key": "FACEBOOK_APP_SECRET",
    },
}


class OAuthError(Exception):
    pass


class OAuthClient:
    def __init__(self, provider: str, client_id: str, client_secret: str, callback_url: str):
        if provider not in PROVIDERS:
            raise OAuthError(f"Unsupported OAuth provider: {provider}")
        self.provider = provider
        self.settings = PROVIDERS[provider]
        self.client_id = client_id
        self.client_secret = client_secret
        self.callback_url = callback_url

    @classmethod
    def from_config(cls, provider: str, config) -> Optional["OAuthClient"]:
        """Return None when the provider credentials are not configured."""
        settings = PROVIDERS.get(provider)
        if not settings:
            return None
        client_id = (config.get(settings["client_id_key"]) or "").strip()
        client_secret = (config.get(settings["client_secret_key"]) or "").strip()
        if not client_id or not client_secret:
            return None
        base_url = str(config.get("OAUTH_CALLBACK_BASE_URL") or "").rstrip("/")
        return cls(provider, client_id, client_secret, f"{base_url}/api/auth/{provider}/callback")

    def authorization_url(self, state: str) -> str:
        query = {
            "client_id": self.client_id,
            "redirect_uri": self.callback_url,
            "response_type": "code",
            "scope": self.settings["scope"],
            "state": state,
        }
        return f"{self.settings['authorize_url']}?{urlencode(query)}"

    def fetch_profile(self, code: str) -> Dict[str, str]:
        """Exchange the code and return {provider_id, email, given_name, family_name}."""
        try:
            token_response = requests.post(
                self.settings["token_url"],
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.callback_url,
                    "grant_type": "authorization_code",
                },
                timeout=OAUTH_TIMEOUT_SECONDS,
            )
            token_response.raise_for_status()
            access_token = token_response.json().get("access_token")
            if not access_token:
                raise OAuthError("The provider did not return an access token.")

            params = {"fields": "id,email,first_name,last_name"} if self.provider == "facebook" else None
            profile_response = requests.get(
                self.settings["profile_url"],
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=OAUTH_TIMEOUT_SECONDS,
            )
            profile_response.raise_for_status()
            profile = profile_response.json()
        except requests.RequestException as exc:
            raise OAuthError(f"{self.provider} request failed: {exc}")

        if self.provider == "google":
            return {
                "provider_id": str(profile.get("sub") or ""),
                "email": profile.get("email") or "",
                "given_name": profile.get("given_name") or "",
                "family_name": profile.get("family_name") or "",
            }
        return {
            "provider_id": str(profile.get("id") or ""),
            "email": profile.get("email") or "",
            "given_name": profile.get("first_name") or "",
            "family_name": profile.get("last_name") or "",
        }
