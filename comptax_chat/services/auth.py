"""
Bearer credential providers
"""
from typing import Optional

from comptax_chat.services.config import Settings


class TokenProvider:
    """Anonymous access: no token"""

    def get_token(self) -> Optional[str]:
        return None


class StaticTokenProvider(TokenProvider):
    """A token obtained elsewhere, e.g. after login"""

    def __init__(self, token: Optional[str]):
        self.token = token or None

    def get_token(self) -> Optional[str]:
        return self.token


class SettingsTokenProvider(TokenProvider):
    """Token from the COMPTAX_API_TOKEN setting"""

    def __init__(self, settings: Settings):
        self.settings = settings

    def get_token(self) -> Optional[str]:
        return self.settings.API_TOKEN or None
