"""Bearer-token source for the remote drive.

Authentication against the identity provider happens elsewhere; the sync
core only asks for a token and whether one can be had at all.
"""

from abc import ABC, abstractmethod


class TokenProvider(ABC):
    """Abstract interface for the auth collaborator."""

    @abstractmethod
    async def get_access_token(self) -> str | None:
        """Current bearer token, or None if the user is not signed in."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether remote sync is configured and signed in."""


class StaticTokenProvider(TokenProvider):
    """Provides a fixed token, e.g. from configuration."""

    def __init__(self, token: str | None = None):
        self.token = token

    async def get_access_token(self) -> str | None:
        return self.token or None

    def is_available(self) -> bool:
        return bool(self.token)
