"""
Authentication management for dbxcli.

This module builds the request headers for an access token and reads
and writes the on-disk token store. Obtaining tokens is left to the
Dropbox OAuth flow and is not handled here.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict

from .exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

TOKENS_ENV = "DROPBOX_TOKENS"
ACCESS_TOKEN_ENV = "DROPBOX_ACCESS_TOKEN"

DEFAULT_PROFILE = "default"

# Token domains
PERSONAL = "personal"
TEAM_ACCESS = "teamAccess"
TEAM_MANAGE = "teamManage"

TokenMap = Dict[str, Dict[str, str]]


def default_token_file() -> Path:
    """Location of the token store: ``~/.config/dbxcli/auth.json``."""
    return Path.home() / ".config" / "dbxcli" / "auth.json"


class AuthManager:
    """
    Produces authentication headers for Dropbox API requests.

    When ``as_member_id`` is set, a team token acts on behalf of that
    member via the ``Dropbox-API-Select-User`` header.
    """

    def __init__(self, access_token: str, as_member_id: Optional[str] = None):
        """
        Initialize authentication manager.

        Args:
            access_token: OAuth2 bearer token
            as_member_id: Team member to act as (team tokens only)
        """
        if not access_token:
            raise AuthenticationError("An access token is required")

        self.access_token = access_token
        self.as_member_id = as_member_id

    def get_auth_headers(self) -> Dict[str, str]:
        """
        Generate authentication headers for API requests.

        Returns:
            Dictionary of authentication headers
        """
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self.as_member_id:
            headers["Dropbox-API-Select-User"] = self.as_member_id
        return headers


class TokenStore:
    """
    Reads and writes the ``{profile: {domain: token}}`` token map.

    The ``DROPBOX_TOKENS`` environment variable, when set, takes
    precedence over the file and is never written back.
    """

    def __init__(self, token_file: Optional[Path] = None):
        self.token_file = Path(token_file) if token_file else default_token_file()

    def read(self) -> TokenMap:
        """
        Load the token map.

        Returns:
            The token map; empty when no file exists yet
        """
        env_tokens = os.getenv(TOKENS_ENV)
        if env_tokens:
            raw = env_tokens
        else:
            try:
                raw = self.token_file.read_text()
            except FileNotFoundError:
                logger.debug("[read] no token file; path:%s", self.token_file)
                return {}
            except OSError as e:
                raise ConfigurationError(f"read tokens: {e}", config_key=str(self.token_file))

        try:
            tokens = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"decode tokens: {e}", config_key=TOKENS_ENV if env_tokens else str(self.token_file))

        if not isinstance(tokens, dict):
            raise ConfigurationError("decode tokens: expected a JSON object")
        return tokens

    def write(self, tokens: TokenMap):
        """Persist the token map with owner-only permissions."""
        self.token_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.token_file, 'w') as f:
            json.dump(tokens, f, indent=2)
        self.token_file.chmod(0o600)
        logger.debug("[write] saved tokens; path:%s", self.token_file)

    def get_token(self, profile: str = DEFAULT_PROFILE, domain: str = PERSONAL) -> Optional[str]:
        """Look up the token for a profile and domain."""
        return self.read().get(profile, {}).get(domain)

    def set_token(self, token: str, profile: str = DEFAULT_PROFILE, domain: str = PERSONAL):
        tokens = self.read()
        tokens.setdefault(profile, {})[domain] = token
        self.write(tokens)

    def remove_profile(self, profile: str) -> bool:
        """Forget every token of a profile. Returns False if it was unknown."""
        tokens = self.read()
        if profile not in tokens:
            return False
        del tokens[profile]
        self.write(tokens)
        return True
