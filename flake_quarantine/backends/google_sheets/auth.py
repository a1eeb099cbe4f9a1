"""Access tokens for the Sheets and Drive APIs."""

import asyncio
import logging

import google.auth.exceptions
from google.auth.credentials import Credentials
from google.auth.transport.requests import Request
from google.oauth2 import credentials as user_credentials
from google.oauth2 import service_account

from flake_quarantine.backends.google_sheets.config import (
    Authorization,
    AuthorizedUserAuthorization,
    ServiceAccountKeyAuthorization,
)
from flake_quarantine.errors import AuthError

log = logging.getLogger(__name__)

SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.readonly",
)


def load_credentials(
    authorization: ServiceAccountKeyAuthorization | AuthorizedUserAuthorization,
) -> Credentials:
    """Read the credentials file named by the authorization.

    Raises:
        AuthError: If the file is missing or is not a credentials file of
            the expected kind

    """
    try:
        if isinstance(authorization, ServiceAccountKeyAuthorization):
            return service_account.Credentials.from_service_account_file(
                str(authorization.file), scopes=SCOPES
            )
        return user_credentials.Credentials.from_authorized_user_file(
            str(authorization.file), scopes=SCOPES
        )
    except (OSError, ValueError) as exc:
        raise AuthError(
            f"Cannot load {authorization.type} credentials from "
            f"{authorization.file}: {exc}"
        ) from exc


def refresh_token(credentials: Credentials) -> str:
    """Exchange the credentials for a fresh access token. Blocking."""
    try:
        credentials.refresh(Request())
    except google.auth.exceptions.GoogleAuthError as exc:
        raise AuthError(f"Token refresh failed: {exc}") from exc
    token: str = credentials.token
    return token


async def access_token(authorization: Authorization) -> str:
    """Bearer token to send with every API request."""
    if not isinstance(
        authorization, ServiceAccountKeyAuthorization | AuthorizedUserAuthorization
    ):
        return authorization.token.get_secret_value()

    credentials = load_credentials(authorization)
    log.debug("Refreshing %s credentials", authorization.type)
    return await asyncio.to_thread(refresh_token, credentials)
