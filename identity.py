"""Incoming authentication: bearer header parsing and ID-token verification.

Any object with a ``verify(token) -> Identity`` method can act as the
verifier; :class:`FirebaseVerifier` is the production one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials

from errors import InternalFailure, Unauthenticated

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class Identity:
    email: str
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise Unauthenticated()
    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthenticated()
    return token


def authenticate(verifier, authorization: Optional[str]) -> Identity:
    """Resolve the actor behind an ``Authorization`` header or raise."""
    return verifier.verify(extract_bearer_token(authorization))


def load_service_account(hex_blob: str) -> Dict[str, Any]:
    """Decode a hex-encoded service account JSON document."""
    try:
        return json.loads(bytes.fromhex(hex_blob.strip()).decode("utf-8"))
    except ValueError as exc:
        raise ValueError("FIREBASE_SERVICE_ACCOUNT_HEX is not hex-encoded JSON") from exc


class FirebaseVerifier:
    """Verifies Firebase ID tokens.

    The Firebase app is initialized on first use so that importing the
    service does not require credentials.
    """

    APP_NAME = "lending-api"

    def __init__(
        self,
        service_account: Optional[Dict[str, Any]] = None,
        app: Optional[firebase_admin.App] = None,
    ) -> None:
        self._service_account = service_account
        self._app = app

    @classmethod
    def from_settings(cls, settings) -> FirebaseVerifier:
        account = None
        if settings.firebase_service_account_hex:
            account = load_service_account(settings.firebase_service_account_hex)
        return cls(service_account=account)

    def _get_app(self) -> firebase_admin.App:
        if self._app is not None:
            return self._app
        try:
            self._app = firebase_admin.get_app(self.APP_NAME)
            return self._app
        except ValueError:
            pass
        try:
            cred = (
                credentials.Certificate(self._service_account)
                if self._service_account
                else credentials.ApplicationDefault()
            )
        except ValueError as exc:
            logger.error("Invalid Firebase service account: %s", exc)
            raise InternalFailure("Failed to verify credentials") from exc
        try:
            self._app = firebase_admin.initialize_app(cred, name=self.APP_NAME)
            logger.info("Firebase app initialized")
        except ValueError:
            # another verifier registered the app first
            self._app = firebase_admin.get_app(self.APP_NAME)
        return self._app

    def verify(self, token: str) -> Identity:
        app = self._get_app()
        try:
            decoded = auth.verify_id_token(token, app=app)
        except auth.CertificateFetchError as exc:
            logger.error("Could not fetch token signing certificates: %s", exc)
            raise InternalFailure("Failed to verify credentials") from exc
        except (auth.InvalidIdTokenError, auth.UserDisabledError, ValueError) as exc:
            logger.info("Token verification failed: %s", exc)
            raise Unauthenticated() from exc

        email = decoded.get("email")
        if not email:
            logger.info("Verified token carries no email claim (uid=%s)", decoded.get("uid"))
            raise Unauthenticated()
        return Identity(email=email, claims=decoded)
