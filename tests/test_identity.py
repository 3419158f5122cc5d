"""Tests for bearer parsing and Firebase token verification."""

from __future__ import annotations

import json

import pytest
from firebase_admin import auth

import identity
from config import Settings
from errors import InternalFailure, Unauthenticated
from identity import FirebaseVerifier, authenticate, extract_bearer_token, load_service_account

from conftest import FakeVerifier

# ── Header parsing ──────────────────────────────────────────────────────


class TestBearer:
    def test_extracts_token(self) -> None:
        assert extract_bearer_token("Bearer abc.def") == "abc.def"

    @pytest.mark.parametrize("header", [None, "", "abc.def", "Basic abc", "bearer abc", "Bearer ", "Bearer   "])
    def test_rejects_malformed(self, header) -> None:
        with pytest.raises(Unauthenticated) as info:
            extract_bearer_token(header)
        assert info.value.message == "unauthorized access"

    def test_authenticate_uses_verifier(self) -> None:
        verifier = FakeVerifier({"t1": "a@example.com"})
        assert authenticate(verifier, "Bearer t1").email == "a@example.com"
        with pytest.raises(Unauthenticated):
            authenticate(verifier, "Bearer t2")


# ── Service account bootstrap ───────────────────────────────────────────


class TestServiceAccount:
    def test_decodes_hex_json(self) -> None:
        blob = json.dumps({"type": "service_account", "project_id": "p"}).encode().hex()
        assert load_service_account(blob)["project_id"] == "p"

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            load_service_account("zz-not-hex")

    def test_from_settings_without_account(self) -> None:
        verifier = FirebaseVerifier.from_settings(Settings())
        assert verifier._service_account is None


# ── FirebaseVerifier ────────────────────────────────────────────────────


class TestFirebaseVerifier:
    @pytest.fixture()
    def verifier(self) -> FirebaseVerifier:
        # a pre-built app handle skips firebase initialization
        return FirebaseVerifier(app=object())

    def test_returns_email_claim(self, verifier, monkeypatch) -> None:
        monkeypatch.setattr(
            identity.auth, "verify_id_token", lambda token, app=None: {"email": "a@example.com", "uid": "u1"}
        )
        result = verifier.verify("tok")
        assert result.email == "a@example.com"
        assert result.claims["uid"] == "u1"

    def test_missing_email_claim(self, verifier, monkeypatch) -> None:
        monkeypatch.setattr(identity.auth, "verify_id_token", lambda token, app=None: {"uid": "u1"})
        with pytest.raises(Unauthenticated):
            verifier.verify("tok")

    def test_invalid_token(self, verifier, monkeypatch) -> None:
        def reject(token, app=None):
            raise auth.InvalidIdTokenError("bad token")

        monkeypatch.setattr(identity.auth, "verify_id_token", reject)
        with pytest.raises(Unauthenticated):
            verifier.verify("tok")

    def test_malformed_token(self, verifier, monkeypatch) -> None:
        def reject(token, app=None):
            raise ValueError("not a jwt")

        monkeypatch.setattr(identity.auth, "verify_id_token", reject)
        with pytest.raises(Unauthenticated):
            verifier.verify("tok")

    def test_certificate_fetch_failure_is_internal(self, verifier, monkeypatch) -> None:
        def unreachable(token, app=None):
            raise auth.CertificateFetchError("cannot reach google", cause=None)

        monkeypatch.setattr(identity.auth, "verify_id_token", unreachable)
        with pytest.raises(InternalFailure):
            verifier.verify("tok")


# ── Firebase app setup ──────────────────────────────────────────────────


class TestFirebaseAppSetup:
    def test_malformed_service_account_is_internal(self, monkeypatch) -> None:
        def no_app(name=None):
            raise ValueError("no app")

        monkeypatch.setattr(identity.firebase_admin, "get_app", no_app)
        verifier = FirebaseVerifier(
            service_account={
                "type": "service_account",
                "project_id": "p",
                "private_key": "bad",
                "client_email": "svc@p.iam.gserviceaccount.com",
                "token_uri": "https://oauth2.googleapis.com/token",
            }
        )
        with pytest.raises(InternalFailure):
            verifier.verify("tok")

    def test_reuses_registered_app(self, monkeypatch) -> None:
        existing = object()
        monkeypatch.setattr(identity.firebase_admin, "get_app", lambda name=None: existing)

        def duplicate(*args, **kwargs):
            raise ValueError("already exists")

        monkeypatch.setattr(identity.firebase_admin, "initialize_app", duplicate)
        seen = {}

        def fake_verify(token, app=None):
            seen["app"] = app
            return {"email": "a@example.com"}

        monkeypatch.setattr(identity.auth, "verify_id_token", fake_verify)
        assert FirebaseVerifier().verify("tok").email == "a@example.com"
        assert FirebaseVerifier().verify("tok").email == "a@example.com"
        assert seen["app"] is existing

    def test_lost_initialize_race_falls_back_to_registered_app(self, monkeypatch) -> None:
        existing = object()
        calls = {"get_app": 0}

        def get_app(name=None):
            calls["get_app"] += 1
            if calls["get_app"] == 1:
                raise ValueError("no app")
            return existing

        def duplicate(*args, **kwargs):
            raise ValueError("already exists")

        monkeypatch.setattr(identity.firebase_admin, "get_app", get_app)
        monkeypatch.setattr(identity.firebase_admin, "initialize_app", duplicate)
        monkeypatch.setattr(identity.credentials, "ApplicationDefault", lambda: object())
        monkeypatch.setattr(identity.auth, "verify_id_token", lambda token, app=None: {"email": "a@example.com"})
        verifier = FirebaseVerifier()
        assert verifier.verify("tok").email == "a@example.com"
        assert verifier._app is existing
