"""Tests for caller identity checks."""

import pytest

from watchwise_functions import auth as auth_module
from watchwise_functions.auth import require_caller, verify_caller
from watchwise_shared.errors import Unauthenticated


class TestRequireCaller:
    def test_returns_uid(self) -> None:
        assert require_caller("parent1") == "parent1"

    @pytest.mark.parametrize("uid", [None, "", "   "])
    def test_rejects_missing(self, uid: str | None) -> None:
        with pytest.raises(Unauthenticated):
            require_caller(uid)


class TestVerifyCaller:
    def test_valid_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(auth_module.auth, "verify_id_token", lambda token: {"uid": "child1"})
        assert verify_caller("token") == "child1"

    def test_missing_token(self) -> None:
        with pytest.raises(Unauthenticated):
            verify_caller(None)

    def test_rejected_token(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def reject(token: str) -> dict:
            raise ValueError("malformed token")

        monkeypatch.setattr(auth_module.auth, "verify_id_token", reject)
        with pytest.raises(Unauthenticated):
            verify_caller("token")

    def test_token_without_uid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(auth_module.auth, "verify_id_token", lambda token: {})
        with pytest.raises(Unauthenticated):
            verify_caller("token")
