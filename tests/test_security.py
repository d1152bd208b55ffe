from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone

import pytest

from matchroute.core.auth import Principal, PrincipalType
from matchroute.core.security import (
    InvalidRoutingTokenError,
    load_machine_credentials,
    sign_routing_token,
    verify_routing_token,
)

SECRET = "test-secret"


def test_routing_token_round_trip_and_tamper_detection() -> None:
    now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    token = sign_routing_token(
        routing_id="routing-1",
        counterparty_id="lender-a",
        expires_at=now + timedelta(hours=24),
        secret=SECRET,
    )

    claims = verify_routing_token(token, secret=SECRET, now=now)
    assert claims.routing_id == "routing-1"
    assert claims.counterparty_id == "lender-a"

    with pytest.raises(InvalidRoutingTokenError):
        verify_routing_token(token, secret="other-secret", now=now)
    with pytest.raises(InvalidRoutingTokenError):
        body, signature = token.split(".")
        tampered = ("x" if body[0] != "x" else "y") + body[1:]
        verify_routing_token(f"{tampered}.{signature}", secret=SECRET, now=now)
    with pytest.raises(InvalidRoutingTokenError):
        verify_routing_token(token, secret=SECRET, now=now + timedelta(hours=24))
    with pytest.raises(InvalidRoutingTokenError):
        verify_routing_token("not-a-token", secret=SECRET, now=now)


def test_load_machine_credentials_skips_bad_entries() -> None:
    key_hash = hashlib.sha256(b"intake-key").hexdigest()
    raw = json.dumps(
        {
            "intake": {"key_hash": key_hash.upper(), "scopes": ["requests:write", "requests:read"]},
            "scheduler": {"key_hash": "abc", "scopes": "sla:run, requests:read"},
            "broken": {"scopes": ["requests:write"]},
        }
    )
    credentials = load_machine_credentials(raw)

    assert set(credentials) == {"intake", "scheduler"}
    assert credentials["intake"].key_hash == key_hash
    assert credentials["scheduler"].scopes == {"sla:run", "requests:read"}
    assert load_machine_credentials("[]") == {}


def test_principal_require_scopes() -> None:
    principal = Principal(principal_type=PrincipalType.MACHINE, subject="intake", scopes={"requests:read"})
    principal.require_scopes({"requests:read"})
    with pytest.raises(PermissionError):
        principal.require_scopes({"requests:write"})
    assert principal.actor == "machine:intake"
