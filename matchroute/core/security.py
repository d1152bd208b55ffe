import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, Header, HTTPException, status

from matchroute.core.auth import Principal, PrincipalType, parse_scopes
from matchroute.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class InvalidRoutingTokenError(Exception):
    """Raised when a routing token is malformed, forged or expired."""


@dataclass(slots=True)
class MachineCredential:
    module_id: str
    key_hash: str
    scopes: set[str]


@dataclass(slots=True)
class RoutingTokenClaims:
    routing_id: str
    counterparty_id: str
    expires_at: datetime


def load_machine_credentials(raw: str | None) -> dict[str, MachineCredential]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed machine credentials json")
        return {}
    if not isinstance(payload, dict):
        return {}

    credentials: dict[str, MachineCredential] = {}
    for module_id, record in payload.items():
        if not isinstance(record, dict):
            continue
        key_hash = record.get("key_hash")
        if not isinstance(module_id, str) or not isinstance(key_hash, str) or not key_hash:
            continue
        credentials[module_id] = MachineCredential(
            module_id=module_id,
            key_hash=key_hash.strip().lower(),
            scopes=parse_scopes(record.get("scopes")),
        )
    return credentials


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    credential = load_machine_credentials(settings.machine_credentials_json).get(x_module_id)
    if credential is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not hmac.compare_digest(credential.key_hash, key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=set(credential.scopes),
    )


def sign_routing_token(
    *,
    routing_id: str,
    counterparty_id: str,
    expires_at: datetime,
    secret: str,
) -> str:
    body = json.dumps(
        {"rid": routing_id, "cid": counterparty_id, "exp": int(expires_at.timestamp())},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    encoded_body = _b64encode(body)
    signature = hmac.new(secret.encode("utf-8"), encoded_body.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded_body}.{_b64encode(signature)}"


def verify_routing_token(token: str, *, secret: str, now: datetime) -> RoutingTokenClaims:
    encoded_body, separator, encoded_signature = token.strip().partition(".")
    if not separator or not encoded_body or not encoded_signature:
        raise InvalidRoutingTokenError("malformed routing token")

    expected = hmac.new(secret.encode("utf-8"), encoded_body.encode("ascii", "ignore"), hashlib.sha256).digest()
    try:
        provided = _b64decode(encoded_signature)
        payload: dict[str, Any] = json.loads(_b64decode(encoded_body))
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidRoutingTokenError("malformed routing token") from exc
    if not hmac.compare_digest(expected, provided):
        raise InvalidRoutingTokenError("routing token signature mismatch")
    if not isinstance(payload, dict):
        raise InvalidRoutingTokenError("routing token is missing claims")

    routing_id = payload.get("rid")
    counterparty_id = payload.get("cid")
    expires_at = payload.get("exp")
    if not isinstance(routing_id, str) or not isinstance(counterparty_id, str) or not isinstance(expires_at, int):
        raise InvalidRoutingTokenError("routing token is missing claims")

    expiry = datetime.fromtimestamp(expires_at, tz=timezone.utc)
    if now >= expiry:
        raise InvalidRoutingTokenError("routing token expired")
    return RoutingTokenClaims(routing_id=routing_id, counterparty_id=counterparty_id, expires_at=expiry)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)
