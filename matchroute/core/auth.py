from dataclasses import dataclass
from enum import Enum

SCOPE_REQUESTS_WRITE = "requests:write"
SCOPE_REQUESTS_READ = "requests:read"
SCOPE_SLA_RUN = "sla:run"


class PrincipalType(str, Enum):
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    @property
    def actor(self) -> str:
        return f"{self.principal_type.value}:{self.subject}"

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def parse_scopes(raw: object) -> set[str]:
    if isinstance(raw, str):
        return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}
    if isinstance(raw, (list, tuple, set)):
        return {item.strip() for item in raw if isinstance(item, str) and item.strip()}
    return set()
