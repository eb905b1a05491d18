from __future__ import annotations

from dataclasses import dataclass

from coursegen.domain.models import WorkKind

SUPPORTED_ROLES = (
    "api",
    "worker-advance",
    "worker-generate",
)

# Queue each worker role drains.
ROLE_TO_KIND: dict[str, str] = {
    "worker-advance": WorkKind.ADVANCE,
    "worker-generate": WorkKind.GENERATE,
}


@dataclass(frozen=True)
class RuntimeRole:
    name: str

    @property
    def is_worker(self) -> bool:
        return self.name in ROLE_TO_KIND


def validate_role(role: str) -> RuntimeRole:
    if role in SUPPORTED_ROLES:
        return RuntimeRole(name=role)

    supported = ", ".join(SUPPORTED_ROLES)
    raise ValueError(
        f"Unsupported role '{role}'. Supported roles: {supported}. "
        "Note: schema migrations run outside the app."
    )
