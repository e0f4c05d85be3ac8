from dataclasses import dataclass

URL_HEALTH_READ_SCOPE = "url_health:read"
URL_HEALTH_WRITE_SCOPE = "url_health:write"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
