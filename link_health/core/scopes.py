from __future__ import annotations

ALL_SCOPE = "all"

# scope name -> entity_type stored on check records
SCOPE_ENTITY_TYPES: dict[str, str] = {
    "investmentFirms": "investmentFirm",
    "investors": "investor",
    "businessmen": "businessman",
}

ENTITY_SCOPES = (ALL_SCOPE, *SCOPE_ENTITY_TYPES)


def entity_type_for_scope(scope: str) -> str | None:
    """Entity type filter for ``scope``; ``None`` means every entity type.

    Raises ``ValueError`` for scopes outside ``ENTITY_SCOPES``.
    """
    if scope == ALL_SCOPE:
        return None
    try:
        return SCOPE_ENTITY_TYPES[scope]
    except KeyError:
        raise ValueError(f"scope must be one of: {', '.join(ENTITY_SCOPES)}") from None


def scopes_to_walk(scope: str) -> list[str]:
    if scope == ALL_SCOPE:
        return list(SCOPE_ENTITY_TYPES)
    entity_type_for_scope(scope)
    return [scope]
