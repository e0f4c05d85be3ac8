from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class CandidateLink:
    entity_type: str
    entity_id: str
    field_name: str
    url: str
    entity_name: str


@dataclass(frozen=True, slots=True)
class EntityUrlSource:
    """Where the links of one entity scope live."""

    entity_type: str
    table: str
    name_columns: tuple[str, ...]
    url_fields: tuple[tuple[str, str], ...]
    fallback_name: str


ENTITY_URL_SOURCES: dict[str, EntityUrlSource] = {
    "investmentFirms": EntityUrlSource(
        entity_type="investmentFirm",
        table="investment_firms",
        name_columns=("name",),
        url_fields=(("website", "website"), ("linkedinUrl", "linkedin_url")),
        fallback_name="Unknown Firm",
    ),
    "investors": EntityUrlSource(
        entity_type="investor",
        table="investors",
        name_columns=("first_name", "last_name"),
        url_fields=(("linkedinUrl", "linkedin_url"), ("twitterUrl", "twitter_url")),
        fallback_name="Unknown Investor",
    ),
    "businessmen": EntityUrlSource(
        entity_type="businessman",
        table="businessmen",
        name_columns=("first_name", "last_name"),
        url_fields=(("linkedinUrl", "linkedin_url"), ("website", "website")),
        fallback_name="Unknown",
    ),
}


class CandidateSource(Protocol):
    async def get_candidates(self, scope: str, limit: int) -> list[CandidateLink]: ...


def candidate_links_from_row(source: EntityUrlSource, row: Any) -> list[CandidateLink]:
    """One candidate per non-blank URL column of an entity row, in field order."""
    name_parts = [str(row[column]).strip() for column in source.name_columns if row[column]]
    entity_name = " ".join(part for part in name_parts if part) or source.fallback_name

    links: list[CandidateLink] = []
    for field_name, column in source.url_fields:
        url = row[column]
        if not isinstance(url, str) or not url.strip():
            continue
        links.append(
            CandidateLink(
                entity_type=source.entity_type,
                entity_id=str(row["id"]),
                field_name=field_name,
                url=url,
                entity_name=entity_name,
            )
        )
    return links
