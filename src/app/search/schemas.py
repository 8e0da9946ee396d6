"""Pydantic schemas for search results and suggest projections."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SearchKind(str, Enum):
    """Searchable entity kinds."""

    COMPANY = "company"
    CONTACT = "contact"
    DEAL = "deal"


LINK_PREFIXES: dict[SearchKind, str] = {
    SearchKind.COMPANY: "/crm/companies",
    SearchKind.CONTACT: "/crm/contacts",
    SearchKind.DEAL: "/crm/deals",
}


class ScoredRow(BaseModel):
    """One ranked row as returned by a per-kind sub-query."""

    kind: SearchKind
    id: str
    title: str
    subtitle: str | None = None
    score: float = 0.0


class SearchHit(BaseModel):
    """Ranked search result; score is always within [0.0, 1.0]."""

    kind: SearchKind
    id: str
    title: str
    subtitle: str | None = None
    score: float = Field(ge=0.0, le=1.0)
    link: str | None = None

    @classmethod
    def from_row(cls, row: ScoredRow) -> SearchHit:
        return cls(
            kind=row.kind,
            id=row.id,
            title=row.title,
            subtitle=row.subtitle,
            score=min(max(row.score, 0.0), 1.0),
            link=f"{LINK_PREFIXES[row.kind]}/{row.id}",
        )


class CompanyRead(BaseModel):
    """Full company projection returned by suggest_companies."""

    id: str
    name: str
    website: str | None = None
    phone: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContactRead(BaseModel):
    """Full contact projection returned by suggest_contacts."""

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    company_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
