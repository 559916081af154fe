# news_ingest/schemas/upstream.py
"""
Schemas for the upstream content API.

Everything the upstream sends is parsed through these models before it
enters the pipeline. Items that fail to parse are rejected and reported;
they are never coerced into something "close enough".
"""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaError

from news_ingest.errors import InvalidResponseError, ValidationError

REQUIRED_ITEM_FIELDS = ("id", "source_guid", "seo_title", "content_md", "original_url")


class IncomingArticle(BaseModel):
    """A single upstream news item."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(..., min_length=1, description="Upstream item id (secondary identifier)")
    source_guid: str = Field(..., min_length=1, description="Globally unique upstream identifier")
    source_id: str | None = None
    title: str | None = None
    seo_title: str = Field(..., min_length=1)
    seo_description: str | None = None
    body_markdown: str = Field(..., min_length=1, alias="content_md")
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    image_url: str | None = Field(default=None, validation_alias=AliasChoices("image_url", "image"))
    image_title: str | None = None
    image_description: str | None = Field(default=None, validation_alias=AliasChoices("image_desc", "image_description"))
    canonical_url: str = Field(..., min_length=1, alias="original_url")
    tldr: list[str] = Field(default_factory=list)
    file_path: str | None = None
    created_at: datetime | None = None
    published_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("id", "source_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("tags", "tldr", mode="before")
    @classmethod
    def flatten_string_list(cls, v: Any) -> Any:
        """Accept null, plain strings and {"name": ...} objects."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            flat = []
            for entry in v:
                if isinstance(entry, dict):
                    entry = entry.get("name")
                if isinstance(entry, str) and entry.strip():
                    flat.append(entry.strip())
            return flat
        return v

    @field_validator("image_url", "category", "title", "seo_description", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("canonical_url")
    @classmethod
    def require_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("original_url must be an absolute http(s) URL")
        return v

    @property
    def identifier(self) -> str:
        """Identifier used in reports (upstream id, else guid)."""
        return self.id or self.source_guid

    @property
    def secondary_id(self) -> str | None:
        """Value matched against StoredArticle.source_id."""
        return self.id or self.source_id

    def summary(self) -> dict:
        return {"id": self.id, "source_guid": self.source_guid, "seo_title": self.seo_title[:80]}


class FetchFilters(BaseModel):
    """Optional list filters supported by the upstream endpoint."""

    status: str | None = None
    sort_by: str | None = None
    sort_order: str | None = None
    category: str | None = None
    tag: str | None = None
    search: str | None = None

    def as_params(self) -> dict[str, str]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class RejectedItem(BaseModel):
    """An upstream item that failed schema validation."""

    raw: dict[str, Any] = Field(default_factory=dict)
    field: str | None = None
    error: str


class FetchPage(BaseModel):
    """One validated page of upstream results."""

    items: list[IncomingArticle] = Field(default_factory=list)
    total: int | None = None
    page: int | None = None
    limit: int | None = None
    has_more: bool = False
    rejected: list[RejectedItem] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Parsing helpers
# -----------------------------------------------------------------------------


def _first_error_field(exc: SchemaError) -> str | None:
    errors = exc.errors()
    if not errors or not errors[0].get("loc"):
        return None
    return str(errors[0]["loc"][0])


def parse_item(raw: Any) -> IncomingArticle:
    """Validate one upstream item or raise ValidationError naming the field."""
    if not isinstance(raw, dict):
        raise ValidationError("Item is not an object", field=None)
    try:
        return IncomingArticle.model_validate(raw)
    except SchemaError as e:
        field = _first_error_field(e)
        raise ValidationError(f"Invalid item {raw.get('source_guid') or raw.get('id')}: {field}", field=field, cause=e)


def parse_page(payload: Any) -> FetchPage:
    """
    Validate a list response.

    The envelope must be an object with an ``items`` array, otherwise the
    whole response is an InvalidResponseError. Individual bad items are
    collected in ``rejected``.
    """
    if not isinstance(payload, dict):
        raise InvalidResponseError("Invalid API response format: expected an object")

    raw_items = payload.get("items")
    if not isinstance(raw_items, list):
        raise InvalidResponseError("Invalid API response: items array missing")

    items: list[IncomingArticle] = []
    rejected: list[RejectedItem] = []
    for raw in raw_items:
        try:
            items.append(parse_item(raw))
        except ValidationError as e:
            rejected.append(
                RejectedItem(raw=raw if isinstance(raw, dict) else {}, field=e.field, error=e.message)
            )

    has_more = payload.get("has_more")
    total = payload.get("total")
    return FetchPage(
        items=items,
        total=total if isinstance(total, int) else None,
        page=payload.get("page") if isinstance(payload.get("page"), int) else None,
        limit=payload.get("limit") if isinstance(payload.get("limit"), int) else None,
        has_more=bool(has_more),
        rejected=rejected,
    )
