"""Core data types: the model table, generated metadata and provider credentials."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal, NamedTuple
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from stock_tagger.config import LOCAL_VISION_MODEL, MAX_KEYWORDS, MAX_TITLE_LENGTH


Provider = Literal["google", "anthropic", "openai", "local"]


class ModelId(StrEnum):
    """Vision models a batch can be run against."""

    GEMINI_2_0_FLASH = "gemini-2.0-flash"
    CLAUDE_3_5_SONNET = "claude-3-5-sonnet"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    LOCAL_VISION = "local-vision"


class ModelSpec(NamedTuple):
    """Display and provider-side naming for a ModelId."""

    id: ModelId
    display_name: str
    provider: Provider
    api_model: str


MODEL_SPECS: dict[ModelId, ModelSpec] = {
    spec.id: spec
    for spec in (
        ModelSpec(ModelId.GEMINI_2_0_FLASH, "Gemini 2.0 Flash", "google", "gemini-2.0-flash"),
        ModelSpec(
            ModelId.CLAUDE_3_5_SONNET,
            "Claude 3.5 Sonnet",
            "anthropic",
            "claude-3-5-sonnet-20241022",
        ),
        ModelSpec(ModelId.GPT_4O, "GPT-4o", "openai", "gpt-4o"),
        ModelSpec(ModelId.GPT_4O_MINI, "GPT-4o Mini", "openai", "gpt-4o-mini"),
        ModelSpec(ModelId.LOCAL_VISION, "Local vision model", "local", LOCAL_VISION_MODEL),
    )
}


class Metadata(BaseModel):
    """
    Stock metadata generated for one image.

    Field constraints are applied by slicing, never by rejection: titles are trimmed and cut
    to 70 characters, keywords are trimmed, blanks dropped and the list capped at 50.

    Examples:
        >>> Metadata(title="  Red Barn ", keywords=["barn", " ", " rural "], category="Nature")
        Metadata(title='Red Barn', keywords=['barn', 'rural'], category='Nature')

    """

    title: str
    keywords: list[str] = Field(max_length=MAX_KEYWORDS)
    category: str

    @field_validator("title", mode="before")
    @classmethod
    def _clip_title(cls, value: object) -> str:
        if not isinstance(value, str):
            msg = "title must be a string"
            raise ValueError(msg)  # noqa: TRY004
        title = value.strip()[:MAX_TITLE_LENGTH].rstrip()
        if not title:
            msg = "title is empty"
            raise ValueError(msg)
        return title

    @field_validator("keywords", mode="before")
    @classmethod
    def _clean_keywords(cls, value: object) -> list[str]:
        # Some models answer with one comma-separated string instead of a list.
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, (list, tuple)):
            msg = "keywords must be a list"
            raise ValueError(msg)  # noqa: TRY004
        cleaned = [str(keyword).strip() for keyword in value if keyword is not None]
        return [keyword for keyword in cleaned if keyword][:MAX_KEYWORDS]

    @field_validator("category", mode="before")
    @classmethod
    def _trim_category(cls, value: object) -> str:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            msg = "category must be a string"
            raise ValueError(msg)  # noqa: TRY004
        category = value.strip()
        if not category:
            msg = "category is empty"
            raise ValueError(msg)
        return category


class Credential(BaseModel):
    """A provider secret bound to one model, independently activatable."""

    id: UUID = Field(default_factory=uuid4)
    model: ModelId
    secret: str = Field(min_length=1, repr=False)
    nickname: str | None = None
    is_active: bool = False
    requests_made: int = Field(default=0, ge=0)
    last_used_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def label(self) -> str:
        """Nickname, or the short id when no nickname was given."""
        return self.nickname or str(self.id)[:8]

    @property
    def masked_secret(self) -> str:
        """
        Display-safe form of the secret.

        Examples:
            >>> Credential(model="gpt-4o", secret="sk-abcdef123456").masked_secret
            'sk-a...3456'

        """
        if len(self.secret) <= 8:  # noqa: PLR2004
            return "*" * len(self.secret)
        return f"{self.secret[:4]}...{self.secret[-4:]}"
