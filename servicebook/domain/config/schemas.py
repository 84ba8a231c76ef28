from pydantic import BaseModel, Field

from servicebook.domain.config.service import EffectiveConfig


class ConfigEntryResponse(BaseModel):
    key: str
    value: str
    type: str
    category: str
    description: str
    is_default: bool

    @classmethod
    def from_entry(cls, entry: EffectiveConfig) -> "ConfigEntryResponse":
        return cls(
            key=entry.key,
            value=entry.value,
            type=entry.type,
            category=entry.category,
            description=entry.description,
            is_default=entry.is_default,
        )


class ConfigUpdateRequest(BaseModel):
    value: str = Field(max_length=255)
