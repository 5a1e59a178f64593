from pydantic import BaseModel, ConfigDict, Field, field_validator

from dynarecord.models.base import ensure_column_name
from dynarecord.models.enums import SortDirection


class QueryOptions(BaseModel):
    sort: dict[str, SortDirection] = Field(default_factory=dict)
    limit: int | None = Field(default=None, gt=0)
    offset: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("sort", mode="before")
    @classmethod
    def _normalize_sort(cls, value: object) -> object:
        if isinstance(value, dict):
            for key in value:
                ensure_column_name(key)
            return {key: str(direction).upper() for key, direction in value.items()}
        return value

    def sort_keys(self) -> list[tuple[str, bool]]:
        """Sort keys as ``(field, descending)`` pairs, most significant first."""
        return [(field, direction == SortDirection.DESC) for field, direction in self.sort.items()]


__all__ = ["QueryOptions"]
