"""Ordered group of models with batch save and drop."""

import asyncio
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Any, overload

if TYPE_CHECKING:
    from dynarecord.services.record import Model


class RecordCollection:
    """Sequence of models of one table.

    Batch operations are not atomic: ``save_all()`` stops at the first
    failure without undoing earlier saves, and ``drop_all()`` destroys every
    model concurrently.
    """

    def __init__(
        self,
        model: type["Model"],
        rows: Iterable[Mapping[str, Any]] = (),
        *,
        persisted: bool = False,
    ) -> None:
        self.Model = model
        self._models: list["Model"] = [model(row, persisted=persisted) for row in rows]

    @classmethod
    def from_models(cls, model: type["Model"], models: Iterable["Model"]) -> "RecordCollection":
        collection = cls(model)
        collection._models.extend(models)
        return collection

    def __len__(self) -> int:
        return len(self._models)

    def __iter__(self) -> Iterator["Model"]:
        return iter(self._models)

    @overload
    def __getitem__(self, index: int) -> "Model": ...

    @overload
    def __getitem__(self, index: slice) -> "RecordCollection": ...

    def __getitem__(self, index: int | slice) -> "Model | RecordCollection":
        if isinstance(index, slice):
            return RecordCollection.from_models(self.Model, self._models[index])
        return self._models[index]

    def __repr__(self) -> str:
        return f"RecordCollection({self.Model.__name__}, {len(self)} models)"

    def append(self, item: "Model | Mapping[str, Any]") -> "Model":
        """Add a model, building one from a plain row if needed."""
        model = item if isinstance(item, self.Model) else self.Model(item)
        self._models.append(model)
        return model

    @property
    def data(self) -> list[dict[str, Any] | None]:
        """The ``data`` of every model, in order."""
        return [model.data for model in self._models]

    async def save_all(self) -> "RecordCollection":
        """Save every model in order, stopping at the first failure.

        Models saved before the failure stay saved.
        """
        for model in self._models:
            await model.save()
        return self

    async def drop_all(self) -> "RecordCollection":
        """Destroy every model concurrently; raises the first failure."""
        await asyncio.gather(*(model.destroy() for model in self._models))
        return self
