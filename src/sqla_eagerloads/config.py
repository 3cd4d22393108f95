from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Config:
    """Loading behaviour of a :class:`~sqla_eagerloads.session.Session`.

    Attributes:
        strict_lazy_loading: Raise ``LazyAccessViolation`` instead of loading
            a relationship that was not eagerly loaded.
        strict_attributes: Raise ``MappingError`` for row columns the entity
            table does not declare instead of discarding them.
        strict_missing_attributes: Raise ``MissingAttributeError`` when an
            unset column is read instead of returning ``None``.
        concurrent_paths: Run sibling batches of one planner pass concurrently.
        timeout: Seconds a whole session operation may take; ``None`` for no
            limit.
    """

    strict_lazy_loading: bool = False
    strict_attributes: bool = False
    strict_missing_attributes: bool = False
    concurrent_paths: bool = True
    timeout: float | None = None

    @classmethod
    def strict(cls, enabled: bool = True, **overrides: object) -> Config:
        """Config with every strictness flag set to *enabled*.

        Example::

            session = Session(executor, registry, config=Config.strict(not in_production))
        """
        return cls(
            **{
                "strict_lazy_loading": enabled,
                "strict_attributes": enabled,
                "strict_missing_attributes": enabled,
                **overrides,
            }  # type: ignore[arg-type]
        )
