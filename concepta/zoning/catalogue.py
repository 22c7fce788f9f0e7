"""Fixed unit-type catalogue (sqm bands per apartment type)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from concepta.settings import Settings, UnitTypeConfig


@dataclass(frozen=True)
class UnitBand:
    unit_type: str
    label: str
    min_area_sqm: float
    max_area_sqm: float
    color: str
    penthouse: bool = False

    def contains(self, area_sqm: float, tolerance_sqm: float = 0.5) -> bool:
        return self.min_area_sqm - tolerance_sqm <= area_sqm <= self.max_area_sqm + tolerance_sqm

    def describe(self) -> str:
        if self.min_area_sqm == self.max_area_sqm:
            size = f"{_fmt(self.min_area_sqm)} sqm"
        else:
            size = f"{_fmt(self.min_area_sqm)}-{_fmt(self.max_area_sqm)} sqm"
        suffix = " (penthouse, top floors only)" if self.penthouse else ""
        return f"- {self.unit_type}: {size}, color {self.color}{suffix}"


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class UnitCatalogue:
    """Lookup over the configured unit bands, in catalogue order."""

    def __init__(self, bands: Iterable[UnitBand]) -> None:
        self._bands: dict[str, UnitBand] = {}
        for band in bands:
            self._bands[band.unit_type] = band

    @classmethod
    def from_config(cls, entries: Iterable[UnitTypeConfig]) -> "UnitCatalogue":
        return cls(
            UnitBand(
                unit_type=entry.unit_type,
                label=entry.label or entry.unit_type,
                min_area_sqm=entry.min_area_sqm,
                max_area_sqm=entry.max_area_sqm if entry.max_area_sqm is not None else entry.min_area_sqm,
                color=entry.color,
                penthouse=entry.penthouse,
            )
            for entry in entries
        )

    @classmethod
    def default(cls) -> "UnitCatalogue":
        return cls.from_config(Settings().catalogue)

    def __iter__(self) -> Iterator[UnitBand]:
        return iter(self._bands.values())

    def __len__(self) -> int:
        return len(self._bands)

    def __contains__(self, unit_type: object) -> bool:
        return unit_type in self._bands

    def band_for(self, unit_type: str) -> UnitBand | None:
        return self._bands.get(unit_type)

    @property
    def penthouse_types(self) -> frozenset[str]:
        return frozenset(band.unit_type for band in self if band.penthouse)

    def label_for(self, unit_type: str) -> str:
        band = self.band_for(unit_type)
        return band.label if band else unit_type

    def as_prompt_text(self) -> str:
        return "\n".join(band.describe() for band in self)
