"""
Response reconciliation.

Turns raw completion text into schema-validated objects and checks the
arithmetic of unit-mix plans against their own detail. Broken arithmetic is
reported as ``Discrepancy`` values next to the parsed object; it never raises
unless the caller asks for it via ``ExtractionResult.raise_for_discrepancies``.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar, Union

import pydantic
from loguru import logger
from pydantic import BaseModel, ConfigDict, TypeAdapter, computed_field

from concepta.exceptions import ReconciliationError, ValidationError
from concepta.settings import ReconcileSettings
from concepta.zoning.catalogue import UnitCatalogue
from concepta.zoning.locate import parse_json_payload
from concepta.zoning.schema import (
    ArchitecturalIntelligence,
    DesignDNA,
    DetectedMaterial,
    FloorPlan,
    MassingAlternative,
    ParcelRights,
    StyledMaterials,
    UnitMixPlan,
    UnitMixSummaryEntry,
)

T = TypeVar("T")

# Percentages are integers in practice; a row may be rounded either way.
ROW_PERCENTAGE_TOLERANCE = 1.0


class SchemaKind(str, Enum):
    PARCEL_RIGHTS = "parcel_rights"
    UNIT_MIX_PLAN = "unit_mix_plan"
    MASSING_ALTERNATIVES = "massing_alternatives"
    DESIGN_DNA = "design_dna"
    STYLED_MATERIALS = "styled_materials"
    ARCHITECTURAL_INTELLIGENCE = "architectural_intelligence"
    DETECTED_MATERIALS = "detected_materials"


class Invariant(str, Enum):
    FLOOR_TOTAL_MISMATCH = "floor_total_mismatch"
    TOTAL_UNITS_MISMATCH = "total_units_mismatch"
    SUMMARY_TOTAL_MISMATCH = "summary_total_mismatch"
    PERCENTAGE_SUM_MISMATCH = "percentage_sum_mismatch"
    PERCENTAGE_MISMATCH = "percentage_mismatch"
    UNIT_TYPE_COUNT_MISMATCH = "unit_type_count_mismatch"
    GROUND_FLOOR_UNITS = "ground_floor_units"
    PENTHOUSE_PLACEMENT = "penthouse_placement"
    UNIT_AREA_OUT_OF_BAND = "unit_area_out_of_band"
    UNKNOWN_UNIT_TYPE = "unknown_unit_type"
    MAIN_AREA_MISMATCH = "main_area_mismatch"
    TARGET_UNITS_MISMATCH = "target_units_mismatch"
    TARGET_AREA_MISMATCH = "target_area_mismatch"
    HEIGHT_EXCEEDS_MAX = "height_exceeds_max"
    FLOORS_EXCEED_MAX = "floors_exceed_max"
    ALTERNATIVE_COUNT = "alternative_count"
    PARCEL_IDENTITY_MISMATCH = "parcel_identity_mismatch"


class Discrepancy(BaseModel):
    """One violated consistency rule. ``expected`` is what the detail implies."""
    model_config = ConfigDict(frozen=True)

    invariant: Invariant
    expected: Union[int, float, str, None]
    actual: Union[int, float, str, None]
    message: str = ""
    floor_number: Optional[int] = None
    unit_type: Optional[str] = None
    alternative_id: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def magnitude(self) -> Optional[float]:
        if isinstance(self.expected, (int, float)) and isinstance(self.actual, (int, float)):
            return abs(self.actual - self.expected)
        return None


@dataclass
class ExtractionResult(Generic[T]):
    value: T
    discrepancies: List[Discrepancy] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.discrepancies

    def raise_for_discrepancies(self) -> T:
        if self.discrepancies:
            names = sorted({d.invariant.value for d in self.discrepancies})
            raise ReconciliationError(
                f"{len(self.discrepancies)} reconciliation discrepancies: {', '.join(names)}",
                self.discrepancies,
                {"invariants": names},
            )
        return self.value


_ADAPTERS: Dict[SchemaKind, TypeAdapter] = {
    SchemaKind.PARCEL_RIGHTS: TypeAdapter(ParcelRights),
    SchemaKind.UNIT_MIX_PLAN: TypeAdapter(UnitMixPlan),
    SchemaKind.MASSING_ALTERNATIVES: TypeAdapter(List[MassingAlternative]),
    SchemaKind.DESIGN_DNA: TypeAdapter(DesignDNA),
    SchemaKind.STYLED_MATERIALS: TypeAdapter(StyledMaterials),
    SchemaKind.ARCHITECTURAL_INTELLIGENCE: TypeAdapter(ArchitecturalIntelligence),
    SchemaKind.DETECTED_MATERIALS: TypeAdapter(List[DetectedMaterial]),
}

_MASSING_WRAPPER_KEYS = ("alternatives", "massing_alternatives", "massingAlternatives")


def _error_path(loc: Sequence[Union[int, str]]) -> str:
    return ".".join(str(part) for part in loc) or "<root>"


def validate_payload(payload: Any, kind: SchemaKind) -> Any:
    """Validate decoded JSON against the schema of ``kind``.

    Raises:
        ValidationError: With the dotted path of the first offending field.
    """
    if kind is SchemaKind.MASSING_ALTERNATIVES and isinstance(payload, dict):
        for key in _MASSING_WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    try:
        return _ADAPTERS[kind].validate_python(payload)
    except pydantic.ValidationError as exc:
        errors = exc.errors(include_url=False)
        first = errors[0]
        path = _error_path(first["loc"])
        if first["type"] == "missing":
            message = f"Missing required field '{path}' for {kind.value}"
        else:
            message = f"Invalid value at '{path}' for {kind.value}: {first['msg']}"
        raise ValidationError(
            message,
            path,
            {
                "kind": kind.value,
                "errors": [
                    {"path": _error_path(err["loc"]), "type": err["type"], "message": err["msg"]}
                    for err in errors
                ],
            },
        ) from exc


def extract_structured(
    raw_text: str,
    kind: SchemaKind,
    *,
    rights: ParcelRights | None = None,
    catalogue: UnitCatalogue | None = None,
    settings: ReconcileSettings | None = None,
) -> ExtractionResult[Any]:
    """Parse, validate and reconcile one completion.

    Args:
        raw_text: Provider output, possibly wrapped in prose or code fences.
        kind: Which schema the payload must satisfy.
        rights: Source rights, enabling target checks for plans and massings.
        catalogue: Unit-type catalogue used for band and penthouse checks.
        settings: Reconciliation tolerances.

    Returns:
        ExtractionResult holding the validated object and any discrepancies.

    Raises:
        ParseError: No JSON payload could be located or decoded.
        ValidationError: The payload does not match the schema.
    """
    payload = parse_json_payload(raw_text)
    value = validate_payload(payload, kind)
    discrepancies: List[Discrepancy] = []
    if kind is SchemaKind.UNIT_MIX_PLAN:
        discrepancies = reconcile_unit_mix(value, rights=rights, catalogue=catalogue, settings=settings)
    elif kind is SchemaKind.MASSING_ALTERNATIVES and rights is not None:
        expected = (settings or ReconcileSettings()).expected_alternatives
        discrepancies = reconcile_massing(value, rights, expected_count=expected)
    if discrepancies:
        logger.info(
            "{kind} parsed with {count} discrepancies",
            kind=kind.value,
            count=len(discrepancies),
        )
    return ExtractionResult(value=value, discrepancies=discrepancies)


# ---------- Unit mix ----------
def _count_by_type(floor_plans: Sequence[FloorPlan]) -> Counter:
    counts: Counter = Counter()
    for floor in floor_plans:
        for unit in floor.units:
            counts[unit.unit_type] += unit.count
    return counts


def _round_area(value: float) -> float:
    return round(value, 2)


def reconcile_unit_mix(
    plan: UnitMixPlan,
    *,
    rights: ParcelRights | None = None,
    catalogue: UnitCatalogue | None = None,
    settings: ReconcileSettings | None = None,
) -> List[Discrepancy]:
    """Check a unit-mix plan's totals, percentages and placement rules."""
    settings = settings or ReconcileSettings()
    issues: List[Discrepancy] = []

    for floor in plan.floor_plans:
        if floor.total_units != floor.counted_units:
            issues.append(Discrepancy(
                invariant=Invariant.FLOOR_TOTAL_MISMATCH,
                expected=floor.counted_units,
                actual=floor.total_units,
                floor_number=floor.floor_number,
                message=f"Floor {floor.floor_number} lists {floor.counted_units} units but declares {floor.total_units}",
            ))

    floor_sum = sum(floor.total_units for floor in plan.floor_plans)
    declared_total = plan.building_summary.total_units
    if floor_sum != declared_total:
        issues.append(Discrepancy(
            invariant=Invariant.TOTAL_UNITS_MISMATCH,
            expected=floor_sum,
            actual=declared_total,
            message=f"Floors sum to {floor_sum} units, building summary declares {declared_total}",
        ))

    summary_sum = sum(entry.total_count for entry in plan.unit_mix_summary)
    if summary_sum != floor_sum:
        issues.append(Discrepancy(
            invariant=Invariant.SUMMARY_TOTAL_MISMATCH,
            expected=floor_sum,
            actual=summary_sum,
            message=f"Unit mix summary counts {summary_sum} units, floors sum to {floor_sum}",
        ))

    issues.extend(_check_percentages(plan.unit_mix_summary, summary_sum, settings))
    issues.extend(_check_type_counts(plan))

    for floor in plan.floor_plans:
        if floor.floor_type != "ground":
            continue
        residential = max(floor.total_units, floor.counted_units)
        if residential:
            issues.append(Discrepancy(
                invariant=Invariant.GROUND_FLOOR_UNITS,
                expected=0,
                actual=residential,
                floor_number=floor.floor_number,
                message=f"Ground floor {floor.floor_number} holds {residential} residential units",
            ))

    if catalogue is not None:
        issues.extend(_check_penthouses(plan, catalogue))
        issues.extend(_check_bands(plan, catalogue))

    detail_area = sum(unit.area_sqm * unit.count for floor in plan.floor_plans for unit in floor.units)
    declared_area = plan.building_summary.total_main_area_sqm
    tolerance = settings.main_area_tolerance_pct / 100.0
    if declared_area > 0 and abs(detail_area - declared_area) > declared_area * tolerance:
        issues.append(Discrepancy(
            invariant=Invariant.MAIN_AREA_MISMATCH,
            expected=_round_area(detail_area),
            actual=declared_area,
            message=f"Units add up to {detail_area:.0f} sqm, building summary declares {declared_area:.0f} sqm",
        ))

    if rights is not None:
        target_units = rights.rights.max_units
        if declared_total != target_units:
            issues.append(Discrepancy(
                invariant=Invariant.TARGET_UNITS_MISMATCH,
                expected=target_units,
                actual=declared_total,
                message=f"Rights allow {target_units} units, plan declares {declared_total}",
            ))
        target_area = rights.rights.main_area_sqm
        if target_area > 0 and abs(detail_area - target_area) > target_area * tolerance:
            issues.append(Discrepancy(
                invariant=Invariant.TARGET_AREA_MISMATCH,
                expected=target_area,
                actual=_round_area(detail_area),
                message=f"Rights allow {target_area:.0f} sqm main area, units add up to {detail_area:.0f} sqm",
            ))

    return issues


def _check_percentages(
    summary: Sequence[UnitMixSummaryEntry],
    summary_sum: int,
    settings: ReconcileSettings,
) -> List[Discrepancy]:
    if not summary:
        return []
    issues: List[Discrepancy] = []
    total_pct = sum(entry.percentage for entry in summary)
    tolerance = settings.percentage_tolerance
    if tolerance is None:
        tolerance = 0.5 * len(summary)
    if abs(total_pct - 100.0) > tolerance + 1e-9:
        issues.append(Discrepancy(
            invariant=Invariant.PERCENTAGE_SUM_MISMATCH,
            expected=100,
            actual=round(total_pct, 2),
            message=f"Unit mix percentages sum to {total_pct:g}",
        ))
    if summary_sum <= 0:
        return issues
    for entry in summary:
        share = entry.total_count * 100.0 / summary_sum
        if abs(entry.percentage - share) >= ROW_PERCENTAGE_TOLERANCE:
            issues.append(Discrepancy(
                invariant=Invariant.PERCENTAGE_MISMATCH,
                expected=round(share, 2),
                actual=entry.percentage,
                unit_type=entry.unit_type,
                message=f"{entry.unit_type} is {share:.1f}% of units but listed as {entry.percentage:g}%",
            ))
    return issues


def _check_type_counts(plan: UnitMixPlan) -> List[Discrepancy]:
    scanned = _count_by_type(plan.floor_plans)
    declared: Counter = Counter()
    for entry in plan.unit_mix_summary:
        declared[entry.unit_type] += entry.total_count
    order = list(dict.fromkeys([*scanned.keys(), *declared.keys()]))
    issues: List[Discrepancy] = []
    for unit_type in order:
        if scanned[unit_type] != declared[unit_type]:
            issues.append(Discrepancy(
                invariant=Invariant.UNIT_TYPE_COUNT_MISMATCH,
                expected=scanned[unit_type],
                actual=declared[unit_type],
                unit_type=unit_type,
                message=(
                    f"{unit_type}: floors list {scanned[unit_type]} units, "
                    f"summary declares {declared[unit_type]}"
                ),
            ))
    return issues


def _is_penthouse_floor(floor: FloorPlan, penthouse_types: frozenset) -> bool:
    if floor.floor_type == "penthouse":
        return True
    occupied_types = {unit.unit_type for unit in floor.units if unit.count > 0}
    return bool(occupied_types) and occupied_types <= penthouse_types


def _check_penthouses(plan: UnitMixPlan, catalogue: UnitCatalogue) -> List[Discrepancy]:
    """Penthouse types belong to the top block of floors.

    A penthouse unit is misplaced when any occupied regular floor sits above
    it, whatever its own floor is labelled.
    """
    penthouse_types = catalogue.penthouse_types
    occupied = [floor for floor in plan.floor_plans if floor.counted_units > 0]
    if not penthouse_types or not occupied:
        return []
    top = max(floor.floor_number for floor in occupied)
    regular = [
        floor.floor_number for floor in occupied if not _is_penthouse_floor(floor, penthouse_types)
    ]
    if not regular:
        return []
    highest_regular = max(regular)
    issues: List[Discrepancy] = []
    for floor in plan.floor_plans:
        if floor.floor_number >= highest_regular:
            continue
        for unit in floor.units:
            if unit.unit_type in penthouse_types and unit.count > 0:
                issues.append(Discrepancy(
                    invariant=Invariant.PENTHOUSE_PLACEMENT,
                    expected=top,
                    actual=floor.floor_number,
                    floor_number=floor.floor_number,
                    unit_type=unit.unit_type,
                    message=(
                        f"{unit.unit_type} placed on floor {floor.floor_number}, "
                        f"below regular floor {highest_regular} (top floor {top})"
                    ),
                ))
    return issues


def _check_bands(plan: UnitMixPlan, catalogue: UnitCatalogue) -> List[Discrepancy]:
    issues: List[Discrepancy] = []
    reported_unknown: set[str] = set()
    for floor in plan.floor_plans:
        for unit in floor.units:
            band = catalogue.band_for(unit.unit_type)
            if band is None:
                if unit.unit_type not in reported_unknown:
                    reported_unknown.add(unit.unit_type)
                    issues.append(Discrepancy(
                        invariant=Invariant.UNKNOWN_UNIT_TYPE,
                        expected=None,
                        actual=unit.unit_type,
                        floor_number=floor.floor_number,
                        unit_type=unit.unit_type,
                        message=f"Unit type {unit.unit_type!r} is not in the catalogue",
                    ))
                continue
            if not band.contains(unit.area_sqm):
                issues.append(Discrepancy(
                    invariant=Invariant.UNIT_AREA_OUT_OF_BAND,
                    expected=f"{band.min_area_sqm:g}-{band.max_area_sqm:g}",
                    actual=unit.area_sqm,
                    floor_number=floor.floor_number,
                    unit_type=unit.unit_type,
                    message=(
                        f"{unit.unit_type} on floor {floor.floor_number} is {unit.area_sqm:g} sqm, "
                        f"outside {band.min_area_sqm:g}-{band.max_area_sqm:g} sqm"
                    ),
                ))
    return issues


def derive_unit_mix_summary(
    floor_plans: Sequence[FloorPlan],
    catalogue: UnitCatalogue | None = None,
) -> List[UnitMixSummaryEntry]:
    """Rebuild the unit mix summary from floor detail.

    Percentages use the largest-remainder method so they sum to exactly 100.
    Ties go to the type with the smaller rounded-down share, so a type with
    units never shows 0% while another type is rounded up.
    """
    counts = _count_by_type(floor_plans)
    if catalogue is not None:
        ordered = [band.unit_type for band in catalogue if counts[band.unit_type]]
        ordered += [unit_type for unit_type in counts if unit_type not in catalogue]
    else:
        ordered = list(counts)
    total = sum(counts[unit_type] for unit_type in ordered)
    if total == 0:
        return []

    floors = {unit_type: counts[unit_type] * 100 // total for unit_type in ordered}
    remainders = {unit_type: counts[unit_type] * 100 % total for unit_type in ordered}
    missing = 100 - sum(floors.values())
    ranked = sorted(
        range(len(ordered)),
        key=lambda idx: (-remainders[ordered[idx]], floors[ordered[idx]], idx),
    )
    for idx in ranked[:missing]:
        floors[ordered[idx]] += 1

    return [
        UnitMixSummaryEntry(
            unit_type=unit_type,
            label=catalogue.label_for(unit_type) if catalogue is not None else unit_type,
            total_count=counts[unit_type],
            percentage=floors[unit_type],
        )
        for unit_type in ordered
    ]


# ---------- Massing ----------
def reconcile_massing(
    alternatives: Sequence[MassingAlternative],
    rights: ParcelRights,
    *,
    expected_count: int = 3,
) -> List[Discrepancy]:
    """Informational checks of massing alternatives against declared limits."""
    issues: List[Discrepancy] = []
    if len(alternatives) != expected_count:
        issues.append(Discrepancy(
            invariant=Invariant.ALTERNATIVE_COUNT,
            expected=expected_count,
            actual=len(alternatives),
            message=f"Expected {expected_count} massing alternatives, got {len(alternatives)}",
        ))
    max_height = rights.rights.height_max_m
    max_floors = rights.rights.floors_max
    for alternative in alternatives:
        if max_height > 0 and alternative.height_m > max_height:
            issues.append(Discrepancy(
                invariant=Invariant.HEIGHT_EXCEEDS_MAX,
                expected=max_height,
                actual=alternative.height_m,
                alternative_id=alternative.id,
                message=f"Alternative {alternative.id} is {alternative.height_m:g} m, limit is {max_height:g} m",
            ))
        floors = alternative.key_metrics.total_floors
        if max_floors > 0 and floors > max_floors:
            issues.append(Discrepancy(
                invariant=Invariant.FLOORS_EXCEED_MAX,
                expected=max_floors,
                actual=floors,
                alternative_id=alternative.id,
                message=f"Alternative {alternative.id} has {floors} floors, limit is {max_floors}",
            ))
    return issues
