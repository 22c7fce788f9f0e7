"""Canonical schemas for zoning rights, unit-mix plans and massing alternatives."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _clean_numeric_text(value: Any) -> Any:
    # JSON true/false is never a quantity
    if isinstance(value, bool):
        raise ValueError("expected a number, got a boolean")
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "").replace("_", "")
        if cleaned.endswith("%"):
            cleaned = cleaned[:-1].strip()
        return cleaned
    return value


def _coerce_float(value: Any) -> Any:
    return _clean_numeric_text(value)


def _coerce_int(value: Any) -> Any:
    cleaned = _clean_numeric_text(value)
    if isinstance(cleaned, str):
        try:
            return int(cleaned)
        except ValueError:
            pass
        try:
            number = float(cleaned)
        except ValueError:
            return cleaned
        # "150.0" is a count, "150.5" is left for pydantic to reject
        return int(number) if number.is_integer() else number
    return cleaned


def _coerce_identifier(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _lower_text(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


Area = Annotated[float, BeforeValidator(_coerce_float), Field(ge=0.0)]
Count = Annotated[int, BeforeValidator(_coerce_int), Field(ge=0)]
Measure = Annotated[float, BeforeValidator(_coerce_float)]
Identifier = Annotated[str, BeforeValidator(_coerce_identifier)]

FloorType = Literal["ground", "typical", "penthouse", "technical", "roof"]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


# ---------- Parcel rights ----------
class Parcel(_Frozen):
    gush: Identifier = Field(..., min_length=1, description="Cadastral block id")
    helka: Identifier = Field(..., min_length=1, description="Cadastral parcel id")
    area_net_sqm: Area = 0.0


class Zoning(_Frozen):
    primary_use: str = ""
    allowed_secondary_uses: List[str] = Field(default_factory=list)
    plan_number: Optional[str] = None
    plan_name: Optional[str] = None


class Rights(_Frozen):
    max_units: Count = Field(..., description="Total units for the whole parcel, never a per-building split")
    main_area_sqm: Area
    service_area_sqm: Area = 0.0
    balcony_area_sqm: Area = 0.0
    floors_max: Count
    floors_below_ground: Count = 0
    height_max_m: Area = 0.0
    coverage_percent: Area = 0.0


class BuildingLines(_Frozen):
    front_m: Area = 0.0
    side_m: Area = 0.0
    rear_m: Area = 0.0


class Constraints(_Frozen):
    building_lines: BuildingLines = Field(default_factory=BuildingLines)
    parking_ratio: Optional[str] = None
    parking_spaces: Count = 0
    commercial_frontage: bool = False


class RiskNote(_Frozen):
    type: str = "interpretation"
    description: str = ""
    clause_reference: Optional[str] = None


class ParcelRights(_Frozen):
    """Extracted building envelope of one zoning parcel."""
    parcel: Parcel
    zoning: Zoning = Field(default_factory=Zoning)
    rights: Rights
    constraints: Constraints = Field(default_factory=Constraints)
    confidence_level: Annotated[Literal["high", "medium", "low"], BeforeValidator(_lower_text)] = "medium"
    risk_notes: List[RiskNote] = Field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return self.parcel.gush, self.parcel.helka


# ---------- Unit mix (Tamhil) ----------
class ProjectInfo(_Frozen):
    gush: Optional[Identifier] = None
    helka: Optional[Identifier] = None
    plan_number: Optional[str] = None


class BuildingSummary(_Frozen):
    num_buildings: Count = 1
    total_floors: Count = 0
    floors_below_ground: Count = 0
    floors_above_ground: Count = 0
    total_units: Count
    total_main_area_sqm: Area = 0.0
    average_unit_size_sqm: Area = 0.0


class FloorUnit(_Frozen):
    unit_type: str = Field(..., min_length=1)
    area_sqm: Area
    count: Count
    color: Optional[str] = None


class FloorPlan(_Frozen):
    floor_number: Count
    floor_type: Annotated[FloorType, BeforeValidator(_lower_text)]
    floor_label: Optional[str] = None
    units: List[FloorUnit] = Field(default_factory=list)
    total_units: Count

    @property
    def counted_units(self) -> int:
        return sum(unit.count for unit in self.units)


class UnitMixSummaryEntry(_Frozen):
    unit_type: str = Field(..., min_length=1)
    label: Optional[str] = None
    total_count: Count
    percentage: Area


class UnitMixPlan(_Frozen):
    """Floor-by-floor unit enumeration derived from a ParcelRights."""
    project_info: ProjectInfo = Field(default_factory=ProjectInfo)
    building_summary: BuildingSummary
    floor_plans: List[FloorPlan]
    unit_mix_summary: List[UnitMixSummaryEntry]
    design_notes: List[str] = Field(default_factory=list)

    @field_validator("floor_plans")
    @classmethod
    def _unique_floor_numbers(cls, value: List[FloorPlan]) -> List[FloorPlan]:
        seen: set[int] = set()
        for floor in value:
            if floor.floor_number in seen:
                raise ValueError(f"duplicate floor_number {floor.floor_number}")
            seen.add(floor.floor_number)
        return value

    @property
    def top_floor_number(self) -> int | None:
        if not self.floor_plans:
            return None
        return max(floor.floor_number for floor in self.floor_plans)


# ---------- Massing ----------
class Position(_Frozen):
    x: Measure = 0.0
    y: Measure = 0.0
    z: Measure = 0.0


class Dimensions(_Frozen):
    width: Area = 0.0
    depth: Area = 0.0
    height: Area = 0.0


class TowerFloor(_Frozen):
    floor_number: Count
    units_by_size: dict[str, Count] = Field(default_factory=dict)


class Tower(_Frozen):
    name: str = ""
    position: Position = Field(default_factory=Position)
    dimensions: Dimensions = Field(default_factory=Dimensions)
    floors: List[TowerFloor] = Field(default_factory=list)


class KeyMetrics(_Frozen):
    total_floors: Count
    fsi: Area = 0.0
    density_units_per_hectare: Area = 0.0


class MassingAlternative(_Frozen):
    """Coarse building form used for visualization only."""
    id: Identifier
    name: str = ""
    description: str = ""
    height_m: Area
    coverage_percent: Area = 0.0
    setback_front_m: Area = 0.0
    setback_sides_m: Area = 0.0
    towers: List[Tower] = Field(default_factory=list)
    key_metrics: KeyMetrics
    design_rationale: str = ""


# ---------- Reference styling ----------
class ColorScheme(_Frozen):
    primary: str
    secondary: List[str] = Field(default_factory=list)
    accent: Optional[str] = None


class DesignDNA(_Frozen):
    architectural_style: str
    facade_language: str = ""
    material_palette: List[str]
    color_scheme: ColorScheme
    proportional_logic: str = ""
    fenestration_pattern: str = ""
    vertical_rhythm: str = ""
    horizontal_banding: str = ""
    surface_articulation: str = ""
    human_scale_elements: str = ""


class Material(_Frozen):
    name: str
    color: str
    texture: str = ""


class SecondaryMaterial(Material):
    area_percent: Area = 0.0


class StyledMaterials(_Frozen):
    primary_material: Material
    secondary_materials: List[SecondaryMaterial] = Field(default_factory=list)
    accent_color: Optional[str] = None
    design_description: str = ""


class StyledMassing(_Frozen):
    """A massing alternative dressed in a palette taken from a reference image."""
    id: Identifier
    massing_geometry: MassingAlternative
    design_dna: DesignDNA
    styled_materials: StyledMaterials
    design_description: str = ""
    reference_image_base64: str = ""
    generated_at: datetime


# ---------- Render flow ----------
class ArchitecturalIntelligence(_Frozen):
    """System-level reading of a building reference image."""
    description: str
    massing_hierarchy: str = ""
    facade_zoning: str = ""
    geometric_language: str = ""
    element_logic: str = ""
    material_system: str = ""
    indoor_outdoor: str = ""
    green_integration: str = ""
    human_scale: str = ""


class DetectedMaterial(_Frozen):
    id: str = ""
    name: str = Field(..., min_length=1)
    description: str = ""
    hex_color: str = ""


class BuildingReference(_Frozen):
    intelligence: ArchitecturalIntelligence
    materials: List[DetectedMaterial] = Field(default_factory=list)


class VariantRationale(_Frozen):
    dominance: str
    softened: str
    emphasis: str


class FacadeVariant(_Frozen):
    id: str
    label: str
    logic: str
    rationale: VariantRationale


class Lighting(_Frozen):
    preset: str = "Golden Hour"
    time_of_day: str = "18:30"


class RenderEnvironment(_Frozen):
    context_setting: str = "Dense Urban"
    ground_floor_type: Literal["Lobby", "Retail", "Other"] = "Lobby"
    ground_floor_description: str = ""
    lighting: Lighting = Field(default_factory=Lighting)


class FacadeAlternative(_Frozen):
    """One façade interpretation of a massing model, as a rendering brief."""
    id: str
    label: str
    logic: str
    rationale: VariantRationale
    description: str
    generated_at: datetime
