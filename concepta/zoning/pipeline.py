"""
Zoning pipeline: prompt, complete, reconcile.

Each stage renders a named prompt, sends it (with any attachments) to the
completion client, and reconciles the reply into a typed object. Stage
results carry their discrepancies; nothing here rejects a plan on its own.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from loguru import logger

from concepta.exceptions import ValidationError
from concepta.llm.client import Attachment, CompletionClient
from concepta.prompts import PromptBuilder
from concepta.settings import Settings
from concepta.zoning.catalogue import UnitCatalogue
from concepta.zoning.reconcile import (
    Discrepancy,
    Invariant,
    SchemaKind,
    extract_structured,
)
from concepta.zoning.schema import (
    ArchitecturalIntelligence,
    BuildingReference,
    DesignDNA,
    DetectedMaterial,
    FacadeAlternative,
    FacadeVariant,
    MassingAlternative,
    ParcelRights,
    RenderEnvironment,
    StyledMassing,
    UnitMixPlan,
    VariantRationale,
)


DEFAULT_MODEL_DESCRIPTION = "Standard architectural massing model."


def _string_object_schema(fields: Sequence[str]) -> dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {name: {"type": "STRING"} for name in fields},
        "required": list(fields),
    }


INTELLIGENCE_RESPONSE_SCHEMA = _string_object_schema(list(ArchitecturalIntelligence.model_fields))
MATERIALS_RESPONSE_SCHEMA = {
    "type": "ARRAY",
    "items": _string_object_schema(["name", "description", "hex_color"]),
}

FACADE_VARIANTS = (
    FacadeVariant(
        id="v1",
        label="Alternative A: Structure-Led",
        logic=(
            "Structure-Led: Facade reads through beams, slabs, and horizontal articulation. "
            "Strong expression of construction logic. Clear hierarchy between podium, terraces, and upper masses."
        ),
        rationale=VariantRationale(
            dominance="Structural beams, slabs, and tectonic articulation",
            softened="Visual material continuity and surface fluidity",
            emphasis='Rational, architectural, and "constructed" logic',
        ),
    ),
    FacadeVariant(
        id="v2",
        label="Alternative B: Material-Led",
        logic=(
            "Material-Led: Facade reads as continuous material fields. Softer transitions between zones. "
            "Reduced visibility of structural articulation to favor material surface behavior."
        ),
        rationale=VariantRationale(
            dominance="Continuous material fields and surface textures",
            softened="Visibility of beams and structural skeletons",
            emphasis="Calm, elegant, and materially-driven translation",
        ),
    ),
    FacadeVariant(
        id="v3",
        label="Alternative C: Spatial & Human",
        logic=(
            "Spatial & Human: Emphasis on balconies, terraces, and indoor-outdoor relationships. "
            "Stronger presence of greenery and human-scale elements. Porous and layered facade reading."
        ),
        rationale=VariantRationale(
            dominance="Balcony depth, visual permeability, and green layers",
            softened="Rigid mass transitions and structural coldness",
            emphasis="Vibrant, livable, and human-scaled architectural interface",
        ),
    ),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RightsAnalysis:
    rights: ParcelRights
    report: str
    discrepancies: List[Discrepancy] = field(default_factory=list)
    extracted_at: datetime = field(default_factory=_utcnow)


@dataclass
class UnitMixResult:
    plan: UnitMixPlan
    discrepancies: List[Discrepancy] = field(default_factory=list)
    generated_at: datetime = field(default_factory=_utcnow)


@dataclass
class MassingResult:
    alternatives: List[MassingAlternative]
    discrepancies: List[Discrepancy] = field(default_factory=list)
    generated_at: datetime = field(default_factory=_utcnow)

    def by_id(self, alternative_id: str) -> Optional[MassingAlternative]:
        for alternative in self.alternatives:
            if alternative.id == alternative_id:
                return alternative
        return None


def _require_text(value: str, name: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{name} is required", name)
    return text


class ZoningPipeline:
    def __init__(
        self,
        client: CompletionClient,
        builder: PromptBuilder | None = None,
        catalogue: UnitCatalogue | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.client = client
        self.builder = builder or PromptBuilder.from_settings(self.settings.prompts)
        self.catalogue = catalogue or UnitCatalogue.from_config(self.settings.catalogue)

    @property
    def _models(self):
        return self.settings.provider.models

    async def analyze_zoning(
        self,
        gush: str,
        helka: str,
        documents: Sequence[Attachment],
    ) -> RightsAnalysis:
        """Extract the rights of one parcel from its zoning documents, then summarise them."""
        gush = _require_text(gush, "gush")
        helka = _require_text(helka, "helka")
        if not documents:
            raise ValidationError("At least one zoning document is required", "documents")

        logger.info("Analyzing zoning for gush {gush} helka {helka}", gush=gush, helka=helka)
        prompt = self.builder.render("zoning_analysis", {"GUSH": gush, "HELKA": helka})
        raw = await self.client.complete(prompt, documents, model=self._models.zoning_analysis)
        extracted = extract_structured(raw, SchemaKind.PARCEL_RIGHTS)
        rights: ParcelRights = extracted.value

        discrepancies = list(extracted.discrepancies)
        if rights.parcel.helka != helka:
            discrepancies.append(Discrepancy(
                invariant=Invariant.PARCEL_IDENTITY_MISMATCH,
                expected=helka,
                actual=rights.parcel.helka,
                message=f"Requested helka {helka}, document data is for helka {rights.parcel.helka}",
            ))

        report_prompt = self.builder.render("rights_report", {"PLANNING_RIGHTS": rights})
        report = await self.client.complete(report_prompt, model=self._models.rights_report)
        return RightsAnalysis(rights=rights, report=report.strip(), discrepancies=discrepancies)

    async def generate_unit_mix(self, rights: ParcelRights) -> UnitMixResult:
        """Ask for a floor-by-floor Tamhil and reconcile its arithmetic."""
        bindings = {
            "PLANNING_RIGHTS": rights,
            "GUSH": rights.parcel.gush,
            "HELKA": rights.parcel.helka,
            "MAX_UNITS": rights.rights.max_units,
            "MAIN_AREA_SQM": rights.rights.main_area_sqm,
            "FLOORS_MAX": rights.rights.floors_max,
            "UNIT_CATALOGUE": self.catalogue.as_prompt_text(),
            "PENTHOUSE_TYPES": [band.unit_type for band in self.catalogue if band.penthouse],
        }
        prompt = self.builder.render("unit_mix_generation", bindings)
        raw = await self.client.complete(prompt, model=self._models.unit_mix)
        extracted = extract_structured(
            raw,
            SchemaKind.UNIT_MIX_PLAN,
            rights=rights,
            catalogue=self.catalogue,
            settings=self.settings.reconcile,
        )
        logger.info(
            "Unit mix for helka {helka}: {units} units, {issues} discrepancies",
            helka=rights.parcel.helka,
            units=extracted.value.building_summary.total_units,
            issues=len(extracted.discrepancies),
        )
        return UnitMixResult(plan=extracted.value, discrepancies=extracted.discrepancies)

    async def generate_massing(
        self,
        rights: ParcelRights,
        plan: UnitMixPlan | None = None,
    ) -> MassingResult:
        """Ask for coarse massing alternatives inside the rights envelope."""
        unit_mix: Any = "not specified"
        if plan is not None and plan.unit_mix_summary:
            unit_mix = {entry.unit_type: entry.total_count for entry in plan.unit_mix_summary}
        bindings = {
            "MAX_UNITS": rights.rights.max_units,
            "HEIGHT_MAX": rights.rights.height_max_m,
            "FLOORS_MAX": rights.rights.floors_max,
            "MAIN_AREA": rights.rights.main_area_sqm,
            "PARCEL_AREA": rights.parcel.area_net_sqm,
            "UNIT_MIX": unit_mix,
            "ALTERNATIVE_COUNT": self.settings.reconcile.expected_alternatives,
        }
        prompt = self.builder.render("massing_alternatives", bindings)
        raw = await self.client.complete(prompt, model=self._models.massing)
        extracted = extract_structured(
            raw,
            SchemaKind.MASSING_ALTERNATIVES,
            rights=rights,
            settings=self.settings.reconcile,
        )
        return MassingResult(alternatives=extracted.value, discrepancies=extracted.discrepancies)

    async def analyze_reference(self, image: Attachment) -> DesignDNA:
        prompt = self.builder.render("reference_analysis", {})
        raw = await self.client.complete(prompt, [image], model=self._models.reference_analysis)
        return extract_structured(raw, SchemaKind.DESIGN_DNA).value

    async def style_massing(
        self,
        massing: MassingAlternative,
        dna: DesignDNA,
        reference: Attachment | None = None,
    ) -> StyledMassing:
        bindings = {
            "MASSING_NAME": massing.name or massing.id,
            "MASSING_DESCRIPTION": massing.description,
            "HEIGHT_M": massing.height_m,
            "COVERAGE_PERCENT": massing.coverage_percent,
            "TOTAL_FLOORS": massing.key_metrics.total_floors,
            "TOWER_COUNT": len(massing.towers),
            "ARCHITECTURAL_STYLE": dna.architectural_style,
            "FACADE_LANGUAGE": dna.facade_language,
            "MATERIAL_PALETTE": dna.material_palette,
            "PRIMARY_COLOR": dna.color_scheme.primary,
            "FENESTRATION_PATTERN": dna.fenestration_pattern,
            "SURFACE_ARTICULATION": dna.surface_articulation,
        }
        prompt = self.builder.render("massing_styling", bindings)
        attachments = [reference] if reference is not None else ()
        raw = await self.client.complete(prompt, attachments, model=self._models.styling)
        materials = extract_structured(raw, SchemaKind.STYLED_MATERIALS).value
        return StyledMassing(
            id=massing.id,
            massing_geometry=massing,
            design_dna=dna,
            styled_materials=materials,
            design_description=materials.design_description,
            reference_image_base64=reference.data if reference is not None else "",
            generated_at=_utcnow(),
        )

    async def style_alternatives(
        self,
        massings: Sequence[MassingAlternative],
        dna: DesignDNA,
        reference: Attachment | None = None,
    ) -> List[StyledMassing]:
        """Style several massings concurrently; one failure fails the batch."""
        logger.info("Styling {count} massing alternatives", count=len(massings))
        results = await asyncio.gather(
            *(self.style_massing(massing, dna, reference) for massing in massings)
        )
        return list(results)

    # ---------- render flow ----------
    async def analyze_model(self, model_image: Attachment) -> str:
        """Describe the locked geometry of a massing model image."""
        prompt = self.builder.render("model_analysis", {})
        text = await self.client.complete(prompt, [model_image], model=self._models.model_analysis)
        return text.strip() or DEFAULT_MODEL_DESCRIPTION

    async def analyze_building_reference(self, image: Attachment) -> BuildingReference:
        """Architectural system intelligence and primary materials of a reference building."""
        prompt = self.builder.render("building_reference_analysis", {})
        raw = await self.client.complete(
            prompt,
            [image],
            INTELLIGENCE_RESPONSE_SCHEMA,
            model=self._models.building_reference,
        )
        intelligence: ArchitecturalIntelligence = extract_structured(
            raw, SchemaKind.ARCHITECTURAL_INTELLIGENCE
        ).value

        prompt = self.builder.render("material_detection", {})
        raw = await self.client.complete(
            prompt,
            [image],
            MATERIALS_RESPONSE_SCHEMA,
            model=self._models.building_reference,
        )
        detected: List[DetectedMaterial] = extract_structured(raw, SchemaKind.DETECTED_MATERIALS).value
        materials = [
            material.model_copy(update={"id": f"detected-{idx}"}) for idx, material in enumerate(detected)
        ]
        logger.info("Building reference analysed: {count} materials detected", count=len(materials))
        return BuildingReference(intelligence=intelligence, materials=materials)

    async def generate_facade_alternatives(
        self,
        model_image: Attachment,
        model_description: str,
        intelligence: ArchitecturalIntelligence,
        materials: Sequence[DetectedMaterial] = (),
        *,
        manual_materials: Sequence[Attachment] = (),
        environment: RenderEnvironment | None = None,
        variants: Sequence[FacadeVariant] = FACADE_VARIANTS,
    ) -> List[FacadeAlternative]:
        """Rendering briefs for each facade variant, issued concurrently.

        One failed variant fails the whole batch.
        """
        model_description = _require_text(model_description, "model_description")
        environment = environment or RenderEnvironment()

        lines = [f"- {material.name}: {material.description}" for material in materials]
        lines += [
            f"- Custom Ref {idx}: User provided reference image texture."
            for idx in range(1, len(manual_materials) + 1)
        ]
        bindings = {
            "MODEL_DESCRIPTION": model_description,
            "MASSING_HIERARCHY": intelligence.massing_hierarchy,
            "FACADE_ZONING": intelligence.facade_zoning,
            "GEOMETRIC_LANGUAGE": intelligence.geometric_language,
            "ELEMENT_LOGIC": intelligence.element_logic,
            "INDOOR_OUTDOOR": intelligence.indoor_outdoor,
            "GREEN_INTEGRATION": intelligence.green_integration,
            "HUMAN_SCALE": intelligence.human_scale,
            "MATERIALS": "\n".join(lines) or "- none selected",
            "CONTEXT_SETTING": environment.context_setting,
            "LIGHTING_PRESET": environment.lighting.preset,
            "TIME_OF_DAY": environment.lighting.time_of_day,
            "GROUND_FLOOR_TYPE": environment.ground_floor_type,
            "GROUND_FLOOR_DESCRIPTION": environment.ground_floor_description,
        }
        attachments = [model_image, *manual_materials]
        logger.info("Generating {count} facade alternatives", count=len(variants))
        results = await asyncio.gather(
            *(self._render_variant(variant, bindings, attachments) for variant in variants)
        )
        return list(results)

    async def _render_variant(
        self,
        variant: FacadeVariant,
        bindings: dict[str, Any],
        attachments: Sequence[Attachment],
    ) -> FacadeAlternative:
        prompt = self.builder.render("facade_alternative", {**bindings, "VARIANT_LOGIC": variant.logic})
        text = await self.client.complete(prompt, attachments, model=self._models.facade_rendering)
        logger.debug("Facade variant {id} returned {size} chars", id=variant.id, size=len(text))
        return FacadeAlternative(
            id=variant.id,
            label=variant.label,
            logic=variant.logic,
            rationale=variant.rationale,
            description=text.strip(),
            generated_at=_utcnow(),
        )
