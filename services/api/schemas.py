from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from concepta.zoning.reconcile import Discrepancy
from concepta.zoning.schema import (
    ArchitecturalIntelligence,
    DesignDNA,
    DetectedMaterial,
    FacadeAlternative,
    MassingAlternative,
    ParcelRights,
    RenderEnvironment,
    StyledMassing,
    UnitMixPlan,
)

# Used when an image arrives without a data-URL prefix or explicit type
DEFAULT_REFERENCE_MIME_TYPE = "image/jpeg"
DEFAULT_MODEL_MIME_TYPE = "image/png"


class DocumentIn(BaseModel):
    name: str = ""
    type: str = "application/pdf"
    base64: str = Field(..., min_length=1)


class AnalyzeZoningRequest(BaseModel):
    gush: str
    helka: str
    documents: list[DocumentIn] = Field(default_factory=list)


class AnalyzeZoningResponse(BaseModel):
    planning_rights: ParcelRights
    report: str
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    extracted_at: datetime


class GenerateTamhilRequest(BaseModel):
    planning_rights: ParcelRights


class GenerateTamhilResponse(BaseModel):
    tamhil: UnitMixPlan
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    generated_at: datetime


class GenerateMassingRequest(BaseModel):
    planning_rights: ParcelRights
    tamhil: UnitMixPlan | None = None


class GenerateMassingResponse(BaseModel):
    alternatives: list[MassingAlternative]
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    generated_at: datetime


class AnalyzeReferenceRequest(BaseModel):
    reference_image_base64: str = Field(..., min_length=1)
    mime_type: str | None = None


class AnalyzeReferenceResponse(BaseModel):
    design_dna: DesignDNA


class GenerateVisualizationRequest(BaseModel):
    massings: list[MassingAlternative] = Field(..., min_length=1)
    design_dna: DesignDNA
    reference_image_base64: str | None = None
    mime_type: str | None = None


class GenerateVisualizationResponse(BaseModel):
    styled_massings: list[StyledMassing]


# ---------- render flow ----------
class ImageIn(BaseModel):
    image_base64: str = Field(..., min_length=1)
    mime_type: str | None = None


class AnalyzeModelResponse(BaseModel):
    description: str


class AnalyzeBuildingReferenceResponse(BaseModel):
    description: str
    materials: list[DetectedMaterial]
    intelligence: ArchitecturalIntelligence


class GenerateAlternativesRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_image_base64: str = Field(..., min_length=1)
    model_description: str
    intelligence: ArchitecturalIntelligence
    detected_materials: list[DetectedMaterial] = Field(default_factory=list)
    selected_material_ids: list[str] | None = None
    manual_material_images: list[str] = Field(default_factory=list)
    environment: RenderEnvironment = Field(default_factory=RenderEnvironment)


class GenerateAlternativesResponse(BaseModel):
    alternatives: list[FacadeAlternative]
