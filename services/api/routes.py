from __future__ import annotations

from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends
from loguru import logger

from concepta.llm.client import Attachment, GeminiCompletionClient
from concepta.prompts import PromptBuilder
from concepta.zoning.catalogue import UnitCatalogue
from concepta.zoning.pipeline import ZoningPipeline
from services.api.schemas import (
    DEFAULT_MODEL_MIME_TYPE,
    DEFAULT_REFERENCE_MIME_TYPE,
    AnalyzeBuildingReferenceResponse,
    AnalyzeModelResponse,
    AnalyzeReferenceRequest,
    AnalyzeReferenceResponse,
    AnalyzeZoningRequest,
    AnalyzeZoningResponse,
    GenerateAlternativesRequest,
    GenerateAlternativesResponse,
    GenerateMassingRequest,
    GenerateMassingResponse,
    GenerateTamhilRequest,
    GenerateTamhilResponse,
    GenerateVisualizationRequest,
    GenerateVisualizationResponse,
    ImageIn,
)
from services.api.utils import resolve_settings


router = APIRouter(prefix="/v1/zoning", tags=["zoning"])
render_router = APIRouter(prefix="/v1/render", tags=["render"])


@lru_cache(maxsize=1)
def get_pipeline() -> ZoningPipeline:
    settings = resolve_settings()
    return ZoningPipeline(
        client=GeminiCompletionClient.from_settings(settings.provider),
        builder=PromptBuilder.from_settings(settings.prompts),
        catalogue=UnitCatalogue.from_config(settings.catalogue),
        settings=settings,
    )


PipelineDep = Annotated[ZoningPipeline, Depends(get_pipeline)]


@router.post("/analyze", response_model=AnalyzeZoningResponse)
async def analyze_zoning(payload: AnalyzeZoningRequest, pipeline: PipelineDep) -> AnalyzeZoningResponse:
    documents = [Attachment.from_base64(doc.base64, doc.type or None) for doc in payload.documents]
    logger.info(
        "Zoning analysis requested for gush {gush} helka {helka} ({count} documents)",
        gush=payload.gush,
        helka=payload.helka,
        count=len(documents),
    )
    analysis = await pipeline.analyze_zoning(payload.gush, payload.helka, documents)
    return AnalyzeZoningResponse(
        planning_rights=analysis.rights,
        report=analysis.report,
        discrepancies=analysis.discrepancies,
        extracted_at=analysis.extracted_at,
    )


@router.post("/generate-tamhil", response_model=GenerateTamhilResponse)
async def generate_tamhil(payload: GenerateTamhilRequest, pipeline: PipelineDep) -> GenerateTamhilResponse:
    result = await pipeline.generate_unit_mix(payload.planning_rights)
    return GenerateTamhilResponse(
        tamhil=result.plan,
        discrepancies=result.discrepancies,
        generated_at=result.generated_at,
    )


@router.post("/generate-massing", response_model=GenerateMassingResponse)
async def generate_massing(payload: GenerateMassingRequest, pipeline: PipelineDep) -> GenerateMassingResponse:
    result = await pipeline.generate_massing(payload.planning_rights, payload.tamhil)
    return GenerateMassingResponse(
        alternatives=result.alternatives,
        discrepancies=result.discrepancies,
        generated_at=result.generated_at,
    )


@router.post("/analyze-reference", response_model=AnalyzeReferenceResponse)
async def analyze_reference(payload: AnalyzeReferenceRequest, pipeline: PipelineDep) -> AnalyzeReferenceResponse:
    image = Attachment.from_base64(
        payload.reference_image_base64,
        payload.mime_type,
        default_mime_type=DEFAULT_REFERENCE_MIME_TYPE,
    )
    dna = await pipeline.analyze_reference(image)
    return AnalyzeReferenceResponse(design_dna=dna)


@router.post("/generate-visualization", response_model=GenerateVisualizationResponse)
async def generate_visualization(
    payload: GenerateVisualizationRequest,
    pipeline: PipelineDep,
) -> GenerateVisualizationResponse:
    reference = None
    if payload.reference_image_base64:
        reference = Attachment.from_base64(
            payload.reference_image_base64,
            payload.mime_type,
            default_mime_type=DEFAULT_REFERENCE_MIME_TYPE,
        )
    styled = await pipeline.style_alternatives(payload.massings, payload.design_dna, reference)
    return GenerateVisualizationResponse(styled_massings=styled)


# ---------- render flow ----------
def _model_image(value: str, mime_type: str | None = None) -> Attachment:
    return Attachment.from_base64(value, mime_type, default_mime_type=DEFAULT_MODEL_MIME_TYPE)


@render_router.post("/analyze-model", response_model=AnalyzeModelResponse)
async def analyze_model(payload: ImageIn, pipeline: PipelineDep) -> AnalyzeModelResponse:
    description = await pipeline.analyze_model(_model_image(payload.image_base64, payload.mime_type))
    return AnalyzeModelResponse(description=description)


@render_router.post("/analyze-building-reference", response_model=AnalyzeBuildingReferenceResponse)
async def analyze_building_reference(
    payload: ImageIn,
    pipeline: PipelineDep,
) -> AnalyzeBuildingReferenceResponse:
    reference = await pipeline.analyze_building_reference(
        _model_image(payload.image_base64, payload.mime_type)
    )
    return AnalyzeBuildingReferenceResponse(
        description=reference.intelligence.description,
        materials=reference.materials,
        intelligence=reference.intelligence,
    )


@render_router.post("/alternatives", response_model=GenerateAlternativesResponse)
async def generate_alternatives(
    payload: GenerateAlternativesRequest,
    pipeline: PipelineDep,
) -> GenerateAlternativesResponse:
    materials = payload.detected_materials
    if payload.selected_material_ids is not None:
        selected = set(payload.selected_material_ids)
        materials = [material for material in materials if material.id in selected]
    manual = [_model_image(image) for image in payload.manual_material_images]
    alternatives = await pipeline.generate_facade_alternatives(
        _model_image(payload.model_image_base64),
        payload.model_description,
        payload.intelligence,
        materials,
        manual_materials=manual,
        environment=payload.environment,
    )
    return GenerateAlternativesResponse(alternatives=alternatives)
