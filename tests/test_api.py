import base64
import json

import pytest

pytest.importorskip("loguru")

from httpx import ASGITransport, AsyncClient

from concepta.zoning.pipeline import ZoningPipeline
from services.api.main import app
from services.api.routes import get_pipeline
from tests.utils_zoning import (
    ScriptedCompletionClient,
    design_dna_payload,
    detected_materials_payload,
    fenced,
    intelligence_payload,
    massing_payload,
    rights_payload,
    styled_materials_payload,
    unit_mix_payload,
)

PDF_B64 = base64.b64encode(b"%PDF-1.7 fake").decode("ascii")
PNG_B64 = base64.b64encode(b"\x89PNG fake").decode("ascii")


@pytest.fixture()
def scripted():
    client = ScriptedCompletionClient()
    app.dependency_overrides[get_pipeline] = lambda: ZoningPipeline(client)
    yield client
    app.dependency_overrides.clear()


def _http() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio()
async def test_health_endpoint() -> None:
    async with _http() as client:
        response = await client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio()
async def test_analyze_returns_rights_and_report(scripted) -> None:
    scripted.responses = [fenced(rights_payload()), "Summary report"]
    body = {
        "gush": "6638",
        "helka": "102",
        "documents": [{"name": "taba.pdf", "type": "application/pdf", "base64": f"data:application/pdf;base64,{PDF_B64}"}],
    }
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze", json=body)

    assert response.status_code == 200
    payload = response.json()
    assert payload["planning_rights"]["rights"]["max_units"] == 150
    assert payload["report"] == "Summary report"
    assert payload["discrepancies"] == []
    assert scripted.calls[0]["attachments"][0].data == PDF_B64


@pytest.mark.asyncio()
async def test_analyze_without_documents_is_422(scripted) -> None:
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze", json={"gush": "6638", "helka": "102", "documents": []})

    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"
    assert response.json()["details"]["path"] == "documents"


@pytest.mark.asyncio()
async def test_unparseable_completion_is_502(scripted) -> None:
    scripted.responses = ["Sorry, I cannot help with that."]
    body = {"gush": "6638", "helka": "102", "documents": [{"base64": PDF_B64}]}
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze", json=body)

    assert response.status_code == 502
    assert response.json()["error"] == "ParseError"


@pytest.mark.asyncio()
async def test_generate_tamhil_exposes_discrepancies(scripted) -> None:
    plan = unit_mix_payload()
    plan["building_summary"]["total_units"] = 148
    scripted.responses = [fenced(plan)]
    async with _http() as client:
        response = await client.post("/v1/zoning/generate-tamhil", json={"planning_rights": rights_payload()})

    assert response.status_code == 200
    payload = response.json()
    assert payload["tamhil"]["building_summary"]["total_units"] == 148
    invariants = {d["invariant"] for d in payload["discrepancies"]}
    assert {"total_units_mismatch", "target_units_mismatch"} <= invariants


@pytest.mark.asyncio()
async def test_generate_massing(scripted) -> None:
    scripted.responses = [fenced(massing_payload())]
    body = {"planning_rights": rights_payload(), "tamhil": unit_mix_payload()}
    async with _http() as client:
        response = await client.post("/v1/zoning/generate-massing", json=body)

    assert response.status_code == 200
    assert [alt["id"] for alt in response.json()["alternatives"]] == ["A", "B", "C"]


@pytest.mark.asyncio()
async def test_analyze_reference(scripted) -> None:
    scripted.responses = [fenced(design_dna_payload())]
    body = {"reference_image_base64": f"data:image/png;base64,{PNG_B64}"}
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze-reference", json=body)

    assert response.status_code == 200
    assert response.json()["design_dna"]["architectural_style"] == "Minimalist"


@pytest.mark.asyncio()
async def test_analyze_reference_accepts_bare_base64(scripted) -> None:
    scripted.responses = [fenced(design_dna_payload())]
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze-reference", json={"reference_image_base64": PNG_B64})

    assert response.status_code == 200
    assert scripted.calls[0]["attachments"][0].mime_type == "image/jpeg"


@pytest.mark.asyncio()
async def test_analyze_reference_rejects_unsupported_image(scripted) -> None:
    body = {"reference_image_base64": f"data:image/gif;base64,{PNG_B64}"}
    async with _http() as client:
        response = await client.post("/v1/zoning/analyze-reference", json=body)

    assert response.status_code == 422
    assert scripted.calls == []


@pytest.mark.asyncio()
async def test_generate_visualization(scripted) -> None:
    scripted.responder = lambda prompt: fenced(styled_materials_payload())
    body = {
        "massings": massing_payload(),
        "design_dna": design_dna_payload(),
        "reference_image_base64": PNG_B64,
        "mime_type": "image/png",
    }
    async with _http() as client:
        response = await client.post("/v1/zoning/generate-visualization", json=body)

    assert response.status_code == 200
    styled = response.json()["styled_massings"]
    assert [item["id"] for item in styled] == ["A", "B", "C"]
    assert styled[0]["reference_image_base64"] == PNG_B64


@pytest.mark.asyncio()
async def test_provider_failure_is_502(scripted) -> None:
    scripted.fail_when = "Compact Tower"
    scripted.responder = lambda prompt: fenced(styled_materials_payload())
    body = {"massings": massing_payload(), "design_dna": design_dna_payload()}
    async with _http() as client:
        response = await client.post("/v1/zoning/generate-visualization", json=body)

    assert response.status_code == 502
    assert response.json()["error"] == "ProviderError"


@pytest.mark.asyncio()
async def test_render_analyze_model(scripted) -> None:
    scripted.responses = ["Seventeen floors, white residential slabs."]
    async with _http() as client:
        response = await client.post("/v1/render/analyze-model", json={"image_base64": PNG_B64})

    assert response.status_code == 200
    assert response.json() == {"description": "Seventeen floors, white residential slabs."}
    assert scripted.calls[0]["attachments"][0].mime_type == "image/png"


@pytest.mark.asyncio()
async def test_render_analyze_building_reference(scripted) -> None:
    scripted.responses = [json.dumps(intelligence_payload()), json.dumps(detected_materials_payload())]
    async with _http() as client:
        response = await client.post(
            "/v1/render/analyze-building-reference",
            json={"image_base64": f"data:image/webp;base64,{PNG_B64}"},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["description"] == intelligence_payload()["description"]
    assert [m["id"] for m in payload["materials"]] == ["detected-0", "detected-1"]
    assert payload["intelligence"]["human_scale"] == "Colonnade along the street"
    assert all(call["response_schema"] is not None for call in scripted.calls)


@pytest.mark.asyncio()
async def test_render_alternatives_filters_selected_materials(scripted) -> None:
    scripted.responder = lambda prompt: "rendering brief"
    materials = [dict(item, id=f"detected-{idx}") for idx, item in enumerate(detected_materials_payload())]
    body = {
        "model_image_base64": PNG_B64,
        "model_description": "Seventeen floors",
        "intelligence": intelligence_payload(),
        "detected_materials": materials,
        "selected_material_ids": ["detected-1"],
    }
    async with _http() as client:
        response = await client.post("/v1/render/alternatives", json=body)

    assert response.status_code == 200
    alternatives = response.json()["alternatives"]
    assert [alt["id"] for alt in alternatives] == ["v1", "v2", "v3"]
    assert alternatives[0]["description"] == "rendering brief"
    prompt = scripted.calls[0]["prompt"]
    assert "oak cladding" in prompt
    assert "board-formed concrete" not in prompt
    assert "Context: Dense Urban" in prompt


@pytest.mark.asyncio()
async def test_render_alternatives_require_description(scripted) -> None:
    body = {"model_image_base64": PNG_B64, "model_description": " ", "intelligence": intelligence_payload()}
    async with _http() as client:
        response = await client.post("/v1/render/alternatives", json=body)

    assert response.status_code == 422
    assert scripted.calls == []
