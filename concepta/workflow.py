"""Session state for the zoning workflow.

Stages run in a fixed order. Recording a stage result discards everything
downstream of it, so a session never mixes a new unit mix with massings
generated for an old one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from concepta.exceptions import WorkflowError
from concepta.zoning.pipeline import MassingResult, RightsAnalysis, UnitMixResult
from concepta.zoning.schema import DesignDNA, MassingAlternative, StyledMassing


class Stage(str, Enum):
    INPUT = "input"
    RIGHTS_EXTRACTED = "rights_extracted"
    UNIT_MIX_GENERATED = "unit_mix_generated"
    MASSING_SELECTED = "massing_selected"
    VISUALIZED = "visualized"
    EXPORTED = "exported"

    @property
    def position(self) -> int:
        return _ORDER.index(self)


_ORDER: List[Stage] = list(Stage)


class ZoningSession:
    def __init__(self, gush: str = "", helka: str = "") -> None:
        self.gush = gush
        self.helka = helka
        self.stage = Stage.INPUT
        self.rights: Optional[RightsAnalysis] = None
        self.unit_mix: Optional[UnitMixResult] = None
        self.massing: Optional[MassingResult] = None
        self.selected_massing_id: Optional[str] = None
        self.design_dna: Optional[DesignDNA] = None
        self.styled: Optional[StyledMassing] = None

    # ---------- guards ----------
    def _guards(self) -> Dict[Stage, Callable[[], bool]]:
        return {
            Stage.RIGHTS_EXTRACTED: lambda: self.rights is not None,
            Stage.UNIT_MIX_GENERATED: lambda: self.unit_mix is not None,
            Stage.MASSING_SELECTED: lambda: self.selected_massing is not None,
            Stage.VISUALIZED: lambda: self.styled is not None,
        }

    def can_reach(self, stage: Stage) -> bool:
        guards = self._guards()
        for step in _ORDER[1:stage.position + 1]:
            guard = guards.get(step)
            if guard is not None and not guard():
                return False
        return True

    def _blocking_stage(self, stage: Stage) -> Optional[Stage]:
        guards = self._guards()
        for step in _ORDER[1:stage.position + 1]:
            guard = guards.get(step)
            if guard is not None and not guard():
                return step
        return None

    # ---------- transitions ----------
    def go_to(self, stage: Stage) -> Stage:
        """Move to ``stage``. Backward moves always succeed.

        Raises:
            WorkflowError: A forward move whose prerequisites are missing.
        """
        stage = Stage(stage)
        if stage.position > self.stage.position:
            blocking = self._blocking_stage(stage)
            if blocking is not None:
                raise WorkflowError(
                    f"Cannot move to {stage.value}: {blocking.value} has no data",
                    {"current": self.stage.value, "target": stage.value, "missing": blocking.value},
                )
        logger.debug("Session stage {old} -> {new}", old=self.stage.value, new=stage.value)
        self.stage = stage
        return stage

    def back(self) -> Stage:
        if self.stage is Stage.INPUT:
            return self.stage
        return self.go_to(_ORDER[self.stage.position - 1])

    def _clear_after(self, stage: Stage) -> None:
        if stage.position < Stage.RIGHTS_EXTRACTED.position:
            self.rights = None
        if stage.position < Stage.UNIT_MIX_GENERATED.position:
            self.unit_mix = None
        if stage.position < Stage.MASSING_SELECTED.position:
            self.massing = None
            self.selected_massing_id = None
        if stage.position < Stage.VISUALIZED.position:
            self.design_dna = None
            self.styled = None

    # ---------- stage results ----------
    def set_parcel(self, gush: str, helka: str) -> None:
        if (gush, helka) != (self.gush, self.helka):
            self._clear_after(Stage.INPUT)
        self.gush = gush
        self.helka = helka
        self.stage = Stage.INPUT

    def record_rights(self, analysis: RightsAnalysis) -> None:
        self._clear_after(Stage.RIGHTS_EXTRACTED)
        self.rights = analysis
        self.stage = Stage.RIGHTS_EXTRACTED

    def record_unit_mix(self, result: UnitMixResult) -> None:
        if self.rights is None:
            raise WorkflowError("Unit mix requires extracted rights", {"current": self.stage.value})
        self._clear_after(Stage.UNIT_MIX_GENERATED)
        self.unit_mix = result
        self.stage = Stage.UNIT_MIX_GENERATED

    def record_massing(self, result: MassingResult) -> None:
        if self.unit_mix is None:
            raise WorkflowError("Massing requires a unit mix", {"current": self.stage.value})
        self._clear_after(Stage.UNIT_MIX_GENERATED)
        self.massing = result
        self.stage = Stage.UNIT_MIX_GENERATED

    def select_massing(self, alternative_id: str) -> MassingAlternative:
        if self.massing is None:
            raise WorkflowError("No massing alternatives to select from", {"current": self.stage.value})
        alternative = self.massing.by_id(alternative_id)
        if alternative is None:
            raise WorkflowError(
                f"Unknown massing alternative: {alternative_id}",
                {"available": [alt.id for alt in self.massing.alternatives]},
            )
        self.design_dna = None
        self.styled = None
        self.selected_massing_id = alternative.id
        self.stage = Stage.MASSING_SELECTED
        return alternative

    def record_styled(self, styled: StyledMassing) -> None:
        if self.selected_massing is None:
            raise WorkflowError("Styling requires a selected massing", {"current": self.stage.value})
        self.design_dna = styled.design_dna
        self.styled = styled
        self.stage = Stage.VISUALIZED

    @property
    def selected_massing(self) -> Optional[MassingAlternative]:
        if self.massing is None or self.selected_massing_id is None:
            return None
        return self.massing.by_id(self.selected_massing_id)

    # ---------- export ----------
    def export_project(self) -> Dict[str, Any]:
        """JSON-ready bundle of every stage result; moves the session to ``exported``."""
        self.go_to(Stage.EXPORTED)
        bundle = {
            "parcel": {"gush": self.gush, "helka": self.helka},
            "rights": self.rights.rights.model_dump(mode="json"),
            "rights_report": self.rights.report,
            "rights_discrepancies": [d.model_dump(mode="json") for d in self.rights.discrepancies],
            "extracted_at": self.rights.extracted_at.isoformat(),
            "unit_mix": self.unit_mix.plan.model_dump(mode="json"),
            "unit_mix_discrepancies": [d.model_dump(mode="json") for d in self.unit_mix.discrepancies],
            "massing_alternatives": [alt.model_dump(mode="json") for alt in self.massing.alternatives],
            "massing_discrepancies": [d.model_dump(mode="json") for d in self.massing.discrepancies],
            "selected_massing_id": self.selected_massing_id,
            "styled_massing": self.styled.model_dump(mode="json") if self.styled is not None else None,
            "exported_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("Exported project for gush {gush} helka {helka}", gush=self.gush, helka=self.helka)
        return bundle
