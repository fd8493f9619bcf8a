from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from .reconcile.identifiers import IdentifierKind


class Stage(str, Enum):
    PAINT = "pintura"
    FRAME = "chasis"
    PRE_ASSEMBLY = "premontaje"
    FINAL_ASSEMBLY = "montaje"


@dataclass(frozen=True)
class StageProfile:
    stage: Stage
    code: str
    title: str
    identifier_kind: IdentifierKind
    sectioned: bool
    default_section: str
    aux_required: Tuple[str, ...] = ()
    uses_color_options: bool = False
    sort_color_options: bool = False
    requires_known_identifier: bool = False
    auto_finalize: bool = False
    prompt_requires_progress: bool = False

    @property
    def identifier_field(self) -> str:
        return "vin" if self.identifier_kind is IdentifierKind.VIN else "color"


PROFILES: Dict[Stage, StageProfile] = {
    Stage.PAINT: StageProfile(
        stage=Stage.PAINT,
        code="PINTURA",
        title="Pintura",
        identifier_kind=IdentifierKind.COLOR,
        sectioned=True,
        default_section="Partes",
        aux_required=("ral",),
    ),
    Stage.FRAME: StageProfile(
        stage=Stage.FRAME,
        code="CHASIS",
        title="Chasis",
        identifier_kind=IdentifierKind.VIN,
        sectioned=False,
        default_section="Chasis",
        prompt_requires_progress=True,
    ),
    Stage.PRE_ASSEMBLY: StageProfile(
        stage=Stage.PRE_ASSEMBLY,
        code="PREMONTAJE",
        title="Premontaje",
        identifier_kind=IdentifierKind.COLOR,
        sectioned=True,
        default_section="Fase 1",
        uses_color_options=True,
        sort_color_options=True,
    ),
    Stage.FINAL_ASSEMBLY: StageProfile(
        stage=Stage.FINAL_ASSEMBLY,
        code="MONTAJE",
        title="Montaje",
        identifier_kind=IdentifierKind.VIN,
        sectioned=True,
        default_section="Fase 1",
        aux_required=("color",),
        uses_color_options=True,
        requires_known_identifier=True,
        auto_finalize=True,
    ),
}


def get_profile(stage: Stage | str) -> StageProfile:
    try:
        key = Stage(str(stage.value if isinstance(stage, Stage) else stage).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(s.value for s in Stage)
        raise ValueError(f"Unknown stage '{stage}'. Expected one of: {allowed}") from exc
    return PROFILES[key]
