"""
Mixture Calculator Service.

Assembles a MixtureQuery from a validated request (built-in fertilizers with
their limits first, then user-added ones), solves it and, whatever the solver
outcome, probes nutrient deficits so the caller can explain an unsatisfiable
configuration.

Solver failures are not exposed by kind to the end user: every SimplexError
means "this configuration cannot be satisfied" and the deficit probe tells why.
"""
from typing import List, Optional
from dataclasses import dataclass, field, replace
import logging

from fertimix.schemas.mixture_schemas import (
    DeficitesResponse,
    FertilizerSchema,
    MixtureCalculationResponse,
    MixtureComponent,
    MixtureRequest,
)
from fertimix.services.fertilizer_catalog import FertilizerCatalog
from fertimix.services.mixture_query import Deficites, Fertilizer, MixtureQuery
from fertimix.services.modified_simplex import LPSolution, SimplexError

logger = logging.getLogger(__name__)


@dataclass
class MixtureCalculation:
    query: MixtureQuery
    solution: Optional[LPSolution]
    deficites: Deficites = field(default_factory=Deficites)
    error_kind: Optional[str] = None

    @property
    def solved(self) -> bool:
        return self.solution is not None

    def to_response(self) -> MixtureCalculationResponse:
        components: List[MixtureComponent] = []
        if self.solution is not None:
            for fert, value in zip(self.query.fertilizers, self.solution.params):
                components.append(MixtureComponent(fertilizer_id=fert.id, name=fert.name, value=value))
        return MixtureCalculationResponse(
            solved=self.solved,
            function_value=self.solution.function_value if self.solution is not None else None,
            mass=self.query.mass,
            components=components,
            error_kind=self.error_kind,
            deficites=DeficitesResponse.model_validate(self.deficites),
        )


class MixtureCalculator:
    """
    Calculator for fertilizer mixtures.

    Methodology:
    1. Resolve built-in fertilizers by id and attach requested limits
    2. Create user-added fertilizers with fresh ids, inheriting Cl/S flags
       from a built-in fertilizer with identical composition
    3. Solve the minimum-mass LP
    4. Probe deficits with phantom single-element fertilizers
    """

    def __init__(self, catalog: Optional[FertilizerCatalog] = None):
        self.catalog = catalog or FertilizerCatalog()

    def _added_fertilizer(self, schema: FertilizerSchema) -> Fertilizer:
        fertilizer = self.catalog.new_fertilizer(
            name=schema.name,
            n=schema.n,
            p=schema.p,
            k=schema.k,
            mg=schema.mg,
            with_cl=bool(schema.with_cl),
            with_s=bool(schema.with_s),
            limit=schema.limit,
        )
        if schema.with_cl is None or schema.with_s is None:
            match = self.catalog.find_by_content(fertilizer)
            if match is not None:
                fertilizer = replace(
                    fertilizer,
                    with_cl=match.with_cl if schema.with_cl is None else schema.with_cl,
                    with_s=match.with_s if schema.with_s is None else schema.with_s,
                )
        return fertilizer

    def build_query(self, request: MixtureRequest) -> MixtureQuery:
        """Snapshot a request into a query. Unknown built-in ids raise KeyError."""
        fertilizers: List[Fertilizer] = []
        for selection in request.permanent:
            fertilizers.append(self.catalog.get(selection.id).with_limit(selection.limit))
        for added in request.added:
            fertilizers.append(self._added_fertilizer(added))
        return MixtureQuery.from_ratios(fertilizers, request.ratios(), request.mass)

    def calculate(self, request: MixtureRequest) -> MixtureCalculation:
        query = self.build_query(request)
        solution: Optional[LPSolution] = None
        error_kind: Optional[str] = None
        try:
            solution = query.find_solution()
            logger.info(
                f"[Calculator] Solved {len(query.fertilizers)} fertilizers, "
                f"objective={solution.function_value:.6f}"
            )
        except SimplexError as e:
            error_kind = e.kind
            logger.warning(f"[Calculator] Unsatisfiable configuration ({e.kind}): {e}")

        deficites = query.find_deficites()
        return MixtureCalculation(
            query=query,
            solution=solution,
            deficites=deficites,
            error_kind=error_kind,
        )
