"""
Mixture query: fertilizers, nutrient ratio windows and target mass.

Turns a query into a linear programming task (one decision variable per
fertilizer, minimized total mass) and probes which nutrients the selected
fertilizers cannot supply in the requested proportions.

Phosphorus is the normalization anchor: its weighted sum is pinned to 1 and
every other nutrient window is expressed relative to it.
"""
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
import logging

from fertimix.services.mixture_rules import (
    DEFAULT_MASS,
    DEFAULT_RATIOS,
    P_NEIGHBOR,
    PHANTOM_FLOOR_PCT,
)
from fertimix.services.modified_simplex import (
    ConstraintOp,
    LPSolution,
    LPTask,
    SimplexError,
)

logger = logging.getLogger(__name__)


class ElemName(IntEnum):
    """Index of a macro-element in fertilizer, amount and deficit records."""
    NITROGEN = 0
    PHOSPHORUS = 1
    POTASSIUM = 2
    MAGNESIUM = 3


class ElemRangeName(Enum):
    """Elements whose ratio to phosphorus is constrained."""
    NITROGEN = "N"
    POTASSIUM = "K"
    MAGNESIUM = "Mg"


@dataclass(frozen=True)
class ElemRange:
    low: float
    high: float

    @classmethod
    def try_new(cls, low: float, high: float) -> Optional["ElemRange"]:
        result = cls(low, high)
        return result if result.is_valid() else None

    def is_valid(self) -> bool:
        return self.low > 0.0 and self.high > 0.0 and self.low <= self.high


def _default_range(key: str):
    return lambda: ElemRange(*DEFAULT_RATIOS[key])


@dataclass(frozen=True)
class ElemRatios:
    """Ratios of macro-elements to phosphorus."""
    n_to_p: ElemRange = field(default_factory=_default_range("N"))
    k_to_p: ElemRange = field(default_factory=_default_range("K"))
    mg_to_p: ElemRange = field(default_factory=_default_range("Mg"))

    def all_valid(self) -> bool:
        return self.n_to_p.is_valid() and self.k_to_p.is_valid() and self.mg_to_p.is_valid()

    def __getitem__(self, name: ElemRangeName) -> ElemRange:
        return (self.n_to_p, self.k_to_p, self.mg_to_p)[_RANGE_INDEX[name]]

    def with_range(self, name: ElemRangeName, value: ElemRange) -> "ElemRatios":
        field_name = ("n_to_p", "k_to_p", "mg_to_p")[_RANGE_INDEX[name]]
        return replace(self, **{field_name: value})


_RANGE_INDEX = {
    ElemRangeName.NITROGEN: 0,
    ElemRangeName.POTASSIUM: 1,
    ElemRangeName.MAGNESIUM: 2,
}


@dataclass(frozen=True)
class Fertilizer:
    """
    Everything known about a fertilizer.

    Used both for the built-in catalog and for user-added products; in the
    latter case Cl and S content is usually unknown and left False.

    The id only disambiguates otherwise identical entries. It is handed out
    by a FertilizerIdGenerator and never takes part in the arithmetic.
    """
    name: str
    n: float = 0.0
    p: float = 0.0
    k: float = 0.0
    mg: float = 0.0
    with_cl: bool = False
    with_s: bool = False
    # Maximum available mass of this fertilizer
    limit: Optional[float] = None
    id: int = -1

    @property
    def nutrients(self) -> Tuple[float, float, float, float]:
        """Concentrations (%) ordered by ElemName."""
        return (self.n, self.p, self.k, self.mg)

    def __getitem__(self, elem: ElemName) -> float:
        return self.nutrients[elem]

    def content_id(self) -> str:
        return f"{self.name}_{self.n}_{self.p}_{self.k}_{self.mg}"

    def with_limit(self, limit: Optional[float]) -> "Fertilizer":
        return replace(self, limit=limit)

    def with_id(self, new_id: int) -> "Fertilizer":
        return replace(self, id=new_id)


@dataclass
class Amounts:
    """
    Either element concentrations (%) or absolute element masses (kg),
    depending on the stage of the calculation.
    """
    n: float = 0.0
    p: float = 0.0
    k: float = 0.0
    mg: float = 0.0

    def __getitem__(self, elem: ElemName) -> float:
        return (self.n, self.p, self.k, self.mg)[elem]


@dataclass(frozen=True)
class Deficites:
    """True means the element is lacking in the mixture."""
    n: bool = False
    p: bool = False
    k: bool = False
    mg: bool = False

    def any(self) -> bool:
        return self.n or self.p or self.k or self.mg

    def __getitem__(self, elem: ElemName) -> bool:
        return (self.n, self.p, self.k, self.mg)[elem]


# Phantom fertilizers get ids outside of the generator's range
PHANTOM_IDS = {
    ElemName.NITROGEN: -10,
    ElemName.PHOSPHORUS: -11,
    ElemName.POTASSIUM: -12,
    ElemName.MAGNESIUM: -13,
}


def _add_range_constraints(task: LPTask, coefficients: Sequence[float], elem_range: ElemRange):
    """
    Add two rows to the system at once:

        c1 * x1 + c2 * x2 + ... >= low
        c1 * x1 + c2 * x2 + ... <= high
    """
    task.add_constr(coefficients, ConstraintOp.GREATER_OR_EQUAL, elem_range.low)
    task.add_constr(coefficients, ConstraintOp.LESS_OR_EQUAL, elem_range.high)


def build_task(
    fertilizers: Sequence[Fertilizer],
    n_ratio: ElemRange,
    k_ratio: ElemRange,
    mg_ratio: ElemRange,
    mass: float,
    extra_fertilizers: Sequence[Fertilizer] = (),
) -> LPTask:
    """
    Build the linear programming task for a mixture.

    Args:
        fertilizers: Real fertilizers, one decision variable each
        n_ratio: N:P window
        k_ratio: K:P window
        mg_ratio: Mg:P window
        mass: Target mass of the mixture, must be positive
        extra_fertilizers: Appended after the real ones (phantoms when probing)

    Returns:
        LPTask minimizing the summed mass of all fertilizers
    """
    if not mass > 0.0:
        raise ValueError(f"Mixture mass must be positive, got {mass}")

    p_ratio = ElemRange(1.0 - P_NEIGHBOR, 1.0 + P_NEIGHBOR)
    all_fertilizers = list(fertilizers) + list(extra_fertilizers)
    num_ferts = len(all_fertilizers)
    task = LPTask([1.0] * num_ferts)

    elem_constraints: List[List[float]] = [[] for _ in ElemName]
    # all but one coefficient are 1.0
    limit_buffer = [1.0] * num_ferts
    for fert_idx, fertilizer in enumerate(all_fertilizers):
        for elem in ElemName:
            elem_constraints[elem].append(fertilizer[elem] / 100.0)
        if fertilizer.limit is not None:
            if not fertilizer.limit > 0.0:
                raise ValueError(f"Limit of '{fertilizer.name}' must be positive, got {fertilizer.limit}")
            # R = limit / mass is the largest share of fertilizer j in the mixture,
            # and mass = x1 + x2 + ... + xn, so xj / (x1 + ... + xn) <= R.
            # Canonical form: x1 + x2 + ... + (1 - 1/R) * xj >= 0
            max_rate = fertilizer.limit / mass
            limit_buffer[fert_idx] = 1.0 - 1.0 / max_rate
            task.add_constr(limit_buffer, ConstraintOp.GREATER_OR_EQUAL, 0.0)
            limit_buffer[fert_idx] = 1.0

    _add_range_constraints(task, elem_constraints[ElemName.NITROGEN], n_ratio)
    _add_range_constraints(task, elem_constraints[ElemName.POTASSIUM], k_ratio)
    _add_range_constraints(task, elem_constraints[ElemName.MAGNESIUM], mg_ratio)
    _add_range_constraints(task, elem_constraints[ElemName.PHOSPHORUS], p_ratio)
    return task


@dataclass
class MixtureQuery:
    fertilizers: List[Fertilizer]
    n_ratio: ElemRange
    k_ratio: ElemRange
    mg_ratio: ElemRange
    mass: float = DEFAULT_MASS

    @classmethod
    def from_ratios(
        cls,
        fertilizers: Sequence[Fertilizer],
        ratios: ElemRatios,
        mass: float = DEFAULT_MASS,
    ) -> "MixtureQuery":
        return cls(
            fertilizers=list(fertilizers),
            n_ratio=ratios.n_to_p,
            k_ratio=ratios.k_to_p,
            mg_ratio=ratios.mg_to_p,
            mass=mass,
        )

    @property
    def ratios(self) -> ElemRatios:
        return ElemRatios(n_to_p=self.n_ratio, k_to_p=self.k_ratio, mg_to_p=self.mg_ratio)

    def is_valid(self) -> bool:
        return bool(self.fertilizers) and self.ratios.all_valid() and self.mass > 0.0

    def build_task(self, extra_fertilizers: Sequence[Fertilizer] = ()) -> LPTask:
        """Build the constraint system for this query."""
        return build_task(
            self.fertilizers,
            self.n_ratio,
            self.k_ratio,
            self.mg_ratio,
            self.mass,
            extra_fertilizers,
        )

    def find_solution(self) -> LPSolution:
        """
        Solve the mixture task.

        Raises:
            SimplexError: The configuration cannot be satisfied
        """
        return self.build_task().solve_min()

    def phantom_concentration(self, elem: ElemName) -> float:
        """Half of the smallest positive concentration of elem among the fertilizers."""
        positive = [f[elem] for f in self.fertilizers if f[elem] > 0.0]
        return 0.5 * (min(positive) if positive else PHANTOM_FLOOR_PCT)

    def phantom_fertilizers(self) -> List[Fertilizer]:
        """One pseudo-fertilizer per element, each carrying only that element."""
        phantoms = []
        for elem in ElemName:
            nutrients = [0.0] * len(ElemName)
            nutrients[elem] = self.phantom_concentration(elem)
            phantoms.append(Fertilizer(
                f"phantom {elem.name.lower()}",
                *nutrients,
                id=PHANTOM_IDS[elem],
            ))
        return phantoms

    def find_lacking_amounts(self) -> Amounts:
        """
        Estimate how much of each element (kg) the mixture lacks.

        Pseudo-fertilizers with a single element at extremely low concentration
        are added to the task. If the solver picks one, its element is badly
        missing, and the picked mass shows by how much.

        A failed probe reports nothing as lacking.
        """
        phantoms = self.phantom_fertilizers()
        lacking = Amounts()
        try:
            solution = self.build_task(phantoms).solve_min()
        except SimplexError as e:
            logger.warning(f"[Deficit] Probe failed ({e.kind}): {e}; reporting no deficit")
            return lacking
        if not solution.function_value > 0.0:
            logger.warning(f"[Deficit] Probe objective {solution.function_value} is not positive")
            return lacking

        scale_factor = self.mass / solution.function_value
        offset = len(self.fertilizers)
        for i, fert in enumerate(phantoms):
            weight = scale_factor * solution.params[offset + i]
            lacking.n += weight * fert.n / 100.0
            lacking.p += weight * fert.p / 100.0
            lacking.k += weight * fert.k / 100.0
            lacking.mg += weight * fert.mg / 100.0
        return lacking

    def find_deficites(self) -> Deficites:
        """Which elements the mixture cannot supply in the requested proportions."""
        lacking = self.find_lacking_amounts()
        deficites = Deficites(
            n=lacking.n > 0.0,
            p=lacking.p > 0.0,
            k=lacking.k > 0.0,
            mg=lacking.mg > 0.0,
        )
        if deficites.any():
            logger.info(f"[Deficit] Lacking amounts: {lacking}")
        return deficites


def probe_deficiency(
    fertilizers: Sequence[Fertilizer],
    ratios: ElemRatios,
    mass: float,
) -> Deficites:
    """Report the elements the given fertilizers cannot supply."""
    return MixtureQuery.from_ratios(fertilizers, ratios, mass).find_deficites()
