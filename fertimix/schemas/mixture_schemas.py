"""
Pydantic schemas for mixture calculations.
Validate user input before it reaches the query builder and serialize results.
"""
from pydantic import BaseModel, Field, model_validator
from typing import Optional, List

from fertimix.services.mixture_rules import DEFAULT_MASS, DEFAULT_RATIOS
from fertimix.services.mixture_query import ElemRange, ElemRatios


# ==================== INPUT SCHEMAS ====================

class ElemRangeSchema(BaseModel):
    """Admissible window for an element-to-phosphorus ratio."""
    from_: float = Field(..., alias="from", gt=0, description="Lower bound of the ratio")
    to: float = Field(..., gt=0, description="Upper bound of the ratio")

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def check_order(self):
        if self.from_ > self.to:
            raise ValueError(f"Range lower bound {self.from_} exceeds upper bound {self.to}")
        return self

    def to_domain(self) -> ElemRange:
        return ElemRange(self.from_, self.to)


def _default_range_schema(key: str):
    low, high = DEFAULT_RATIOS[key]
    return lambda: ElemRangeSchema(**{"from": low, "to": high})


class FertilizerSchema(BaseModel):
    """A fertilizer entered by the user."""
    name: str = Field(..., min_length=1, max_length=100)
    n: float = Field(default=0, ge=0, le=100, description="N %")
    p: float = Field(default=0, ge=0, le=100, description="P %")
    k: float = Field(default=0, ge=0, le=100, description="K %")
    mg: float = Field(default=0, ge=0, le=100, description="Mg %")
    # Unknown flags are inherited from a matching built-in fertilizer
    with_cl: Optional[bool] = Field(None, description="Contains chlorine")
    with_s: Optional[bool] = Field(None, description="Contains sulfur")
    limit: Optional[float] = Field(None, gt=0, description="Available mass, kg")


class PermanentSelection(BaseModel):
    """A built-in fertilizer picked by id, optionally with limited availability."""
    id: int = Field(..., ge=0)
    limit: Optional[float] = Field(None, gt=0, description="Available mass, kg")


class MixtureRequest(BaseModel):
    """Request schema for a mixture calculation."""
    permanent: List[PermanentSelection] = Field(default_factory=list)
    added: List[FertilizerSchema] = Field(default_factory=list)

    n_ratio: ElemRangeSchema = Field(default_factory=_default_range_schema("N"), description="N:P window")
    k_ratio: ElemRangeSchema = Field(default_factory=_default_range_schema("K"), description="K:P window")
    mg_ratio: ElemRangeSchema = Field(default_factory=_default_range_schema("Mg"), description="Mg:P window")

    mass: float = Field(default=DEFAULT_MASS, gt=0, description="Target mixture mass, kg")

    @model_validator(mode="after")
    def check_fertilizers(self):
        if not self.permanent and not self.added:
            raise ValueError("At least one fertilizer is required")
        return self

    def ratios(self) -> ElemRatios:
        return ElemRatios(
            n_to_p=self.n_ratio.to_domain(),
            k_to_p=self.k_ratio.to_domain(),
            mg_to_p=self.mg_ratio.to_domain(),
        )


# ==================== RESULT SCHEMAS ====================

class DeficitesResponse(BaseModel):
    """True means the element is lacking."""
    n: bool
    p: bool
    k: bool
    mg: bool

    class Config:
        from_attributes = True


class MixtureComponent(BaseModel):
    """Unscaled solver value for one fertilizer of the query."""
    fertilizer_id: int
    name: str
    value: float


class MixtureCalculationResponse(BaseModel):
    """Raw solver outcome; display scaling is left to the consumer."""
    solved: bool
    function_value: Optional[float] = None
    mass: float
    components: List[MixtureComponent] = Field(default_factory=list)
    error_kind: Optional[str] = None
    deficites: DeficitesResponse
