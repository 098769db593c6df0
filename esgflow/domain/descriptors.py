from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError as PydanticValidationError

from esgflow.core.errors import ConfigurationError


class _Descriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# Transforms applied by mapping execution to each mapped field.


class SumTransform(_Descriptor):
    type: Literal["sum"] = "sum"
    aggregation: Literal["period"] = "period"


class GroupByTransform(_Descriptor):
    type: Literal["group_by"] = "group_by"
    field: str = Field(min_length=1)


class ConvertUnitTransform(_Descriptor):
    type: Literal["convert_unit"] = "convert_unit"
    factor: float
    aggregation: Literal["period"] = "period"


Transform = Annotated[
    Union[SumTransform, GroupByTransform, ConvertUnitTransform],
    Field(discriminator="type"),
]


# Formulas evaluated by KPI rules over summed observations.


class FieldSumFormula(_Descriptor):
    type: Literal["field_sum"] = "field_sum"
    field: str = Field(min_length=1)


class SumFormula(_Descriptor):
    type: Literal["sum"] = "sum"
    fields: list[str] = Field(min_length=1)


class RatioFormula(_Descriptor):
    type: Literal["ratio"] = "ratio"
    numerator: str = Field(min_length=1)
    denominator: str = Field(min_length=1)


Formula = Annotated[
    Union[FieldSumFormula, SumFormula, RatioFormula],
    Field(discriminator="type"),
]


_transform_adapter: TypeAdapter[Any] = TypeAdapter(Transform)
_formula_adapter: TypeAdapter[Any] = TypeAdapter(Formula)


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", str(exc))
    return f"{location}: {message}" if location else message


def parse_transform(raw: Any) -> SumTransform | GroupByTransform | ConvertUnitTransform:
    # Missing transforms fall back to the per-period sum.
    if raw is None or raw == {}:
        return SumTransform()
    try:
        return _transform_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid transform descriptor: {_describe(exc)}") from exc


def parse_formula(raw: Any) -> FieldSumFormula | SumFormula | RatioFormula:
    try:
        return _formula_adapter.validate_python(raw)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid formula descriptor: {_describe(exc)}") from exc


def formula_inputs(formula: FieldSumFormula | SumFormula | RatioFormula) -> list[str]:
    # Metric codes a formula reads, in declaration order.
    if isinstance(formula, FieldSumFormula):
        return [formula.field]
    if isinstance(formula, SumFormula):
        return list(formula.fields)
    return [formula.numerator, formula.denominator]
