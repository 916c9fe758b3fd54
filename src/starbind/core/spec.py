"""
StarBind Core - Binding Specification

Immutable description of one binding and its persisted form. Saved
configurations store bindings as ``{componentId, property, expression, mode,
transform?}``; older faceplates used ``component`` instead of
``componentId`` and may carry the legacy ``twoWay`` mode. All of these load
into the same ``BindingSpec``.
"""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidPathSyntax
from .paths import BindingMode, ParsedExpression, infer_mode, parse_expression, parse_transform


class BindingSpec(BaseModel):
    """One binding of a component property to an expression."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    component_id: str = Field(
        validation_alias=AliasChoices("componentId", "component", "component_id"),
        serialization_alias="componentId",
    )
    property_name: str = Field(
        validation_alias=AliasChoices("property", "property_name"),
        serialization_alias="property",
    )
    expression: str
    mode: BindingMode = BindingMode.FIELD
    transform: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _infer_mode(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("mode") and isinstance(data.get("expression"), str):
            data = dict(data)
            try:
                data["mode"] = infer_mode(data["expression"].strip())
            except InvalidPathSyntax:
                # Let expression validation report the problem at parse time.
                data["mode"] = BindingMode.SCRIPT
        return data

    @field_validator("mode", mode="before")
    @classmethod
    def _coerce_mode(cls, value: Any) -> Any:
        return BindingMode.coerce(value)

    @field_validator("transform", mode="before")
    @classmethod
    def _blank_transform(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def key(self) -> str:
        """``component:property`` key used for value snapshots."""
        return f"{self.component_id}:{self.property_name}"

    def parse(self) -> ParsedExpression:
        """
        Parse the main expression.

        Raises:
            InvalidPathSyntax
        """
        return parse_expression(self.expression, self.mode)

    def parse_transform(self) -> Optional[ParsedExpression]:
        if self.transform is None:
            return None
        return parse_transform(self.transform)

    def to_persisted(self) -> Dict[str, Any]:
        """Serialize to the saved-configuration shape."""
        data = self.model_dump(by_alias=True, exclude_none=True, exclude={"description"})
        data["mode"] = self.mode.value
        return data

    @classmethod
    def from_persisted(cls, record: Dict[str, Any]) -> "BindingSpec":
        return cls.model_validate(record)


def load_bindings(records: Iterable[Dict[str, Any]]) -> List[BindingSpec]:
    """Validate a list of persisted binding records."""
    return [BindingSpec.from_persisted(record) for record in records]


__all__ = ["BindingSpec", "load_bindings"]
