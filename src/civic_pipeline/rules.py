"""Extraction rule set schema.

Model output is untrusted input. :func:`validate_rule_set` checks the shape
first and only then converts the payload into typed rule objects, returning a
tagged :class:`RuleSetValidation` instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError

ExtractionMethod = Literal["text", "attribute", "html", "regex"]
TransformType = Literal[
    "date_parse",
    "trim",
    "lowercase",
    "uppercase",
    "strip_html",
    "url_resolve",
    "regex_replace",
    "name_format",
]


class _RuleModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class FieldTransform(_RuleModel):
    """A post-extraction transform and its string parameters."""

    type: TransformType
    params: Dict[str, str] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _lower_type(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("params", mode="before")
    @classmethod
    def _stringify_params(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if v is not None}
        return value


class FieldMapping(_RuleModel):
    """How to extract one field from an item node."""

    field_name: str = Field(min_length=1)
    selector: str = ""
    extraction_method: ExtractionMethod = "text"
    attribute: Optional[str] = None
    regex_pattern: Optional[str] = None
    regex_group: Optional[int] = Field(default=None, ge=0)
    transform: List[FieldTransform] = Field(default_factory=list)
    required: bool = False
    default_value: Optional[str] = None

    @field_validator("extraction_method", mode="before")
    @classmethod
    def _lower_method(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("selector", mode="before")
    @classmethod
    def _selector_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("transform", mode="before")
    @classmethod
    def _wrap_single_transform(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value

    @field_validator("default_value", mode="before")
    @classmethod
    def _stringify_default(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @model_validator(mode="before")
    @classmethod
    def _method_specific_options(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        method = str(data.get("extractionMethod", data.get("extraction_method", "text"))).strip().lower()
        for key in ("attribute", "regexPattern", "regex_pattern"):
            if data.get(key) in ("", None):
                data.pop(key, None)
        if method != "attribute":
            data.pop("attribute", None)
        if method != "regex":
            data.pop("regexPattern", None)
            data.pop("regex_pattern", None)
        return data

    @model_validator(mode="after")
    def _check_method_options(self) -> "FieldMapping":
        if self.extraction_method == "attribute" and not self.attribute:
            raise ValueError(f'field "{self.field_name}" uses attribute extraction without an attribute')
        if self.extraction_method == "regex" and not self.regex_pattern:
            raise ValueError(f'field "{self.field_name}" uses regex extraction without a regexPattern')
        return self


class PaginationRule(_RuleModel):
    """How to reach further pages of the same list."""

    type: Literal["next_link", "load_more", "url_pattern", "none"] = "none"
    next_selector: Optional[str] = None
    url_pattern: Optional[str] = None
    max_pages: int = Field(default=5, ge=1)


class PreprocessingStep(_RuleModel):
    """A DOM rewrite applied before extraction."""

    type: Literal["remove_elements", "unwrap_elements", "merge_tables"]
    selector: str = Field(min_length=1)


class ExtractionRuleSet(_RuleModel):
    """The AI-derived recipe for one page and data type."""

    container_selector: str = Field(min_length=1)
    item_selector: str = Field(min_length=1)
    field_mappings: List[FieldMapping] = Field(min_length=1)
    pagination: Optional[PaginationRule] = None
    preprocessing: List[PreprocessingStep] = Field(default_factory=list)
    analysis_notes: Optional[str] = None

    @field_validator("preprocessing", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def required_fields(self) -> List[str]:
        return [m.field_name for m in self.field_mappings if m.required]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the model emits."""
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass
class RuleSetValidation:
    """Tagged result of validating untrusted rule-set JSON."""

    rules: Optional[ExtractionRuleSet] = None
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.rules is not None

    def unwrap(self) -> ExtractionRuleSet:
        if self.rules is None:
            raise self.error or ValidationError("Rule set validation failed")
        return self.rules


def _shape_error(data: Any) -> Optional[ValidationError]:
    if not isinstance(data, dict):
        return ValidationError(
            f"Extraction rules must be a JSON object, got {type(data).__name__}",
        )
    for key in ("containerSelector", "itemSelector"):
        value = data.get(key, data.get(_snake(key)))
        if not isinstance(value, str) or not value.strip():
            return ValidationError(f"LLM output missing required field: {key}", field=key)
    mappings = data.get("fieldMappings", data.get("field_mappings"))
    if not isinstance(mappings, list) or not mappings:
        return ValidationError("LLM output missing or empty: fieldMappings", field="fieldMappings")
    return None


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def validate_rule_set(data: Any) -> RuleSetValidation:
    """Validate a decoded JSON payload and convert it into an ExtractionRuleSet."""
    error = _shape_error(data)
    if error is not None:
        return RuleSetValidation(error=error)

    try:
        rules = ExtractionRuleSet.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        path = ".".join(str(part) for part in first.get("loc", ()))
        return RuleSetValidation(
            error=ValidationError(
                f"Invalid extraction rules at {path or '<root>'}: {first.get('msg')}",
                field=path or None,
            )
        )
    return RuleSetValidation(rules=rules)
