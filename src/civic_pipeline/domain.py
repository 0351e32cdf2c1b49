"""Typed civic records and the normalization tables used to build them.

Records accept the camelCase keys produced by extraction and coerce
strings into dates, datetimes and amounts.
"""

from __future__ import annotations

import datetime as dt
import re
from enum import Enum
from typing import Any, Dict, Literal, Optional

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class PropositionStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    WITHDRAWN = "withdrawn"


class CommitteeType(str, Enum):
    CANDIDATE = "candidate"
    BALLOT_MEASURE = "ballot_measure"
    PAC = "pac"
    SUPER_PAC = "super_pac"
    PARTY = "party"
    SMALL_CONTRIBUTOR = "small_contributor"
    OTHER = "other"


SourceSystem = Literal["cal_access", "fec"]
SupportOrOppose = Literal["support", "oppose"]

DONOR_TYPES: Dict[str, str] = {
    "IND": "individual",
    "COM": "committee",
    "PTY": "party",
    "SCC": "individual",
    "OTH": "other",
}

SUPPORT_OR_OPPOSE: Dict[str, str] = {
    "S": "support",
    "SUPPORT": "support",
    "O": "oppose",
    "OPPOSE": "oppose",
}

_AMOUNT_NOISE = re.compile(r"[$,\s]")


def normalize_donor_type(value: Any) -> str:
    if not value:
        return "other"
    text = str(value).strip()
    if text.lower() in DONOR_TYPES.values():
        return text.lower()
    return DONOR_TYPES.get(text.upper(), "other")


def normalize_support_or_oppose(value: Any) -> Optional[str]:
    if not value:
        return None
    return SUPPORT_OR_OPPOSE.get(str(value).strip().upper())


def parse_amount(value: Any) -> Any:
    """Turn "$1,234.50" or "(500.00)" into a float; other values pass through."""
    if not isinstance(value, str):
        return value
    text = _AMOUNT_NOISE.sub("", value)
    if text.startswith("(") and text.endswith(")"):
        text = "-" + text[1:-1]
    return float(text) if text else value


def infer_source_system(category: Optional[str]) -> Optional[str]:
    if not category:
        return None
    lowered = category.lower()
    if "cal-access" in lowered or "cal_access" in lowered or "calaccess" in lowered:
        return "cal_access"
    if re.search(r"\bfec\b", lowered.replace("-", " ").replace("_", " ")):
        return "fec"
    return None


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str) and value.strip():
        try:
            return date_parser.parse(value.strip())
        except (ValueError, OverflowError):
            return value
    return value


def _parse_date(value: Any) -> Any:
    parsed = _parse_datetime(value)
    return parsed.date() if isinstance(parsed, dt.datetime) else parsed


class CivicRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Proposition(CivicRecord):
    external_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    summary: str = ""
    full_text: Optional[str] = None
    status: PropositionStatus = PropositionStatus.PENDING
    election_date: Optional[dt.date] = None
    source_url: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if not value:
            return PropositionStatus.PENDING
        lowered = str(value).strip().lower()
        for status in PropositionStatus:
            if status.value in lowered:
                return status
        return PropositionStatus.PENDING

    @field_validator("election_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return _parse_date(value)

    @model_validator(mode="after")
    def _summary_defaults_to_title(self) -> "Proposition":
        if not self.summary:
            self.summary = self.title
        return self


class Meeting(CivicRecord):
    external_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body: str = "Unknown"
    scheduled_at: dt.datetime
    location: Optional[str] = None
    agenda_url: Optional[str] = None
    video_url: Optional[str] = None

    @field_validator("scheduled_at", mode="before")
    @classmethod
    def _coerce_datetime(cls, value: Any) -> Any:
        return _parse_datetime(value)


class ContactInfo(CivicRecord):
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None


class Representative(CivicRecord):
    external_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    chamber: str = "Unknown"
    district: str = Field(min_length=1)
    party: str = Field(min_length=1)
    photo_url: Optional[str] = None
    contact_info: Optional[ContactInfo] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_contact_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        contact = dict(data.get("contactInfo") or data.get("contact_info") or {})
        for key in ("email", "phone", "address", "website"):
            flat = data.pop(key, None) or data.pop(f"contactInfo.{key}", None)
            if flat and not contact.get(key):
                contact[key] = flat
        if contact:
            data["contactInfo"] = contact
            data.pop("contact_info", None)
        return data


class Committee(CivicRecord):
    external_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    type: CommitteeType = CommitteeType.OTHER
    candidate_name: Optional[str] = None
    candidate_office: Optional[str] = None
    proposition_id: Optional[str] = None
    party: Optional[str] = None
    status: Literal["active", "terminated"] = "active"
    source_system: Optional[SourceSystem] = None
    source_url: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if not value:
            return CommitteeType.OTHER
        key = re.sub(r"[\s-]+", "_", str(value).strip().lower())
        try:
            return CommitteeType(key)
        except ValueError:
            return CommitteeType.OTHER

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if not value:
            return "active"
        return "terminated" if "terminat" in str(value).lower() else "active"


class Contribution(CivicRecord):
    external_id: Optional[str] = None
    committee_id: str = Field(min_length=1)
    donor_name: str = Field(min_length=1)
    donor_type: str = "other"
    donor_employer: Optional[str] = None
    donor_occupation: Optional[str] = None
    donor_city: Optional[str] = None
    donor_state: Optional[str] = None
    donor_zip: Optional[str] = None
    amount: float
    date: dt.date
    election_type: Optional[str] = None
    contribution_type: Optional[str] = None
    source_system: Optional[SourceSystem] = None

    @model_validator(mode="before")
    @classmethod
    def _combine_donor_name(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("donorName") or data.get("donor_name"):
            return data
        last = (data.get("donorLastName") or "").strip()
        first = (data.get("donorFirstName") or "").strip()
        if last or first:
            data = dict(data)
            data["donorName"] = f"{last}, {first}" if first and last else last or first
        return data

    @field_validator("donor_type", mode="before")
    @classmethod
    def _normalize_donor_type(cls, value: Any) -> str:
        return normalize_donor_type(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        return parse_amount(value)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return _parse_date(value)


class Expenditure(CivicRecord):
    external_id: Optional[str] = None
    committee_id: str = Field(min_length=1)
    payee_name: str = Field(min_length=1)
    amount: float
    date: dt.date
    purpose_description: Optional[str] = None
    expenditure_code: Optional[str] = None
    candidate_name: Optional[str] = None
    proposition_title: Optional[str] = None
    support_or_oppose: Optional[SupportOrOppose] = None
    source_system: Optional[SourceSystem] = None

    @field_validator("support_or_oppose", mode="before")
    @classmethod
    def _normalize_support(cls, value: Any) -> Any:
        return normalize_support_or_oppose(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        return parse_amount(value)

    @field_validator("date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return _parse_date(value)


class IndependentExpenditure(CivicRecord):
    external_id: Optional[str] = None
    committee_id: str = Field(min_length=1)
    committee_name: str = Field(min_length=1)
    candidate_name: Optional[str] = None
    proposition_title: Optional[str] = None
    support_or_oppose: SupportOrOppose = "support"
    amount: float
    date: dt.date
    election_date: Optional[dt.date] = None
    description: Optional[str] = None
    source_system: Optional[SourceSystem] = None

    @field_validator("support_or_oppose", mode="before")
    @classmethod
    def _normalize_support(cls, value: Any) -> Any:
        return normalize_support_or_oppose(value) or "support"

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        return parse_amount(value)

    @field_validator("date", "election_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> Any:
        return _parse_date(value)
