"""Tests for mapping raw records onto typed civic records."""

import datetime as dt

import pytest

from civic_pipeline.domain import (
    Committee,
    CommitteeType,
    Contribution,
    Expenditure,
    IndependentExpenditure,
    Meeting,
    PropositionStatus,
    Representative,
    normalize_donor_type,
    parse_amount,
)
from civic_pipeline.mapper import DomainMapper, campaign_finance_record_type
from civic_pipeline.models import DataSourceConfig, RawExtractionResult


def _source(data_type, category=None):
    return DataSourceConfig(
        url="https://example.gov/list",
        data_type=data_type,
        content_goal="Extract the records on this page",
        category=category,
    )


def _raw(*items, warnings=None):
    return RawExtractionResult(items=list(items), success=bool(items), warnings=list(warnings or []))


def test_partial_failure_keeps_valid_propositions():
    raw = _raw(
        {"externalId": "PROP-1", "title": "Housing Bond"},
        {"invalid": True},
        {"externalId": "PROP-2", "title": "Water Storage", "status": "Passed by voters", "electionDate": "November 5, 2024"},
    )

    result = DomainMapper().map(raw, _source("propositions"))

    assert result.success
    assert [p.external_id for p in result.items] == ["PROP-1", "PROP-2"]
    assert result.items_failed == 1
    assert 'Item 1: Required field "externalId" missing' in result.warnings
    assert result.items[0].summary == "Housing Bond"
    assert result.items[0].status == PropositionStatus.PENDING
    assert result.items[1].status == PropositionStatus.PASSED
    assert result.items[1].election_date == dt.date(2024, 11, 5)


def test_all_items_failing_is_unsuccessful():
    result = DomainMapper().map(_raw({"title": "No id"}), _source("propositions"))

    assert not result.success
    assert result.items == []
    assert result.items_failed == 1


def test_raw_warnings_and_errors_are_preserved():
    raw = _raw({"externalId": "PROP-1", "title": "Housing Bond"}, warnings=["Multiple containers found"])
    raw.errors.append("earlier problem")

    result = DomainMapper().map(raw, _source("propositions"))

    assert result.warnings == ["Multiple containers found"]
    assert result.errors == ["earlier problem"]


def test_unknown_data_type_is_reported_not_raised():
    result = DomainMapper().map(_raw({"externalId": "Z-1"}), _source("zoning"))

    assert not result.success
    assert result.items == []
    assert "Unknown data type: zoning" in result.errors
    assert result.items_failed == 1


@pytest.mark.parametrize("category,expected", [("Assembly", "Assembly"), ("Senate", "Senate"), (None, "Unknown")])
def test_representative_chamber_defaults_to_category(category, expected):
    raw = _raw({"externalId": "ca-30", "name": "Jane Doe", "district": "District 30", "party": "Democratic"})

    result = DomainMapper().map(raw, _source("representatives", category))

    assert result.items[0].chamber == expected


def test_representative_contact_fields_are_folded():
    raw = _raw(
        {
            "externalId": "ca-30",
            "name": "Jane Doe",
            "district": "District 30",
            "party": "Democratic",
            "email": "jane.doe@example.gov",
            "phone": "(916) 555-0100",
            "photoUrl": "https://example.gov/jane.jpg",
        }
    )

    rep = DomainMapper().map(raw, _source("representatives", "Assembly")).items[0]

    assert isinstance(rep, Representative)
    assert rep.contact_info.email == "jane.doe@example.gov"
    assert rep.contact_info.phone == "(916) 555-0100"
    data = rep.to_dict()
    assert data["contactInfo"] == {"email": "jane.doe@example.gov", "phone": "(916) 555-0100"}
    assert data["photoUrl"] == "https://example.gov/jane.jpg"
    assert data["externalId"] == "ca-30"


def test_representative_requires_party():
    raw = _raw({"externalId": "ca-30", "name": "Jane Doe", "district": "District 30"})

    result = DomainMapper().map(raw, _source("representatives", "Assembly"))

    assert not result.success
    assert result.warnings == ['Item 0: Required field "party" missing']


def test_meeting_body_defaults_and_datetime_parsing():
    raw = _raw({"externalId": "m-1", "title": "Regular Meeting", "scheduledAt": "March 5, 2024 6:30 PM"})

    meeting = DomainMapper().map(raw, _source("meetings", "City Council")).items[0]

    assert isinstance(meeting, Meeting)
    assert meeting.body == "City Council"
    assert meeting.scheduled_at == dt.datetime(2024, 3, 5, 18, 30)


def test_meeting_without_category_uses_unknown_body():
    raw = _raw({"externalId": "m-1", "title": "Regular Meeting", "scheduledAt": "2024-03-05T18:30:00"})

    assert DomainMapper().map(raw, _source("meetings")).items[0].body == "Unknown"


@pytest.mark.parametrize(
    "category,record_type",
    [
        ("Committees", Committee),
        ("Independent Expenditures", IndependentExpenditure),
        ("Form S496 filings", IndependentExpenditure),
        ("Expenditures", Expenditure),
        ("Contributions", Contribution),
        ("Anything else", Contribution),
        (None, Contribution),
    ],
)
def test_campaign_finance_routing(category, record_type):
    assert campaign_finance_record_type(category) is record_type


def test_contribution_normalization():
    raw = _raw(
        {
            "committeeId": "1234567",
            "donorFirstName": "Jane",
            "donorLastName": "Doe",
            "donorType": "IND",
            "amount": "$1,234.50",
            "date": "03/05/2024",
        },
        {"committeeId": "1234567", "donorName": "Acme PAC", "donorType": "COM", "amount": "250", "date": "2024-03-06"},
        {"committeeId": "1234567", "donorName": "Someone", "amount": "(50.00)", "date": "2024-03-07"},
    )

    result = DomainMapper().map(raw, _source("campaign_finance", "CAL-ACCESS contributions"))

    first, second, third = result.items
    assert first.donor_name == "Doe, Jane"
    assert first.donor_type == "individual"
    assert first.amount == 1234.5
    assert first.date == dt.date(2024, 3, 5)
    assert first.source_system == "cal_access"
    assert second.donor_type == "committee"
    assert third.donor_type == "other"
    assert third.amount == -50.0


def test_contribution_with_bad_amount_is_skipped():
    raw = _raw({"committeeId": "1", "donorName": "Jane Doe", "amount": "n/a", "date": "2024-03-05"})

    result = DomainMapper().map(raw, _source("campaign_finance", "Contributions"))

    assert not result.success
    assert result.warnings[0].startswith('Item 0: Required field "amount" invalid')


def test_expenditure_support_or_oppose():
    raw = _raw(
        {"committeeId": "1", "payeeName": "Print Shop", "amount": "100", "date": "2024-01-02", "supportOrOppose": "S"},
        {"committeeId": "1", "payeeName": "Radio Ads", "amount": "900", "date": "2024-01-03", "supportOrOppose": "o"},
    )

    result = DomainMapper().map(raw, _source("campaign_finance", "FEC expenditures"))

    assert [e.support_or_oppose for e in result.items] == ["support", "oppose"]
    assert result.items[0].source_system == "fec"


def test_independent_expenditure_defaults_to_support():
    raw = _raw(
        {
            "committeeId": "99",
            "committeeName": "Friends of Parks",
            "propositionTitle": "Prop 4",
            "amount": "5,000",
            "date": "2024-10-01",
        }
    )

    item = DomainMapper().map(raw, _source("campaign_finance", "Independent expenditures")).items[0]

    assert item.support_or_oppose == "support"
    assert item.amount == 5000.0
    assert item.candidate_name is None


def test_committee_normalization():
    raw = _raw(
        {"externalId": "C-1", "name": "Yes on 4", "type": "Ballot Measure", "status": "Terminated 2023"},
        {"externalId": "C-2", "name": "Citizens PAC", "type": "mystery"},
    )

    result = DomainMapper().map(raw, _source("campaign_finance", "Committees"))

    assert result.items[0].type == CommitteeType.BALLOT_MEASURE
    assert result.items[0].status == "terminated"
    assert result.items[1].type == CommitteeType.OTHER
    assert result.items[1].status == "active"


@pytest.mark.parametrize(
    "code,expected",
    [("IND", "individual"), ("COM", "committee"), ("PTY", "party"), ("SCC", "individual"), ("OTH", "other"), (None, "other"), ("xyz", "other")],
)
def test_donor_type_table(code, expected):
    assert normalize_donor_type(code) == expected


def test_parse_amount():
    assert parse_amount("$1,234.50") == 1234.5
    assert parse_amount("(500.00)") == -500.0
    assert parse_amount(12) == 12
