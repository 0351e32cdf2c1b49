"""Tests for the structural analyzer and model-output parsing."""

import json

import pytest

from civic_pipeline.analyzer import (
    StructuralAnalyzer,
    estimate_confidence,
    parse_extraction_rules,
    simplify_html,
    smart_truncate,
)
from civic_pipeline.config import PipelineSettings
from civic_pipeline.errors import ParseError, ValidationError
from civic_pipeline.rules import ExtractionRuleSet
from civic_pipeline.structure_hasher import compute_structure_hash

from fakes import FakeLLM


def test_simplify_html_strips_noise(members_html):
    simplified = simplify_html(members_html)

    assert "<script" not in simplified
    assert "<style" not in simplified
    assert "stylesheet" not in simplified
    assert "<!--" not in simplified
    assert "data-member-id" not in simplified
    assert "onclick" not in simplified
    assert "style=" not in simplified
    assert 'class="member-card"' in simplified
    assert 'id="content"' in simplified
    assert "Jane Doe" in simplified
    assert "><" in simplified
    assert "  " not in simplified


def test_smart_truncate_leaves_short_html_alone():
    assert smart_truncate("<p>short</p>", max_chars=100) == "<p>short</p>"


def test_smart_truncate_prefers_main_content():
    html = '<div class="nav">' + "x" * 500 + "</div><main><p>core</p></main>"

    assert smart_truncate(html, max_chars=100) == "<p>core</p>"


def test_smart_truncate_falls_back_to_document_prefix():
    html = "<div>" + "y" * 500 + "</div>"

    truncated = smart_truncate(html, max_chars=50)

    assert truncated == html[:50]


def test_parse_plain_json():
    assert parse_extraction_rules('{"a": 1}') == {"a": 1}


@pytest.mark.parametrize(
    "text",
    [
        'Here are the rules:\n```json\n{"a": 1}\n```\nLet me know!',
        '```\n{"a": 1}\n```',
        '```JSON\n{"a": 1}```',
        'Sure! {"a": 1} Hope this helps.',
    ],
)
def test_parse_tolerates_fences_and_prose(text):
    assert parse_extraction_rules(text) == {"a": 1}


def test_parse_ignores_braces_inside_strings():
    text = 'Prefix {"selector": "div}", "nested": {"k": "{v"}} and a stray } here'

    assert parse_extraction_rules(text) == {"selector": "div}", "nested": {"k": "{v"}}


def test_parse_handles_escaped_quotes():
    text = 'Rules: {"text": "say \\"hi}\\"", "n": 1}'

    assert parse_extraction_rules(text) == {"text": 'say "hi}"', "n": 1}


def test_parse_skips_braces_in_leading_prose():
    text = (
        "Pages use a {page} placeholder. Rules:\n"
        '{"containerSelector": ".list", "itemSelector": ".item", "fieldMappings": [{"fieldName": "title"}]}'
    )

    data = parse_extraction_rules(text)

    assert data["containerSelector"] == ".list"
    assert data["fieldMappings"] == [{"fieldName": "title"}]


def test_parse_rejects_non_json():
    with pytest.raises(ParseError) as excinfo:
        parse_extraction_rules("This is not JSON at all")

    assert excinfo.value.excerpt == "This is not JSON at all"
    assert excinfo.value.message.startswith("Failed to parse LLM output as JSON")


def test_parse_error_excerpt_is_bounded():
    with pytest.raises(ParseError) as excinfo:
        parse_extraction_rules("nope " * 100)

    assert len(excinfo.value.excerpt) == 200


def test_confidence_for_rich_rules(members_rules):
    rules = ExtractionRuleSet.model_validate(members_rules)

    assert estimate_confidence(rules) == 1.0


def test_confidence_for_minimal_rules():
    rules = ExtractionRuleSet.model_validate(
        {
            "containerSelector": "ul",
            "itemSelector": "li",
            "fieldMappings": [{"fieldName": "title", "selector": ""}],
        }
    )

    assert estimate_confidence(rules) == 0.5


def test_confidence_counts_mappings_and_required():
    rules = ExtractionRuleSet.model_validate(
        {
            "containerSelector": "table",
            "itemSelector": "tr",
            "fieldMappings": [
                {"fieldName": "externalId", "selector": "td:nth-of-type(1)", "required": True},
                {"fieldName": "title", "selector": "td:nth-of-type(2)"},
                {"fieldName": "status", "selector": "td:nth-of-type(3)"},
            ],
        }
    )

    assert estimate_confidence(rules) == 0.7


@pytest.mark.asyncio
async def test_analyze_builds_unversioned_manifest(members_html, member_source, members_rules, prompt_client):
    llm = FakeLLM(["```json\n" + json.dumps(members_rules) + "\n```"])
    analyzer = StructuralAnalyzer(llm, prompt_client, PipelineSettings())

    manifest = await analyzer.analyze(members_html, member_source)

    assert manifest.version == 0
    assert manifest.region_id == ""
    assert manifest.is_active is False
    assert manifest.structure_hash == compute_structure_hash(members_html)
    assert manifest.prompt_hash == "prompt-v1"
    assert manifest.prompt_version == "test"
    assert manifest.extraction_rules.item_selector == ".member-card"
    assert manifest.llm_provider == "Fake"
    assert manifest.llm_model == "fake-model"
    assert manifest.llm_tokens_used == 100
    assert manifest.confidence == 1.0

    assert llm.calls == 1
    assert "<script" not in llm.prompts[0]
    assert "Jane Doe" in llm.prompts[0]
    options = llm.options[0]
    assert (options.max_tokens, options.temperature, options.top_p) == (2048, 0.1, 0.95)


@pytest.mark.asyncio
async def test_analyze_raises_parse_error(members_html, member_source, prompt_client):
    analyzer = StructuralAnalyzer(FakeLLM(["This is not JSON at all"]), prompt_client)

    with pytest.raises(ParseError):
        await analyzer.analyze(members_html, member_source)


@pytest.mark.asyncio
async def test_analyze_raises_validation_error_naming_field(members_html, member_source, prompt_client):
    response = json.dumps({"containerSelector": ".members-list", "fieldMappings": [{"fieldName": "name"}]})
    analyzer = StructuralAnalyzer(FakeLLM([response]), prompt_client)

    with pytest.raises(ValidationError) as excinfo:
        await analyzer.analyze(members_html, member_source)

    assert excinfo.value.field == "itemSelector"
    assert "itemSelector" in excinfo.value.message


@pytest.mark.asyncio
async def test_current_prompt_hash_delegates(prompt_client):
    analyzer = StructuralAnalyzer(FakeLLM(["{}"]), prompt_client)
    prompt_client.prompt_hash = "prompt-v9"

    assert await analyzer.current_prompt_hash("meetings") == "prompt-v9"
