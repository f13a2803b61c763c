"""Unit tests for planner JSON extraction, outline validation and the Gemini call."""

import json
import random
from unittest.mock import AsyncMock, Mock

import pytest
from google.genai import errors as genai_errors
from services.errors import ProviderError, ProviderUnavailableError
from services.outline_fallback import build_stub_outline
from services.planner_service import PlannerService, build_outline_prompt, extract_json, parse_outline


@pytest.fixture
def outline_dict(sample_seed):
    return build_stub_outline(sample_seed, random.Random(5)).to_dict()


def mock_genai_client(text=None, side_effect=None):
    client = Mock()
    client.aio.models.generate_content = AsyncMock(
        return_value=Mock(text=text), side_effect=side_effect
    )
    return client


@pytest.mark.unit
def test_extract_json_direct():
    assert extract_json('{"pages": []}') == {"pages": []}


@pytest.mark.unit
def test_extract_json_from_surrounding_prose():
    text = 'Here is your outline:\n{"pages": [{"page_number": 1}]}\nEnjoy!'

    assert extract_json(text) == {"pages": [{"page_number": 1}]}


@pytest.mark.unit
def test_extract_json_from_fenced_block():
    text = '```json\n{"a": 1}\n```\nand also a stray } brace'

    assert extract_json(text) == {"a": 1}


@pytest.mark.unit
def test_extract_json_failure():
    with pytest.raises(ProviderError, match="Failed to parse planner JSON"):
        extract_json("no json here")


@pytest.mark.unit
def test_parse_outline_sorts_pages(outline_dict):
    outline_dict["pages"].reverse()

    outline = parse_outline(outline_dict)

    assert [p.page_number for p in outline.pages] == list(range(1, 11))
    assert len(outline.characters) == 2


@pytest.mark.unit
@pytest.mark.parametrize("count", [0, 9, 11])
def test_parse_outline_rejects_wrong_page_count(outline_dict, count):
    pages = outline_dict["pages"]
    outline_dict["pages"] = (pages * 2)[:count]

    with pytest.raises(ProviderError):
        parse_outline(outline_dict)


@pytest.mark.unit
def test_parse_outline_rejects_duplicate_page_numbers(outline_dict):
    outline_dict["pages"][9]["page_number"] = 1

    with pytest.raises(ProviderError, match="page numbers"):
        parse_outline(outline_dict)


@pytest.mark.unit
def test_parse_outline_rejects_bad_shape():
    with pytest.raises(ProviderError, match="invalid JSON shape"):
        parse_outline({"outline": []})


@pytest.mark.unit
def test_build_outline_prompt_includes_seed(sample_seed):
    prompt = build_outline_prompt(sample_seed)

    assert "- setting: z" in prompt
    assert '["x"]' in prompt
    assert '"name": "A"' in prompt


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_outline_without_key_is_unavailable(sample_seed):
    planner = PlannerService(api_key=None)

    with pytest.raises(ProviderUnavailableError):
        await planner.generate_outline(sample_seed)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_outline_parses_response(sample_seed, outline_dict):
    client = mock_genai_client(text=f"```json\n{json.dumps(outline_dict)}\n```")
    planner = PlannerService(api_key="key", model_name="gemini-test", client=client)

    outline = await planner.generate_outline(sample_seed)

    assert len(outline.pages) == 10
    call = client.aio.models.generate_content.call_args
    assert call.kwargs["model"] == "gemini-test"
    assert call.kwargs["config"].response_mime_type == "application/json"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_outline_empty_response(sample_seed):
    planner = PlannerService(api_key="key", client=mock_genai_client(text=""))

    with pytest.raises(ProviderError, match="empty"):
        await planner.generate_outline(sample_seed)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_outline_rejected_credentials(sample_seed):
    error = genai_errors.ClientError(
        401, {"error": {"code": 401, "message": "API key not valid", "status": "UNAUTHENTICATED"}}
    )
    planner = PlannerService(api_key="bad", client=mock_genai_client(side_effect=error))

    with pytest.raises(ProviderUnavailableError):
        await planner.generate_outline(sample_seed)
