"""Unit tests for page prompt assembly, reference selection and the Gemini image call."""

import base64
import json
import random

import httpx
import pytest
from models.episode import Character
from models.render import CharacterRenderRequest, PageRenderRequest
from services.errors import ProviderError, ProviderUnavailableError
from services.outline_fallback import build_stub_outline
from services.prompts.render import EDIT_DIRECTIVE, NO_TEXT_INSTRUCTION, build_page_prompt
from services.renderer_service import RendererService, episode_asset_dir, select_character_refs

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def image_reply() -> dict:
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here is your page."},
                        {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()}},
                    ]
                }
            }
        ]
    }


class RecordingStorage:
    def __init__(self):
        self.uploads = []

    async def upload_image(self, data, path, content_type="image/png"):
        self.uploads.append((data, path, content_type))
        return f"https://cdn.test/{path}"


@pytest.fixture
def page_request(sample_seed):
    outline = build_stub_outline(sample_seed, random.Random(9))
    return PageRenderRequest(
        page_number=1,
        outline=outline.pages[0],
        episode_title="Night Shift",
        visual_style=outline.visual_style,
        character_assets=[
            Character("1", "ep", "A", "a.png", image_url="https://cdn.test/a.png"),
            Character("2", "ep", "B", "b.png", image_url="https://cdn.test/b.png"),
            Character("3", "ep", "C", "c.png"),
        ],
    )


def make_renderer(handler, storage=None) -> RendererService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RendererService(api_key="key", model_name="img-model", storage=storage, client=client)


@pytest.mark.unit
def test_episode_asset_dir():
    assert episode_asset_dir("Night Shift: Part 2") == "episodes/Night_Shift__Part_2"


@pytest.mark.unit
def test_select_character_refs_filters_by_tags(page_request):
    assets = page_request.character_assets

    assert [c.name for c in select_character_refs(assets, "<b.png> alone")] == ["B"]
    assert [c.name for c in select_character_refs(assets, "<B> alone")] == ["B"]
    assert [c.name for c in select_character_refs(assets, None)] == ["A", "B"]
    assert select_character_refs(assets, "<c.png> has no art <nobody.png>") == []


@pytest.mark.unit
def test_page_prompt_contents(page_request):
    prompt = build_page_prompt(page_request, has_character_refs=True)

    assert page_request.outline.beat in prompt
    assert NO_TEXT_INSTRUCTION in prompt
    assert f"{page_request.outline.layout_hints.panels} panels" in prompt
    assert page_request.visual_style in prompt
    assert "Character consistency" in prompt
    assert "empty white bubbles" in prompt
    assert EDIT_DIRECTIVE not in prompt


@pytest.mark.unit
def test_edit_prompt_adds_modify_directive(page_request):
    page_request.base_image_url = "https://cdn.test/old.png"
    page_request.edit_prompt = "add rain"

    prompt = build_page_prompt(page_request, has_character_refs=False)

    assert "Edit request: add rain" in prompt
    assert EDIT_DIRECTIVE in prompt


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_page_uploads_with_seed(page_request):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "GET":
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
        return httpx.Response(200, json=image_reply())

    storage = RecordingStorage()
    page_request.seed = 1234
    renderer = make_renderer(handler, storage)
    try:
        result = await renderer.generate_page(page_request)
    finally:
        await renderer.close()

    assert result.seed == 1234
    assert storage.uploads[0][1] == "episodes/Night_Shift/page_01_1234.png"
    assert storage.uploads[0][0] == PNG_BYTES
    assert result.image_url.endswith("page_01_1234.png")

    post = next(c for c in calls if c.method == "POST")
    assert post.url.path.endswith("/models/img-model:generateContent")
    parts = json.loads(post.content)["contents"][0]["parts"]
    # prompt + the two tagged character sheets
    assert len(parts) == 3
    assert "inlineData" in parts[1]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unreachable_reference_becomes_text_part(page_request):
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(404)
        posted.append(json.loads(request.content))
        return httpx.Response(200, json=image_reply())

    page_request.style_ref_urls = ["https://cdn.test/style.png"]
    renderer = make_renderer(handler, RecordingStorage())
    try:
        await renderer.generate_page(page_request)
    finally:
        await renderer.close()

    parts = posted[0]["contents"][0]["parts"]
    assert parts[-1] == {"text": "Style reference: https://cdn.test/style.png"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_page_without_storage_returns_placeholder(page_request):
    renderer = make_renderer(lambda request: httpx.Response(200, json=image_reply()))
    page_request.character_assets = []
    try:
        result = await renderer.generate_page(page_request)
    finally:
        await renderer.close()

    assert result.image_url.startswith("https://placehold.co/1024x1536")
    assert 0 <= result.seed <= 999_999


@pytest.mark.unit
@pytest.mark.asyncio
async def test_text_only_reply_raises(page_request):
    reply = {"candidates": [{"content": {"parts": [{"text": "I cannot draw that."}]}}]}
    renderer = make_renderer(lambda request: httpx.Response(200, json=reply))
    page_request.character_assets = []
    try:
        with pytest.raises(ProviderError, match="text instead of image"):
            await renderer.generate_page(page_request)
    finally:
        await renderer.close()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error_type",
    [(403, ProviderUnavailableError), (500, ProviderError), (429, ProviderError)],
)
async def test_http_errors_are_wrapped(page_request, status, error_type):
    renderer = make_renderer(
        lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
    )
    page_request.character_assets = []
    try:
        with pytest.raises(error_type, match="nope"):
            await renderer.generate_page(page_request)
    finally:
        await renderer.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_api_key_is_unavailable(page_request):
    renderer = RendererService(api_key=None)
    try:
        with pytest.raises(ProviderUnavailableError):
            await renderer.generate_page(page_request)
    finally:
        await renderer.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_generate_character_path():
    storage = RecordingStorage()
    renderer = make_renderer(lambda request: httpx.Response(200, json=image_reply()), storage)
    try:
        result = await renderer.generate_character(
            CharacterRenderRequest("Night Shift", "A", "lead", "a.png", "manga style")
        )
    finally:
        await renderer.close()

    assert storage.uploads[0][1] == "episodes/Night_Shift/characters/a.png"
    assert result.image_url == "https://cdn.test/episodes/Night_Shift/characters/a.png"
