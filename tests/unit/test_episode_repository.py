"""Unit tests for the in-memory and SQLite episode repositories."""

import random
import uuid

import pytest
from models.episode import Episode, Page, PageStatus, PlannerCharacter
from services.episode_repository import (
    InMemoryEpisodeRepository,
    SQLiteEpisodeRepository,
    create_repository,
)
from services.errors import NotFoundError
from services.outline_fallback import build_stub_outline


@pytest.fixture(params=["memory", "sqlite"])
def make_repository(request, temp_dir):
    def factory():
        if request.param == "memory":
            return InMemoryEpisodeRepository()
        return SQLiteEpisodeRepository(str(temp_dir / "db" / "episodes.db"))

    return factory


def new_episode(seed) -> Episode:
    episode_id = str(uuid.uuid4())
    return Episode(
        id=episode_id,
        seed=seed,
        outline=build_stub_outline(seed, random.Random(11)),
        # deliberately out of order
        pages=[Page(id=str(uuid.uuid4()), episode_id=episode_id, page_number=n) for n in range(10, 0, -1)],
        renderer_model="img-model",
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_and_read_episode(make_repository, sample_seed):
    repo = make_repository()
    await repo.connect()
    try:
        episode = new_episode(sample_seed)
        await repo.create_episode(episode)

        loaded = await repo.get_episode(episode.id)

        assert loaded.seed == sample_seed
        assert [p.page_number for p in loaded.pages] == list(range(1, 11))
        assert all(p.status == PageStatus.QUEUED and p.version == 0 for p in loaded.pages)
        assert loaded.outline.to_dict() == episode.outline.to_dict()
        assert loaded.renderer_model == "img-model"
        assert await repo.get_episode("missing") is None
    finally:
        await repo.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_page_fields(make_repository, sample_seed):
    repo = make_repository()
    await repo.connect()
    try:
        episode = new_episode(sample_seed)
        await repo.create_episode(episode)
        page_id = episode.pages[0].id
        overlays = {"bubbles": [{"x": 1, "text": "hi"}], "version": None}

        await repo.update_page(page_id, status=PageStatus.FAILED, error="boom")
        updated = await repo.update_page(
            page_id,
            status=PageStatus.DONE,
            image_url="https://img.test/p.png",
            seed=77,
            version=1,
            error=None,
            overlays=overlays,
        )

        assert updated.status == PageStatus.DONE
        assert updated.error is None
        assert updated.seed == 77
        assert (await repo.get_page(page_id)).overlays == overlays
    finally:
        await repo.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_unknown_page(make_repository):
    repo = make_repository()
    await repo.connect()
    try:
        with pytest.raises(NotFoundError):
            await repo.update_page("missing", status=PageStatus.DONE)
        with pytest.raises(ValueError, match="Unknown page field"):
            await repo.update_page("missing", page_number=3)
    finally:
        await repo.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_characters_upsert_by_asset_filename(make_repository, sample_seed):
    repo = make_repository()
    await repo.connect()
    try:
        episode = new_episode(sample_seed)
        await repo.create_episode(episode)
        a = PlannerCharacter("A", "lead", "a.png")
        b = PlannerCharacter("B", "support", "b.png")

        await repo.upsert_characters(episode.id, [a, b])
        roster = await repo.upsert_characters(episode.id, [PlannerCharacter("A", "changed", "a.png")])

        assert [(c.name, c.description) for c in roster] == [("A", "lead"), ("B", "support")]

        updated = await repo.set_character_image(episode.id, b, "https://img.test/b.png")
        assert updated.image_url == "https://img.test/b.png"
        assert updated.id == roster[1].id

        loaded = await repo.get_episode(episode.id)
        assert [c.image_url for c in loaded.characters] == [None, "https://img.test/b.png"]
    finally:
        await repo.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_style_refs_keep_upload_order(make_repository, sample_seed):
    repo = make_repository()
    await repo.connect()
    try:
        episode = new_episode(sample_seed)
        await repo.create_episode(episode)

        await repo.add_style_ref(episode.id, "https://cdn.test/1.png")
        await repo.add_style_ref(episode.id, "https://cdn.test/2.png")

        assert await repo.list_style_refs(episode.id) == [
            "https://cdn.test/1.png",
            "https://cdn.test/2.png",
        ]
    finally:
        await repo.close()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_in_memory_returns_copies(sample_seed):
    repo = InMemoryEpisodeRepository()
    episode = new_episode(sample_seed)
    await repo.create_episode(episode)

    loaded = await repo.get_episode(episode.id)
    loaded.pages[0].status = PageStatus.DONE

    assert (await repo.get_episode(episode.id)).pages[0].status == PageStatus.QUEUED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sqlite_survives_reconnect(temp_dir, sample_seed):
    path = str(temp_dir / "episodes.db")
    episode = new_episode(sample_seed)

    repo = SQLiteEpisodeRepository(path)
    await repo.connect()
    await repo.create_episode(episode)
    await repo.close()

    reopened = SQLiteEpisodeRepository(path)
    await reopened.connect()
    try:
        assert (await reopened.get_episode(episode.id)).seed.title == "T"
    finally:
        await reopened.close()


@pytest.mark.unit
def test_create_repository_selects_backend(temp_dir):
    assert isinstance(create_repository({}), InMemoryEpisodeRepository)
    assert isinstance(
        create_repository({"database_path": str(temp_dir / "x.db")}), SQLiteEpisodeRepository
    )
