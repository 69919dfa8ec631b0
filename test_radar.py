#!/usr/bin/env python3
"""
Tests for the radar catalog store, search, markdown mirror, entry wizard,
generation pipeline, settings and command line.
"""

import asyncio
import json
import os
import sqlite3
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

# Add source paths for imports
import sys
sys.path.insert(0, str(Path(__file__).parent))

from radar import (
    Adr, AdrStatus, AdrUpdate, AppState, Blip, BlipUpdate, CatalogStore, Conflict,
    EntryKind, GenerationPipeline, GenerationState, InvalidTransition,
    MarkdownMirror, NotFound, Quadrant, Ring, SearchIndex,
    StoreError, ValidationError, WizardDraft, WizardState,
    apply_stored_settings, cli, configure_logging, fuzzy_rank, load_settings,
    load_stats, mirror_file_name, parse_yaml_frontmatter, render_adr,
    render_blip, resolve_mirror_path, sanitize_name, wrap_decrement,
    wrap_increment,
)

TODAY = "2025-04-18"
_NAMED_KEYS = {"up", "down", "left", "right", "enter", "escape", "backspace",
               "pageup", "pagedown", "home", "end"}


async def press(state, *keys):
    """Dispatch named keys as-is and other strings one character at a time."""
    for key in keys:
        if key in _NAMED_KEYS or len(key) == 1:
            await state.dispatch(key)
        else:
            for ch in key:
                await state.dispatch(ch)


async def open_state(tmpdir) -> AppState:
    tmp = Path(tmpdir)
    store = await CatalogStore(tmp / "radar.db").open()
    mirror = MarkdownMirror(tmp / "blips", tmp / "adrs", "Test Author")
    state = AppState(store, mirror, today=lambda: TODAY)
    await state.startup()
    return state


async def add_blip(store, name, ring=Ring.HOLD, quadrant=Quadrant.TOOLS,
                   created=TODAY) -> Blip:
    blip = Blip(id=await store.next_id(EntryKind.BLIP), name=name, ring=ring,
                quadrant=quadrant, created=created)
    await store.insert_blip(blip)
    return blip


async def add_adr(store, title, blip_name="", status=AdrStatus.PROPOSED) -> Adr:
    adr = Adr(id=await store.next_id(EntryKind.ADR), title=title,
              blip_name=blip_name, status=status, timestamp=TODAY)
    await store.insert_adr(adr)
    return adr


# ── Vocabulary ────────────────────────────────────────────────────────


def test_enum_parse_and_index():
    assert Ring.parse("Trial") is Ring.TRIAL
    assert Ring.parse(" adopt ") is Ring.ADOPT
    assert Ring.parse("someday") is None
    assert Ring.parse(None) is None
    assert Quadrant.from_index(3) is Quadrant.TECHNIQUES
    assert Quadrant.from_index(4) is None
    assert AdrStatus.SUPERSEDED.as_str() == "superseded"
    assert AdrStatus.ACCEPTED.label() == "Accepted"
    assert EntryKind.ADR.label() == "ADR"
    assert Ring.ADOPT.next() is Ring.HOLD
    assert Ring.HOLD.prev() is Ring.ADOPT
    print("  Enum vocabulary OK")


def test_cursor_wrap():
    for n in range(1, 8):
        assert wrap_decrement(0, n) == n - 1
        assert wrap_increment(n - 1, n) == 0
        for i in range(n):
            assert wrap_decrement(wrap_increment(i, n), n) == i
    assert wrap_increment(0, 0) == 0
    assert wrap_decrement(0, 0) == 0
    print("  Cursor wrap OK")


# ── Catalog Store ─────────────────────────────────────────────────────


def test_store_ids_start_at_one_and_grow():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            assert await store.next_id(EntryKind.BLIP) == 1
            assert await store.next_id(EntryKind.ADR) == 1
            await add_blip(store, "Kafka")
            await add_blip(store, "Go")
            assert await store.next_id(EntryKind.BLIP) == 3
            # independent sequences
            assert await store.next_id(EntryKind.ADR) == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store ids OK")


def test_store_rejects_duplicate_blip_name():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            await add_blip(store, "Kubernetes")
            for name in ("Kubernetes", "  Kubernetes "):
                with pytest.raises(Conflict) as exc:
                    await store.insert_blip(Blip(id=99, name=name, created=TODAY))
                assert "Blip already exists: Kubernetes" in str(exc.value)
            assert await store.count_blips() == 1
            assert (await store.find_blip_by_name("Kubernetes")).id == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store uniqueness OK")


def test_store_requires_names():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            with pytest.raises(ValidationError):
                await store.insert_blip(Blip(id=1, name="   ", created=TODAY))
            with pytest.raises(ValidationError):
                await store.insert_adr(Adr(id=1, title="", timestamp=TODAY))
            assert await store.count_blips() == 0

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store validation OK")


def test_store_partial_update_keeps_unset_fields():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            blip = await add_blip(store, "Kafka", Ring.TRIAL, Quadrant.TOOLS)
            await store.update_blip(blip.id, BlipUpdate(tag="streaming",
                                                        description="Event log"))
            before = await store.get_blip(blip.id)

            await store.update_blip(blip.id, BlipUpdate())
            assert await store.get_blip(blip.id) == before

            await store.update_blip(blip.id, BlipUpdate(ring=Ring.ADOPT))
            after = await store.get_blip(blip.id)
            assert after.ring is Ring.ADOPT
            assert after.quadrant is Quadrant.TOOLS
            assert after.tag == "streaming"
            assert after.description == "Event log"
            assert after.name == "Kafka"

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store partial update OK")


def test_store_update_errors():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            await add_blip(store, "Kafka")
            go = await add_blip(store, "Go")
            with pytest.raises(NotFound):
                await store.update_blip(42, BlipUpdate(tag="x"))
            with pytest.raises(NotFound):
                await store.get_blip(42)
            with pytest.raises(Conflict):
                await store.update_blip(go.id, BlipUpdate(name="Kafka"))
            assert (await store.get_blip(go.id)).name == "Go"
            with pytest.raises(NotFound):
                await store.update_adr(7, AdrUpdate(status=AdrStatus.ACCEPTED))

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store update errors OK")


def test_store_has_adr_is_derived():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            go = await add_blip(store, "Go")
            kafka = await add_blip(store, "Kafka")
            assert not (await store.get_blip(go.id)).has_adr

            await add_adr(store, "Adopt Go", blip_name="Go")
            assert (await store.get_blip(go.id)).has_adr
            assert (await store.get_blip(go.id)).adr_id is None

            await store.update_blip(kafka.id, BlipUpdate(adr_id=1))
            linked = await store.get_blip(kafka.id)
            assert linked.has_adr
            assert linked.adr_id == 1

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Derived has_adr OK")


def test_store_lists_and_counts():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            await add_blip(store, "Kafka", Ring.ADOPT, Quadrant.TOOLS, "2025-01-01")
            await add_blip(store, "Go", Ring.ADOPT, Quadrant.LANGUAGES, "2025-03-01")
            await add_blip(store, "Kubernetes", Ring.TRIAL, Quadrant.PLATFORMS,
                           "2025-02-01")
            await add_adr(store, "Use Go", blip_name="Go")
            await add_adr(store, "Logging")

            assert [b.name for b in await store.list_blips()] == [
                "Kubernetes", "Go", "Kafka"]
            assert [b.name for b in await store.recent_blips(2)] == [
                "Go", "Kubernetes"]
            assert [a.title for a in await store.list_adrs("Go")] == ["Use Go"]
            assert len(await store.list_adrs()) == 2
            assert await store.counts_by_ring() == {Ring.ADOPT: 2, Ring.TRIAL: 1}
            assert (await store.counts_by_quadrant())[Quadrant.TOOLS] == 1

            stats = await load_stats(store)
            assert stats.total_blips == 3
            assert stats.total_adrs == 2
            assert stats.by_ring == {"hold": 0, "assess": 0, "trial": 1, "adopt": 2}
            assert list(stats.by_quadrant) == [
                "platforms", "languages", "tools", "techniques"]
            assert round(stats.adr_coverage, 1) == 66.7
            assert stats.as_dict()["recent_blips"][0]["name"] == "Go"

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Store lists and stats OK")


def test_store_settings_upsert():
    async def scenario(tmpdir):
        async with CatalogStore(Path(tmpdir) / "radar.db") as store:
            assert await store.get_settings() == {}
            await store.set_setting("BLIP_DIR", "/srv/blips")
            await store.set_setting("BLIP_DIR", "/srv/radar/blips")
            await store.set_setting("ADR_DIR", "/srv/adrs")
            assert await store.get_settings() == {
                "ADR_DIR": "/srv/adrs", "BLIP_DIR": "/srv/radar/blips"}

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Settings upsert OK")


def test_store_adds_missing_columns():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Path(tmpdir) / "old.db"
        conn = sqlite3.connect(str(db))
        conn.execute(
            "CREATE TABLE blip (id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE, "
            "ring TEXT, quadrant TEXT, tag TEXT, description TEXT, "
            "created TEXT NOT NULL, has_adr BOOLEAN DEFAULT FALSE)")
        conn.execute(
            "CREATE TABLE adr (id INTEGER PRIMARY KEY, title TEXT NOT NULL, "
            "timestamp TEXT NOT NULL)")
        conn.execute("INSERT INTO adr (id, title, timestamp) VALUES (1, 'Old', ?)",
                     (TODAY,))
        conn.execute("INSERT INTO blip (id, name, created) VALUES (1, 'Perl', ?)",
                     (TODAY,))
        conn.commit()
        conn.close()

        async def scenario():
            async with CatalogStore(db) as store:
                adr = (await store.list_adrs())[0]
                assert adr.status is AdrStatus.PROPOSED
                assert adr.blip_name == ""
                blip = await store.get_blip(1)
                assert blip.adr_id is None
                assert blip.ring is None

        asyncio.run(scenario())
    print("  Schema upgrade OK")


def test_store_malformed_row_is_store_error():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Path(tmpdir) / "radar.db"

        async def scenario():
            async with CatalogStore(db) as store:
                await add_blip(store, "Kafka")
                conn = sqlite3.connect(str(db))
                conn.execute("UPDATE blip SET ring = 'someday'")
                conn.commit()
                conn.close()
                with pytest.raises(StoreError):
                    await store.get_blip(1)

        asyncio.run(scenario())
    print("  Malformed row OK")


def test_store_closed_raises_store_error():
    async def scenario(tmpdir):
        store = CatalogStore(Path(tmpdir) / "radar.db")
        with pytest.raises(StoreError):
            await store.count_blips()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Closed store OK")


# ── Search Index ──────────────────────────────────────────────────────


def test_fuzzy_rank():
    hay = ["Kubernetes platforms", "Kafka tools", "Go languages"]
    assert fuzzy_rank(hay, "") == [0, 1, 2]
    assert fuzzy_rank(hay, "   ") == [0, 1, 2]
    assert fuzzy_rank(hay, "kafka") == [1]
    assert fuzzy_rank(hay, "KA")[0] == 1
    assert fuzzy_rank(hay, "zzz") == []
    # in-order scattered characters still match
    assert 0 in fuzzy_rank(hay, "kbnts")
    print("  Fuzzy rank OK")


def test_search_is_monotone():
    hay = ["Kubernetes platforms trial", "Kafka tools adopt", "Go languages",
           "Terraform tools", "Event sourcing techniques", "Rust languages assess"]
    for query in ("k", "t", "a", "o", "ra", "tool"):
        base = set(fuzzy_rank(hay, query))
        for extra in ("a", "s", "o", "l", "e"):
            narrower = set(fuzzy_rank(hay, query + extra))
            assert narrower <= base, (query, extra)
            narrower = set(fuzzy_rank(hay, extra + query))
            assert narrower <= base, (extra, query)
    print("  Search monotonicity OK")


def test_search_index_filters_both_lists():
    index = SearchIndex()
    index.load(
        blips=[Blip(id=1, name="Kafka", ring=Ring.ADOPT, quadrant=Quadrant.TOOLS),
               Blip(id=2, name="Go", ring=Ring.TRIAL, quadrant=Quadrant.LANGUAGES)],
        adrs=[Adr(id=1, title="Adopt Kafka", blip_name="Kafka"),
              Adr(id=2, title="Logging")],
    )
    assert len(index.visible_blips()) == 2
    assert index.set_query("kafka") is True
    assert [b.name for b in index.visible_blips()] == ["Kafka"]
    assert [a.title for a in index.visible_adrs()] == ["Adopt Kafka"]
    assert index.set_query("kafka") is False
    assert index.blip_row(1) == 0
    assert index.blip_row(2) is None
    assert index.blip_at(5) is None
    assert index.clear() is True
    assert index.adr_at(1).title == "Logging"
    print("  Search index OK")


# ── Markdown Mirror ───────────────────────────────────────────────────


def test_mirror_file_names():
    assert sanitize_name("  Apache Kafka ") == "apache-kafka"
    assert mirror_file_name("2025-04-18T10:20:00Z", "Apache Kafka") == (
        "2025-04-18-apache-kafka.mdx")
    assert mirror_file_name(TODAY, "Go") == "2025-04-18-go.mdx"
    print("  Mirror file names OK")


def test_render_blip_front_matter():
    blip = Blip(id=3, name="Kubernetes", ring=Ring.TRIAL,
                quadrant=Quadrant.PLATFORMS, tag="infra", created=TODAY)
    content = render_blip(blip, "Ada")
    fm = parse_yaml_frontmatter(content)
    assert fm["id"] == "3"
    assert fm["name"] == "Kubernetes"
    assert fm["ring"] == "trial"
    assert fm["quadrant"] == "platforms"
    assert fm["tags"] == '["infra"]'
    assert fm["authors"] == '["Ada"]'
    assert fm["hasAdr"] == "false"
    assert fm["adrId"] == "null"
    assert fm["description"] == "{{description}}"
    assert "# Kubernetes" in content

    unset = render_blip(Blip(id=4, name="Perl", created=TODAY), "Ada")
    assert 'ring: null' in unset
    assert 'quadrant: null' in unset
    print("  Blip rendering OK")


def test_render_adr_front_matter():
    adr = Adr(id=2, title="Use Postgres", status=AdrStatus.ACCEPTED, timestamp=TODAY)
    content = render_adr(adr)
    fm = parse_yaml_frontmatter(content)
    assert fm["title"] == "Use Postgres"
    assert fm["status"] == "accepted"
    assert fm["blip"] == "null"
    assert "## Decision" in content
    linked = render_adr(Adr(id=3, title="Adopt Go", blip_name="Go", timestamp=TODAY))
    assert 'blip: "Go"' in linked
    print("  ADR rendering OK")


def test_mirror_write_is_idempotent():
    with tempfile.TemporaryDirectory() as tmpdir:
        mirror = MarkdownMirror(Path(tmpdir) / "blips", Path(tmpdir) / "adrs", "Ada")
        blip = Blip(id=1, name="Apache Kafka", ring=Ring.ADOPT,
                    quadrant=Quadrant.TOOLS, created=TODAY)
        path = mirror.write_blip_mirror(blip)
        first = path.read_bytes()
        again = mirror.write_blip_mirror(blip)
        assert again == path
        assert again.read_bytes() == first
        assert path.name == "2025-04-18-apache-kafka.mdx"
        assert len(list(path.parent.iterdir())) == 1
    print("  Mirror idempotence OK")


def test_mirror_rediscovers_renamed_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        blips = Path(tmpdir) / "blips"
        blips.mkdir()
        moved = blips / "2024-01-01-kubernetes.mdx"
        moved.write_text('---\nid: "7"\n---\nold\n', encoding="utf-8")

        mirror = MarkdownMirror(blips, Path(tmpdir) / "adrs", "Ada")
        blip = Blip(id=7, name="Kubernetes", ring=Ring.HOLD, created=TODAY)
        assert mirror.blip_path(blip) == moved
        mirror.write_blip_mirror(blip)
        assert 'ring: "hold"' in moved.read_text(encoding="utf-8")
        assert not (blips / "2025-04-18-kubernetes.mdx").exists()
    print("  Mirror rediscovery OK")


def test_mirror_rediscovery_prefers_own_id():
    with tempfile.TemporaryDirectory() as tmpdir:
        blips = Path(tmpdir)
        other = blips / "2024-01-01-kubernetes.mdx"
        other.write_text('---\nid: "9"\n---\n', encoding="utf-8")
        expected = blips / "2025-04-18-kubernetes.mdx"

        # a file owned by another record is never taken over
        assert resolve_mirror_path(blips, TODAY, "Kubernetes", 7) == expected

        mine = blips / "2024-06-01-kubernetes.mdx"
        mine.write_text('---\nid: "7"\n---\n', encoding="utf-8")
        assert resolve_mirror_path(blips, TODAY, "Kubernetes", 7) == mine

        mine.unlink()
        bare = blips / "2024-03-01-kubernetes.mdx"
        bare.write_text("no front matter\n", encoding="utf-8")
        assert resolve_mirror_path(blips, TODAY, "Kubernetes", 7) == bare
    print("  Mirror tie-break OK")


def test_mirror_rename_follows_previous_name():
    with tempfile.TemporaryDirectory() as tmpdir:
        mirror = MarkdownMirror(Path(tmpdir) / "blips", Path(tmpdir) / "adrs", "Ada")
        blip = Blip(id=1, name="Old Name", created=TODAY)
        old = mirror.write_blip_mirror(blip)
        blip.name = "New Name"
        new = mirror.write_blip_mirror(blip, previous_name="Old Name")
        assert not old.exists()
        assert new.name == "2025-04-18-new-name.mdx"
        assert 'name: "New Name"' in new.read_text(encoding="utf-8")
    print("  Mirror rename OK")


# ── Entry Wizard & Generation Pipeline ────────────────────────────────


def test_create_blip_through_wizard():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        await press(state, "b", "Kubernetes", "enter")
        assert state.wizard.state is WizardState.CHOOSING_QUADRANT
        await press(state, "enter")  # Platforms
        assert state.wizard.state is WizardState.CHOOSING_RING
        await press(state, "down", "down", "enter")  # Trial
        assert state.wizard.state is WizardState.COMPLETED
        assert state.pipeline.state is GenerationState.IDLE

        blips = await state.store.list_blips()
        assert len(blips) == 1
        blip = blips[0]
        assert blip.name == "Kubernetes"
        assert blip.quadrant is Quadrant.PLATFORMS
        assert blip.ring is Ring.TRIAL
        assert blip.has_adr is False

        path = Path(tmpdir) / "blips" / "2025-04-18-kubernetes.mdx"
        assert state.wizard.last_path == path
        content = path.read_text(encoding="utf-8")
        assert 'ring: "trial"' in content
        assert 'quadrant: "platforms"' in content
        assert '"Test Author"' in content
        assert state.stats.total_blips == 1
        assert [b.name for b in state.search.visible_blips()] == ["Kubernetes"]

        # a second Kubernetes is refused at name entry
        await press(state, "n", "b", "Kubernetes", "enter")
        assert state.wizard.state is WizardState.ENTERING_NAME
        assert "Blip already exists: Kubernetes" in state.wizard.message
        assert state.wizard.input == "Kubernetes"
        assert await state.store.count_blips() == 1
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Blip wizard OK")


def test_create_adr_through_wizard():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        await press(state, "a", "Use Postgres", "enter")
        assert state.wizard.state is WizardState.CHOOSING_ADR_STATUS
        await press(state, "down", "enter")  # Accepted
        assert state.wizard.state is WizardState.COMPLETED

        adr = (await state.store.list_adrs())[0]
        assert adr.title == "Use Postgres"
        assert adr.status is AdrStatus.ACCEPTED
        assert adr.blip_name == "Use Postgres"
        assert adr.timestamp == TODAY
        path = Path(tmpdir) / "adrs" / "2025-04-18-use-postgres.mdx"
        assert 'status: "accepted"' in path.read_text(encoding="utf-8")
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  ADR wizard OK")


def test_adr_before_its_blip_links_when_blip_arrives():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        await press(state, "a", "Kafka", "enter", "enter")
        adr = (await state.store.list_adrs())[0]
        assert adr.blip_name == "Kafka"
        content = (Path(tmpdir) / "adrs" / "2025-04-18-kafka.mdx").read_text(
            encoding="utf-8")
        assert 'blip: "Kafka"' in content

        await press(state, "n", "b", "Kafka", "enter", "enter", "enter")
        assert state.wizard.state is WizardState.COMPLETED
        blip = await state.store.find_blip_by_name("Kafka")
        assert blip.has_adr
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  ADR before blip OK")


def test_wizard_name_rules():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        await add_blip(state.store, "Go")
        calls = []
        exists = state.store.exists_blip_by_name

        async def counting(name):
            calls.append(name)
            return await exists(name)

        state.store.exists_blip_by_name = counting

        await press(state, "b", "enter")
        assert state.wizard.message == "Name is required."
        assert state.wizard.state is WizardState.ENTERING_NAME

        await press(state, "  Go ", "enter")
        assert "Blip already exists: Go" in state.wizard.message
        await press(state, "enter")
        assert calls == ["Go"]

        await press(state, "backspace", "backspace", "backspace",
                    "backspace", "Rust", "enter")
        assert state.wizard.state is WizardState.CHOOSING_QUADRANT
        assert state.wizard.draft.name == "Rust"

        await press(state, "escape")
        assert state.wizard.state is WizardState.WAITING_FOR_COMMAND
        assert state.wizard.draft == WizardDraft()
        assert await state.store.count_blips() == 1
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Wizard name rules OK")


def test_wizard_pickers_wrap():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        wizard = state.wizard
        await press(state, "up")
        assert wizard.cursor == 1
        await press(state, "enter")
        assert wizard.kind is EntryKind.BLIP
        await press(state, "Rust", "enter", "up")
        assert wizard.cursor == 3
        await press(state, "down")
        assert wizard.cursor == 0
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Wizard pickers OK")


def test_wizard_accepts_every_key_in_every_state():
    keys = sorted(_NAMED_KEYS) + ["a", "b", "n", "x"]
    waiting = [
        WizardState.WAITING_FOR_COMMAND, WizardState.ENTERING_NAME,
        WizardState.CHOOSING_QUADRANT, WizardState.CHOOSING_RING,
        WizardState.CHOOSING_ADR_STATUS, WizardState.COMPLETED,
    ]

    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        wizard = state.wizard
        for start in waiting:
            for key in keys:
                wizard.reset()
                wizard.kind = EntryKind.BLIP
                wizard.draft = WizardDraft(name="Zig", quadrant=Quadrant.LANGUAGES)
                wizard.state = start
                await wizard.handle_key(key)
                assert isinstance(wizard.state, WizardState)
                if key == "escape":
                    assert wizard.state is WizardState.WAITING_FOR_COMMAND
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Wizard totality OK")


def _ready_blip(state, name="Go"):
    wizard = state.wizard
    wizard.choose_kind(EntryKind.BLIP)
    wizard.draft = WizardDraft(name=name, quadrant=Quadrant.LANGUAGES, ring=Ring.ADOPT)
    wizard.state = WizardState.GENERATING


def test_pipeline_conflict_returns_to_name_entry():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        _ready_blip(state)
        await add_blip(state.store, "Go")
        outcome = await state.pipeline.run(state)
        assert not outcome.ok
        assert outcome.conflict
        assert state.wizard.state is WizardState.ENTERING_NAME
        assert state.wizard.input == "Go"
        assert "Blip already exists: Go" in state.wizard.message
        assert state.pipeline.state is GenerationState.IDLE
        assert await state.store.count_blips() == 1
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline conflict OK")


def test_pipeline_store_failure_returns_to_last_picker():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        await state.store.close()

        _ready_blip(state)
        outcome = await state.pipeline.run(state)
        assert not outcome.ok
        assert state.wizard.state is WizardState.CHOOSING_RING
        assert state.wizard.cursor == Ring.ADOPT.index()
        assert state.pipeline.state is GenerationState.IDLE

        state.wizard.choose_kind(EntryKind.ADR)
        state.wizard.draft = WizardDraft(name="Logging", status=AdrStatus.REJECTED)
        state.wizard.state = WizardState.GENERATING
        await state.pipeline.run(state)
        assert state.wizard.state is WizardState.CHOOSING_ADR_STATUS
        assert state.wizard.cursor == AdrStatus.REJECTED.index()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline store failure OK")


def test_pipeline_mirror_failure_is_degraded_success():
    async def scenario(tmpdir):
        (Path(tmpdir) / "blips").write_text("not a directory", encoding="utf-8")
        state = await open_state(tmpdir)
        _ready_blip(state)
        outcome = await state.pipeline.run(state)
        assert outcome.ok
        assert "saved to store, but file sync failed" in outcome.message
        assert state.wizard.state is WizardState.COMPLETED
        assert "file sync failed" in state.wizard.message
        assert await state.store.count_blips() == 1
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline mirror failure OK")


def test_pipeline_reload_failure_keeps_committed_entry():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        reload_adrs = state.reload_adrs
        failures = []

        async def locked_once():
            if not failures:
                failures.append("locked")
                raise StoreError("database is locked")
            await reload_adrs()

        state.reload_adrs = locked_once
        await press(state, "a", "Kafka", "enter", "enter")
        assert state.wizard.state is WizardState.COMPLETED
        assert "refreshing lists failed: database is locked" in state.wizard.message
        assert (Path(tmpdir) / "adrs" / "2025-04-18-kafka.mdx").exists()

        await press(state, "enter")
        assert state.wizard.state is WizardState.WAITING_FOR_COMMAND
        assert [a.id for a in await state.store.list_adrs()] == [1]
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline reload failure OK")


def test_pipeline_routes_by_error_type():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)

        async def failing_insert(blip):
            raise StoreError("table blip already exists")

        state.store.insert_blip = failing_insert
        _ready_blip(state)
        outcome = await state.pipeline.run(state)
        assert not outcome.ok
        assert not outcome.conflict
        assert state.wizard.state is WizardState.CHOOSING_RING
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline error routing OK")


def test_pipeline_transitions():
    async def scenario(tmpdir):
        state = await open_state(tmpdir)
        pipeline = GenerationPipeline(state.store, state.mirror)
        with pytest.raises(InvalidTransition) as exc:
            pipeline.process("success")
        assert str(exc.value) == "Invalid transition from idle with event success"
        assert pipeline.process("start") is GenerationState.GENERATING
        with pytest.raises(InvalidTransition):
            pipeline.process("start")
        assert pipeline.process("error") is GenerationState.ERROR
        assert pipeline.process("reset") is GenerationState.IDLE

        # nothing to do unless the wizard is ready
        assert await pipeline.run(state) is None
        await state.store.close()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(tmpdir))
    print("  Pipeline transitions OK")


# ── Settings, logging & command line ──────────────────────────────────


def test_load_settings_precedence():
    with tempfile.TemporaryDirectory() as tmpdir:
        env = {"BLIP_DIR": "/env/blips", "DATABASE_NAME": str(Path(tmpdir) / "env.db"),
               "RADAR_AUTHOR": "Grace"}
        with patch.dict(os.environ, env):
            settings = load_settings()
            assert settings.blips_dir == Path("/env/blips")
            assert settings.adrs_dir == Path("./adrs")
            assert settings.db_path == Path(tmpdir) / "env.db"
            assert settings.log_path == Path(tmpdir) / "env.log"
            assert settings.author == "Grace"

            flagged = load_settings(blip_dir="/flag/blips")
            assert flagged.blips_dir == Path("/flag/blips")

            stored = {"BLIP_DIR": "/db/blips", "ADR_DIR": "/db/adrs"}
            merged = apply_stored_settings(settings, stored)
            assert merged.blips_dir == Path("/db/blips")
            assert merged.adrs_dir == Path("/db/adrs")
            pinned = apply_stored_settings(flagged, stored, ("BLIP_DIR",))
            assert pinned.blips_dir == Path("/flag/blips")
            assert pinned.adrs_dir == Path("/db/adrs")
    print("  Settings precedence OK")


def test_configure_logging_writes_file():
    import logging
    with tempfile.TemporaryDirectory() as tmpdir:
        log_path = Path(tmpdir) / "logs" / "radar.log"
        handler = configure_logging(log_path, verbose=True)
        try:
            logging.getLogger("radar").debug("hello from the test")
            handler.flush()
            assert "hello from the test" in log_path.read_text(encoding="utf-8")
        finally:
            logging.getLogger("radar").removeHandler(handler)
            handler.close()
    print("  Logging OK")


def test_cli_headless_stats():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = Path(tmpdir) / "radar.db"

        async def seed():
            async with CatalogStore(db) as store:
                await add_blip(store, "Go", Ring.ADOPT, Quadrant.LANGUAGES)
                await add_adr(store, "Use Go", blip_name="Go")

        asyncio.run(seed())
        runner = CliRunner()

        result = runner.invoke(cli, ["--db", str(db), "--headless"])
        assert result.exit_code == 0, result.output
        assert "Total blips: 1" in result.output
        assert "ADR coverage: 100.0%" in result.output
        assert "- adopt: 1" in result.output
        assert "- Go | languages | adopt | 2025-04-18" in result.output

        result = runner.invoke(cli, ["--db", str(db), "--headless", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total_adrs"] == 1
        assert data["by_quadrant"]["languages"] == 1
        assert data["recent_blips"][0]["name"] == "Go"
    print("  CLI headless OK")


def test_cli_settings_command():
    with tempfile.TemporaryDirectory() as tmpdir:
        db = str(Path(tmpdir) / "radar.db")
        runner = CliRunner()

        result = runner.invoke(cli, ["--db", db, "settings"])
        assert result.exit_code == 0, result.output
        assert "No settings stored." in result.output

        result = runner.invoke(cli, ["--db", db, "settings", "BLIP_DIR", "/srv/blips"])
        assert result.exit_code == 0, result.output
        assert "BLIP_DIR = /srv/blips" in result.output

        result = runner.invoke(cli, ["--db", db, "settings"])
        assert "BLIP_DIR = /srv/blips" in result.output

        result = runner.invoke(cli, ["--db", db, "settings", "ADR_DIR"])
        assert result.exit_code == 1
    print("  CLI settings OK")


if __name__ == "__main__":
    print("Testing vocabulary...")
    test_enum_parse_and_index()
    test_cursor_wrap()
    print("  ✓ Vocabulary tests passed\n")

    print("Testing catalog store...")
    test_store_ids_start_at_one_and_grow()
    test_store_rejects_duplicate_blip_name()
    test_store_requires_names()
    test_store_partial_update_keeps_unset_fields()
    test_store_update_errors()
    test_store_has_adr_is_derived()
    test_store_lists_and_counts()
    test_store_settings_upsert()
    test_store_adds_missing_columns()
    test_store_malformed_row_is_store_error()
    test_store_closed_raises_store_error()
    print("  ✓ Store tests passed\n")

    print("Testing search...")
    test_fuzzy_rank()
    test_search_is_monotone()
    test_search_index_filters_both_lists()
    print("  ✓ Search tests passed\n")

    print("Testing markdown mirror...")
    test_mirror_file_names()
    test_render_blip_front_matter()
    test_render_adr_front_matter()
    test_mirror_write_is_idempotent()
    test_mirror_rediscovers_renamed_file()
    test_mirror_rediscovery_prefers_own_id()
    test_mirror_rename_follows_previous_name()
    print("  ✓ Mirror tests passed\n")

    print("Testing wizard and generation...")
    test_create_blip_through_wizard()
    test_create_adr_through_wizard()
    test_adr_before_its_blip_links_when_blip_arrives()
    test_wizard_name_rules()
    test_wizard_pickers_wrap()
    test_wizard_accepts_every_key_in_every_state()
    test_pipeline_conflict_returns_to_name_entry()
    test_pipeline_store_failure_returns_to_last_picker()
    test_pipeline_mirror_failure_is_degraded_success()
    test_pipeline_reload_failure_keeps_committed_entry()
    test_pipeline_routes_by_error_type()
    test_pipeline_transitions()
    print("  ✓ Wizard tests passed\n")

    print("Testing settings and command line...")
    test_load_settings_precedence()
    test_configure_logging_writes_file()
    test_cli_headless_stats()
    test_cli_settings_command()
    print("  ✓ Settings and CLI tests passed\n")

    print("=" * 50)
    print("All tests passed!")
    print("=" * 50)
