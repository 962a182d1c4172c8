"""End-to-end tests for the discovery coordinator."""

import asyncio
from collections import defaultdict

import pytest

from site_discovery.deps import build_coordinator
from site_discovery.discovery.events import DiscoveryEvent
from site_discovery.discovery.utils import DiscoveryState
from site_discovery.schemas import DiscoveryType
from site_discovery.schemas.checkpoint import CheckpointStatus
from site_discovery.services.exceptions import (
    DiscoveryInProgressError,
    FatalDiscoveryError,
    PersistenceError,
)
from site_discovery.services.media_cleanup import NullMediaCleanup
from site_discovery.utils import now_ms

CHECKPOINT = ".media/.processing/discovery-checkpoint.json"


def record_events(coordinator):
    """Attach a listener to every event, returns the list they append to."""
    seen = []
    for event in DiscoveryEvent:
        coordinator.on(event, lambda payload, event=event: seen.append((event, payload)))
    return seen


def checkpoint_row(fake_repo) -> dict:
    return fake_repo.read_json(CHECKPOINT)["data"][0]


def inventory_rows(fake_repo, name: str) -> list:
    return fake_repo.read_json(f".media/.pages/{name}.json")["data"]


def without_discovered_at(rows: list) -> list:
    return [{k: v for k, v in row.items() if k != "discoveredAt"} for row in rows]


@pytest.mark.asyncio
async def test_full_discovery(coordinator, sample_site):
    """Test a first run over a root page and two folders."""
    events = record_events(coordinator)

    result = await coordinator.start_discovery()

    assert result.discovery_type == DiscoveryType.FULL
    assert result.status == DiscoveryState.COMPLETED
    assert coordinator.state == DiscoveryState.COMPLETED
    assert result.total_folders == 3
    assert result.completed_folders == 3
    assert result.total_documents == 4
    assert result.errors == 0

    for name in ("root", "a", "b"):
        assert sample_site.exists(f".media/.pages/{name}.json")
    assert {row["path"] for row in inventory_rows(sample_site, "a")} == {
        "/acme/site/a/x.html",
        "/acme/site/a/nested/deep.html",
    }

    checkpoint = checkpoint_row(sample_site)
    assert checkpoint["status"] == "completed"
    assert checkpoint["totalFolders"] == 3
    assert checkpoint["completedFolders"] == 3
    assert checkpoint["discoveryType"] == "full"
    assert checkpoint["discoveryEndTime"] >= checkpoint["discoveryStartTime"]

    structure = sample_site.read_json(".media/site-structure.json")["data"][0]
    assert set(structure["structure"]["root"]["subfolders"]) == {"a", "b"}
    assert structure["stats"]["totalFiles"] == 4

    names = [event for event, _ in events]
    assert names[0] == DiscoveryEvent.STARTED
    assert names[-1] == DiscoveryEvent.COMPLETE
    assert names.count(DiscoveryEvent.FOLDER_COMPLETE) == 3
    assert DiscoveryEvent.FOLDER_ERROR not in names
    complete = events[-1][1]
    assert complete["totalDocuments"] == 4
    assert complete["siteStructure"]["stats"]["totalFiles"] == 4

    # Run lock released
    assert not sample_site.exists(".media/.sessions/discovery-lock.json")


@pytest.mark.asyncio
async def test_documents_discovered_events(coordinator, sample_site):
    events = record_events(coordinator)

    await coordinator.start_discovery()

    discovered = defaultdict(list)
    for event, payload in events:
        if event == DiscoveryEvent.DOCUMENTS_DISCOVERED:
            discovered[payload["folder"]].extend(doc["path"] for doc in payload["documents"])
    assert discovered["/acme/site/b"] == ["/acme/site/b/y.html"]
    assert discovered["/acme/site"] == ["/acme/site/root.html"]


@pytest.mark.asyncio
async def test_incremental_discovery_after_structural_change(
    coordinator, sample_site, media_cleanup
):
    """Test that a removed folder is swept and a new one discovered."""
    await coordinator.start_discovery()
    sample_site.remove("b")
    sample_site.add_page("c/z.html")
    events = record_events(coordinator)

    result = await coordinator.start_discovery()

    assert result.discovery_type == DiscoveryType.INCREMENTAL
    assert result.status == DiscoveryState.COMPLETED
    assert result.has_changes
    assert result.new_folders == ["c"]
    assert result.deleted_folders == ["b"]
    assert result.total_folders == 3
    assert result.completed_folders == 3

    assert not sample_site.exists(".media/.pages/b.json")
    assert [row["entryStatus"] for row in inventory_rows(sample_site, "c")] == ["new"]
    assert {row["entryStatus"] for row in inventory_rows(sample_site, "a")} == {"unchanged"}
    assert media_cleanup.calls == [["/acme/site/b/y.html"]]

    deleted = [p for e, p in events if e == DiscoveryEvent.PAGE_DELETED]
    assert deleted == [{"folderPath": "/acme/site/b", "deletedPaths": ["/acme/site/b/y.html"]}]

    structure = sample_site.read_json(".media/site-structure.json")["data"][0]
    assert set(structure["structure"]["root"]["subfolders"]) == {"a", "c"}
    assert checkpoint_row(sample_site)["discoveryType"] == "incremental"


@pytest.mark.asyncio
async def test_incremental_discovery_detects_document_changes(coordinator, sample_site):
    await coordinator.start_discovery()

    # Downstream scanner recorded media for x.html
    rows = inventory_rows(sample_site, "a")
    for row in rows:
        row.update(scanStatus="scanned", scanComplete=True, mediaCount=5)
    sample_site.put_json(".media/.pages/a.json", {"data": rows})

    sample_site.modified["a/nested/deep.html"] += 10_000
    sample_site.add_page("a/fresh.html")

    result = await coordinator.start_discovery()

    assert result.report == {"new": 1, "updated": 1, "unchanged": 3, "deleted": 0}
    by_name = {row["name"]: row for row in inventory_rows(sample_site, "a")}
    assert by_name["x"]["entryStatus"] == "unchanged"
    assert by_name["x"]["mediaCount"] == 5
    assert by_name["x"]["scanStatus"] == "scanned"
    assert by_name["deep"]["entryStatus"] == "updated"
    assert by_name["deep"]["scanStatus"] == "pending"
    assert by_name["deep"]["mediaCount"] == 0
    assert by_name["deep"]["needsRescan"] is True
    assert by_name["fresh"]["entryStatus"] == "new"


@pytest.mark.asyncio
async def test_incremental_without_changes(coordinator, sample_site):
    await coordinator.start_discovery()

    result = await coordinator.start_discovery()

    assert result.discovery_type == DiscoveryType.INCREMENTAL
    assert not result.has_changes
    assert result.new_folders == []
    assert result.deleted_folders == []


@pytest.mark.asyncio
async def test_forced_full_discovery_is_idempotent(coordinator, sample_site):
    await coordinator.start_discovery()
    first = {name: inventory_rows(sample_site, name) for name in ("root", "a", "b")}

    result = await coordinator.start_discovery(force_rescan=True)

    assert result.discovery_type == DiscoveryType.FULL
    for name, rows in first.items():
        assert without_discovered_at(inventory_rows(sample_site, name)) == without_discovered_at(rows)


@pytest.mark.asyncio
async def test_deleted_root_page_is_tombstoned(coordinator, sample_site):
    await coordinator.start_discovery()
    sample_site.remove("root.html")

    result = await coordinator.start_discovery()

    assert result.total_folders == 3
    rows = inventory_rows(sample_site, "root")
    assert rows[0]["entryStatus"] == "deleted"
    assert rows[0]["deletedAt"]


@pytest.mark.asyncio
async def test_folder_failure_is_isolated(coordinator, sample_site):
    """Test that a folder whose listing fails does not stop the run."""
    sample_site.fail_list.add("b")
    events = record_events(coordinator)

    result = await coordinator.start_discovery()

    assert result.status == DiscoveryState.COMPLETED
    assert result.completed_folders == 3
    assert result.errors == 1
    assert "b" in result.folder_errors
    assert sample_site.exists(".media/.pages/a.json")
    assert not sample_site.exists(".media/.pages/b.json")

    errors = [p for e, p in events if e == DiscoveryEvent.FOLDER_ERROR]
    assert [p["folderName"] for p in errors] == ["b"]
    checkpoint = checkpoint_row(sample_site)
    assert checkpoint["errors"] == 1
    assert checkpoint["folderStatus"]["b"]["status"] == "error"
    assert checkpoint["folderStatus"]["a"]["status"] == "completed"


@pytest.mark.asyncio
async def test_progress_is_monotonic(coordinator, fake_repo):
    for i in range(6):
        fake_repo.add_page(f"f{i}/page.html")
    progress = []
    coordinator.on(DiscoveryEvent.PROGRESS, lambda p: progress.append(p["progress"]))

    await coordinator.start_discovery()

    completed = [p["completed_folders"] for p in progress]
    assert completed == sorted(completed)
    assert completed[-1] == 6
    assert all(p["completed_folders"] <= p["total_folders"] for p in progress)

    stored = await coordinator.get_progress()
    assert stored["completed_folders"] == 6
    assert stored["status"] == "completed"


@pytest.mark.asyncio
async def test_unlistable_root_is_fatal(coordinator, fake_repo):
    fake_repo.add_page("a/x.html")
    fake_repo.fail_list.add("")
    events = record_events(coordinator)

    with pytest.raises(FatalDiscoveryError):
        await coordinator.start_discovery()

    assert coordinator.state == DiscoveryState.ERROR
    assert [e for e, _ in events] == [DiscoveryEvent.ERROR]
    assert not fake_repo.exists(CHECKPOINT)
    assert not fake_repo.exists(".media/.sessions/discovery-lock.json")


@pytest.mark.asyncio
async def test_checkpoint_write_failure_propagates(coordinator, sample_site):
    sample_site.fail_write.add(CHECKPOINT)

    with pytest.raises(PersistenceError):
        await coordinator.start_discovery()

    assert coordinator.state == DiscoveryState.ERROR


@pytest.mark.asyncio
async def test_run_lock_held_elsewhere(coordinator, sample_site):
    sample_site.put_json(
        ".media/.sessions/discovery-lock.json",
        {"data": [{"owner": "other-host", "acquiredAt": now_ms()}]},
    )

    with pytest.raises(DiscoveryInProgressError):
        await coordinator.start_discovery()

    assert coordinator.state == DiscoveryState.IDLE
    assert sample_site.exists(".media/.sessions/discovery-lock.json")


@pytest.mark.asyncio
async def test_overlapping_start_rejected(coordinator, sample_site):
    gate = sample_site.gate("a")
    run = asyncio.create_task(coordinator.start_discovery())
    await sample_site.gate_reached["a"].wait()

    with pytest.raises(DiscoveryInProgressError):
        await coordinator.start_discovery()

    gate.set()
    result = await run
    assert result.status == DiscoveryState.COMPLETED


@pytest.mark.asyncio
async def test_stop_discovery(coordinator, sample_site):
    """Test that stopping cancels outstanding folders and leaves counters as they were."""
    sample_site.gate("a")
    events = record_events(coordinator)
    b_done = asyncio.Event()
    coordinator.on(
        DiscoveryEvent.FOLDER_COMPLETE,
        lambda p: b_done.set() if p["folderName"] == "b" else None,
    )
    run = asyncio.create_task(coordinator.start_discovery())
    await sample_site.gate_reached["a"].wait()
    await b_done.wait()

    assert await coordinator.stop_discovery() is True
    result = await asyncio.wait_for(run, timeout=5)

    assert result.status == DiscoveryState.STOPPED
    assert coordinator.state == DiscoveryState.STOPPED
    assert result.completed_folders == 2
    assert result.total_folders == 3
    assert DiscoveryEvent.STOPPED in [e for e, _ in events]
    assert DiscoveryEvent.COMPLETE not in [e for e, _ in events]
    assert checkpoint_row(sample_site)["status"] == "running"
    assert not sample_site.exists(".media/.pages/a.json")

    # A stopped run is followed by a full one
    sample_site.list_gates.clear()
    follow_up = await coordinator.start_discovery()
    assert follow_up.discovery_type == DiscoveryType.FULL
    assert follow_up.status == DiscoveryState.COMPLETED


@pytest.mark.asyncio
async def test_stop_when_idle(coordinator):
    assert await coordinator.stop_discovery() is False


@pytest.mark.asyncio
async def test_pause_and_resume(coordinator, sample_site):
    gate = sample_site.gate("a")
    events = record_events(coordinator)
    run = asyncio.create_task(coordinator.start_discovery())
    await sample_site.gate_reached["a"].wait()

    assert await coordinator.pause_discovery() is True
    assert coordinator.state == DiscoveryState.PAUSED
    assert await coordinator.pause_discovery() is False

    gate.set()
    await asyncio.sleep(0.05)
    # Folder a is held at its next listing while paused
    assert not sample_site.exists(".media/.pages/a.json")

    assert await coordinator.resume_discovery() is True
    result = await asyncio.wait_for(run, timeout=5)

    assert result.status == DiscoveryState.COMPLETED
    names = [e for e, _ in events]
    assert names.index(DiscoveryEvent.PAUSED) < names.index(DiscoveryEvent.RESUMED)


@pytest.mark.asyncio
async def test_exclusions_from_config_sheet(coordinator, sample_site):
    sample_site.put_json(".media/config.json", {"data": [{"key": "excludes", "value": "/b/*"}]})

    result = await coordinator.start_discovery()

    assert result.total_folders == 2
    assert not sample_site.exists(".media/.pages/b.json")
    checkpoint = checkpoint_row(sample_site)
    assert checkpoint["excludedFolders"] == ["/acme/site/b"]
    assert checkpoint["excludedPatterns"] == ["/b/*"]
    structure = sample_site.read_json(".media/site-structure.json")["data"][0]
    assert structure["structure"]["root"]["subfolders"]["b"]["excluded"] is True
    assert structure["excluded"]["folders"] == ["/acme/site/b"]


@pytest.mark.asyncio
async def test_get_structural_changes(coordinator, sample_site):
    await coordinator.start_discovery()
    sample_site.remove("a")
    sample_site.add_page("new/p.html")
    sample_site.add_page("second.html")

    changes = await coordinator.get_structural_changes()

    assert changes.new_folders == ["new"]
    assert changes.deleted_folders == ["a"]
    assert changes.new_files == ["/acme/site/second.html"]
    assert changes.deleted_files == []
    assert changes.has_changes


@pytest.mark.asyncio
async def test_reset_forces_full_discovery(coordinator, sample_site):
    await coordinator.start_discovery()

    await coordinator.reset_discovery_state()

    assert checkpoint_row(sample_site)["status"] == "idle"
    assert (await coordinator.get_progress())["total_folders"] == 0
    assert coordinator.state == DiscoveryState.IDLE
    result = await coordinator.start_discovery()
    assert result.discovery_type == DiscoveryType.FULL


@pytest.mark.asyncio
async def test_validate_and_summary(coordinator, sample_site):
    await coordinator.start_discovery()

    validation = await coordinator.validate_site_structure()
    summary = await coordinator.get_progress_summary()

    assert validation.is_valid
    assert validation.stats.total_documents == 4
    assert summary["folder_progress"] == 100
    assert summary["state"] == "completed"


@pytest.mark.asyncio
async def test_folder_named_root_keeps_its_own_inventory(coordinator, fake_repo):
    """Test that a top-level folder called root does not share the root inventory."""
    fake_repo.add_page("home.html")
    fake_repo.add_page("root/inner.html")

    result = await coordinator.start_discovery()

    assert result.total_folders == 2
    assert result.total_documents == 2
    assert [row["path"] for row in inventory_rows(fake_repo, "root")] == ["/acme/site/home.html"]
    assert [row["path"] for row in inventory_rows(fake_repo, "_root")] == [
        "/acme/site/root/inner.html"
    ]
    assert set(checkpoint_row(fake_repo)["folderStatus"]) == {"root", "_root"}

    result = await coordinator.start_discovery()

    assert result.discovery_type == DiscoveryType.INCREMENTAL
    assert result.new_folders == []
    assert result.deleted_folders == []
    assert not result.has_changes
    assert [row["entryStatus"] for row in inventory_rows(fake_repo, "root")] == ["unchanged"]


@pytest.mark.asyncio
async def test_removed_folder_named_root_is_swept(coordinator, fake_repo, media_cleanup):
    fake_repo.add_page("home.html")
    fake_repo.add_page("root/inner.html")
    await coordinator.start_discovery()
    fake_repo.remove("root")

    result = await coordinator.start_discovery()

    assert result.deleted_folders == ["root"]
    assert media_cleanup.calls == [["/acme/site/root/inner.html"]]
    assert not fake_repo.exists(".media/.pages/_root.json")
    assert [row["path"] for row in inventory_rows(fake_repo, "root")] == ["/acme/site/home.html"]


@pytest.mark.asyncio
async def test_long_run_keeps_run_lock(app_config, repository_client, session_maker, sample_site):
    """Test that an active run refreshes its lock past the stale window."""
    config = app_config.model_copy(
        update={"lock_stale_after": 0.3, "lock_refresh_interval": 0.05}
    )
    first = build_coordinator(config, repository_client, session_maker, NullMediaCleanup())
    second = build_coordinator(config, repository_client, session_maker, NullMediaCleanup())
    gate = sample_site.gate("a")
    run = asyncio.create_task(first.start_discovery())
    await sample_site.gate_reached["a"].wait()

    await asyncio.sleep(0.6)
    with pytest.raises(DiscoveryInProgressError):
        await second.start_discovery()
    assert second.state == DiscoveryState.IDLE

    gate.set()
    result = await run
    assert result.status == DiscoveryState.COMPLETED
    assert not sample_site.exists(".media/.sessions/discovery-lock.json")


@pytest.mark.asyncio
async def test_interval_checkpoints_track_progress(
    app_config, repository_client, session_maker, sample_site, monkeypatch
):
    config = app_config.model_copy(update={"checkpoint_interval": 1e-6})
    coordinator = build_coordinator(config, repository_client, session_maker, NullMediaCleanup())
    saved = []
    save = coordinator.persistence.save_checkpoint

    async def record(checkpoint):
        saved.append(checkpoint)
        await save(checkpoint)

    monkeypatch.setattr(coordinator.persistence, "save_checkpoint", record)

    result = await coordinator.start_discovery()

    assert result.status == DiscoveryState.COMPLETED
    running = [c.completed_folders for c in saved if c.status == CheckpointStatus.RUNNING]
    # Start checkpoint plus one per folder result
    assert len(running) >= 3
    assert running == sorted(running)
    assert running[-1] == 3
    assert saved[-1].status == CheckpointStatus.COMPLETED


@pytest.mark.asyncio
async def test_interval_checkpoint_failure_does_not_stop_run(
    app_config, repository_client, session_maker, sample_site, monkeypatch
):
    config = app_config.model_copy(update={"checkpoint_interval": 1e-6})
    coordinator = build_coordinator(config, repository_client, session_maker, NullMediaCleanup())
    failed = []
    save = coordinator.persistence.save_checkpoint

    async def flaky(checkpoint):
        if checkpoint.status == CheckpointStatus.RUNNING and checkpoint.completed_folders:
            failed.append(checkpoint.completed_folders)
            raise PersistenceError("write rejected")
        await save(checkpoint)

    monkeypatch.setattr(coordinator.persistence, "save_checkpoint", flaky)

    result = await coordinator.start_discovery()

    assert failed
    assert result.status == DiscoveryState.COMPLETED
    assert checkpoint_row(sample_site)["status"] == "completed"
    assert checkpoint_row(sample_site)["completedFolders"] == 3


@pytest.mark.asyncio
async def test_stop_during_root_skips_deleted_folder_sweep(
    coordinator, sample_site, media_cleanup
):
    await coordinator.start_discovery()
    sample_site.remove("b")

    async def stop_after_root(payload):
        if payload["folderName"] == "root":
            await coordinator.stop_discovery()

    coordinator.on(DiscoveryEvent.FOLDER_COMPLETE, stop_after_root)

    result = await coordinator.start_discovery()

    assert result.status == DiscoveryState.STOPPED
    assert coordinator.state == DiscoveryState.STOPPED
    assert media_cleanup.calls == []
    assert sample_site.exists(".media/.pages/b.json")
    assert not sample_site.exists(".media/.sessions/discovery-lock.json")
