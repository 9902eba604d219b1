from __future__ import annotations

import asyncio

import pytest

from conftest import Crash, FakeCrawler, FakeStage, make_videos
from video_downloader.models import Stage, StageState
from video_downloader.pipeline import (
    UNSET,
    PipelineResult,
    RunOptions,
    StageAdapters,
    process_video,
    run_app,
    run_pipeline,
    video_range,
)
from video_downloader.session import SessionManager
from video_downloader.store import CheckpointError, load_videos, save_videos

pytestmark = pytest.mark.unit


def _adapters(**overrides) -> StageAdapters:
    return StageAdapters(
        acquirer=overrides.get("acquirer") or FakeStage("acquire"),
        enricher=overrides.get("enricher") or FakeStage("enrich"),
        publisher=overrides.get("publisher") or FakeStage("publish"),
    )


def _markers(videos):
    return [(v.acquired, v.enriched, v.published) for v in videos]


@pytest.mark.parametrize(
    "total,start,end,expected",
    [
        (5, UNSET, UNSET, (1, 5)),
        (5, 2, 4, (2, 4)),
        (5, 0, 3, (1, 3)),
        (5, 3, 99, (3, 5)),
        (5, 4, 2, (4, 2)),
        (0, UNSET, UNSET, (1, 0)),
    ],
)
def test_video_range(total, start, end, expected):
    assert video_range(total, start, end) == expected


@pytest.mark.asyncio
async def test_full_run_publishes_every_video(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(3)
    adapters = _adapters()

    result = await run_pipeline(videos, path, adapters, sessions)

    assert result.success
    assert result.processed == 3
    assert all(v.state is StageState.PUBLISHED for v in videos)
    assert result.stages_run == {Stage.ACQUIRE: 3, Stage.ENRICH: 3, Stage.PUBLISH: 3}
    assert load_videos(path) == videos


@pytest.mark.asyncio
async def test_second_run_does_nothing(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(2)
    await run_pipeline(videos, path, _adapters(), sessions)

    adapters = _adapters()
    result = await run_pipeline(load_videos(path), path, adapters, sessions)

    assert result.processed == 2
    assert adapters.acquirer.calls == []
    assert adapters.enricher.calls == []
    assert adapters.publisher.calls == []


@pytest.mark.asyncio
async def test_ignored_videos_are_skipped_and_not_counted(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(4)
    videos[0].ignore = True
    videos[1].ignore = True
    adapters = _adapters()

    result = await run_pipeline(videos, path, adapters, sessions, RunOptions(quit_after=2))

    assert result.skipped == 2
    assert result.processed == 2
    assert adapters.acquirer.calls == [3, 4]
    assert videos[0].state is StageState.IGNORED


@pytest.mark.asyncio
async def test_quit_after_stops_early(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(5)
    adapters = _adapters()

    result = await run_pipeline(videos, path, adapters, sessions, RunOptions(quit_after=2))

    assert result.processed == 2
    assert adapters.acquirer.calls == [1, 2]
    assert _markers(videos)[2:] == [(False, False, False)] * 3


@pytest.mark.asyncio
async def test_range_limits_processing(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(5)
    adapters = _adapters()

    await run_pipeline(videos, path, adapters, sessions, RunOptions(start=2, end=3))

    assert adapters.acquirer.calls == [2, 3]


@pytest.mark.asyncio
async def test_force_reruns_only_the_forced_stage(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(2)
    await run_pipeline(videos, path, _adapters(), sessions)

    adapters = _adapters()
    options = RunOptions(force={Stage.ENRICH: True})
    await run_pipeline(videos, path, adapters, sessions, options)

    assert adapters.acquirer.calls == []
    assert adapters.enricher.calls == [1, 2]
    assert adapters.publisher.calls == []
    assert all(v.published for v in videos)


@pytest.mark.asyncio
async def test_transient_failure_is_retried(tmp_path, sessions, session_factory):
    path = tmp_path / "videos.json"
    videos = make_videos(1)
    enricher = FakeStage("enrich", failures={1: 2})

    result = await run_pipeline(videos, path, _adapters(enricher=enricher), sessions)

    assert result.success
    assert enricher.calls == [1, 1, 1]
    assert videos[0].enriched
    assert session_factory.closed == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_logged_and_run_continues(tmp_path, sessions, caplog):
    path = tmp_path / "videos.json"
    videos = make_videos(3)
    enricher = FakeStage("enrich", failures={2: 99})

    result = await run_pipeline(videos, path, _adapters(enricher=enricher), sessions)

    assert result.processed == 2
    assert [video_id for video_id, _ in result.failures] == [2]
    assert "enrich failed for 2" in result.failures[0][1]
    assert enricher.calls.count(2) == 3
    assert _markers(videos) == [(True, True, True), (True, False, False), (True, True, True)]
    # The failed attempt's partial changes never reach the catalog.
    assert videos[1].details is None
    assert _markers(load_videos(path)) == _markers(videos)
    assert "Processing failed" in caplog.text


@pytest.mark.asyncio
async def test_failed_videos_do_not_count_towards_quit_after(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(4)
    acquirer = FakeStage("acquire", failures={1: 99})

    result = await run_pipeline(
        videos, path, _adapters(acquirer=acquirer), sessions, RunOptions(quit_after=2)
    )

    assert result.processed == 2
    assert acquirer.calls == [1, 1, 1, 2, 3]


@pytest.mark.asyncio
async def test_acquire_without_file_is_a_failure(tmp_path, sessions):
    class NoFile(FakeStage):
        async def acquire(self, video, session):
            self.calls.append(video.id)
            return video

    path = tmp_path / "videos.json"
    videos = make_videos(1)
    acquirer = NoFile("acquire")

    result = await run_pipeline(videos, path, _adapters(acquirer=acquirer), sessions)

    assert not result.success
    assert not videos[0].acquired
    assert "without a downloaded file" in result.failures[0][1]


@pytest.mark.asyncio
async def test_publisher_does_not_borrow_the_browser(tmp_path, sessions, session_factory):
    path = tmp_path / "videos.json"
    videos = make_videos(1)
    videos[0].acquired = True
    videos[0].enriched = True
    videos[0].downloaded_file = "/downloads/1.mp4"
    publisher = FakeStage("publish", failures={1: 1})

    await run_pipeline(videos, path, _adapters(publisher=publisher), sessions)

    assert videos[0].published
    assert publisher.sessions == [None, None]
    assert session_factory.sessions == []


@pytest.mark.asyncio
async def test_checkpoint_failure_is_fatal(tmp_path, sessions):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    videos = make_videos(2)
    adapters = _adapters()

    with pytest.raises(CheckpointError):
        await run_pipeline(videos, blocker / "videos.json", adapters, sessions)
    assert adapters.acquirer.calls == [1]


@pytest.mark.asyncio
async def test_cancellation_between_videos(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(3)
    event = asyncio.Event()

    class CancelAfterFirst(FakeStage):
        async def publish(self, video):
            result = await super().publish(video)
            event.set()
            return result

    adapters = _adapters(publisher=CancelAfterFirst("publish"))

    with pytest.raises(asyncio.CancelledError):
        await run_pipeline(videos, path, adapters, sessions, cancel_event=event)

    assert adapters.acquirer.calls == [1]
    saved = load_videos(path)
    assert saved[0].published
    assert not saved[1].acquired


@pytest.mark.asyncio
async def test_cancellation_between_stages(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(1)
    event = asyncio.Event()

    class CancelAfterAcquire(FakeStage):
        async def acquire(self, video, session):
            result = await super().acquire(video, session)
            event.set()
            return result

    adapters = _adapters(acquirer=CancelAfterAcquire("acquire"))

    with pytest.raises(asyncio.CancelledError):
        await run_pipeline(videos, path, adapters, sessions, cancel_event=event)

    assert adapters.enricher.calls == []
    assert _markers(load_videos(path)) == [(True, False, False)]


@pytest.mark.asyncio
async def test_checkpoint_is_saved_after_each_stage(tmp_path, sessions, monkeypatch):
    path = tmp_path / "videos.json"
    videos = make_videos(1)
    snapshots = []

    import video_downloader.pipeline as pipeline

    def recording_save(target, items):
        snapshots.append(_markers(items))
        save_videos(target, items)

    monkeypatch.setattr(pipeline, "save_videos", recording_save)

    await process_video(videos, 0, path, _adapters(), sessions, RunOptions())

    assert snapshots == [
        [(True, False, False)],
        [(True, True, False)],
        [(True, True, True)],
    ]


@pytest.mark.parametrize("crash_stage", ["acquire", "enrich", "publish"])
@pytest.mark.parametrize("crash_call", [1, 2, 3])
@pytest.mark.asyncio
async def test_resume_after_crash_matches_uninterrupted_run(
    tmp_path, sessions, crash_stage, crash_call
):
    reference = make_videos(3)
    await run_pipeline(reference, tmp_path / "reference.json", _adapters(), sessions)

    path = tmp_path / "videos.json"
    videos = make_videos(3)
    save_videos(path, videos)
    crashing = {crash_stage: FakeStage(crash_stage, crash_on=crash_call)}
    first = _adapters(
        acquirer=crashing.get("acquire"),
        enricher=crashing.get("enrich"),
        publisher=crashing.get("publish"),
    )
    with pytest.raises(Crash):
        await run_pipeline(videos, path, first, sessions)

    before = _markers(load_videos(path))
    second = _adapters()
    await run_pipeline(load_videos(path), path, second, sessions)

    resumed = load_videos(path)
    assert resumed == reference
    # Nothing that was recorded as done was run again.
    for stage, adapter in (
        ("acquire", second.acquirer),
        ("enrich", second.enricher),
        ("publish", second.publisher),
    ):
        position = ("acquire", "enrich", "publish").index(stage)
        done = {i + 1 for i, marks in enumerate(before) if marks[position]}
        assert done.isdisjoint(adapter.calls)


@pytest.mark.asyncio
async def test_markers_only_move_forward(tmp_path, sessions):
    path = tmp_path / "videos.json"
    videos = make_videos(1)
    videos[0].acquired = True
    videos[0].downloaded_file = "/downloads/1.mp4"

    class ClearsMarkers(FakeStage):
        async def enrich(self, video, session):
            video.acquired = False
            return await super().enrich(video, session)

    await run_pipeline(videos, path, _adapters(enricher=ClearsMarkers("enrich")), sessions)

    assert _markers(videos) == [(True, True, True)]


@pytest.fixture
def wired_app(monkeypatch, config, session_factory):
    """Patches run_app's collaborators; returns the crawler and the recorded pipeline runs."""
    import video_downloader.pipeline as pipeline

    crawler = FakeCrawler({1: ["https://example.com/v/a", "https://example.com/v/b"]})
    runs = []

    async def fake_run_pipeline(videos, checkpoint_path, adapters, sessions, options, cancel_event):
        runs.append(list(videos))
        return PipelineResult(total=len(videos), processed=len(videos))

    monkeypatch.setattr(pipeline, "VideoListCrawler", lambda catalog_config: crawler)
    monkeypatch.setattr(
        pipeline,
        "SessionManager",
        lambda app_config: SessionManager(app_config, factory=session_factory),
    )
    monkeypatch.setattr(pipeline, "run_pipeline", fake_run_pipeline)
    config.catalog.stop_after_catalog = True
    return crawler, runs


@pytest.mark.asyncio
async def test_stop_after_catalog_stops_once_a_crawl_finished(config, wired_app):
    crawler, runs = wired_app

    result = await run_app(config)

    assert crawler.calls == [1]
    assert runs == []
    assert result.total == 2
    assert len(load_videos(config.checkpoint_path)) == 2


@pytest.mark.asyncio
async def test_stop_after_catalog_does_not_apply_to_a_cached_catalog(config, wired_app):
    crawler, runs = wired_app
    save_videos(config.checkpoint_path, make_videos(3))

    result = await run_app(config)

    assert crawler.calls == []
    assert [len(videos) for videos in runs] == [3]
    assert result.processed == 3
