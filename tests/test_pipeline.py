"""Tests for the capture → scan → history pipeline."""

import numpy as np
import pytest

from halalscan import imaging
from halalscan.camera import CaptureState, StreamProvider, VideoStream
from halalscan.classifier import ClassificationBackend
from halalscan.config import ScanConfig
from halalscan.entitlement import SupabaseEntitlementStore
from halalscan.errors import ScanError, ScanFailureKind
from halalscan.models import HalalStatus, ScanResult
from halalscan.pipeline import ScanPipeline, build_entitlement
from halalscan.store import SecureStorage

OK_RESULT = ScanResult(status=HalalStatus.HARAM, reason="Contains E120", confidence=97)


class FakeBackend(ClassificationBackend):
    def __init__(self, result=OK_RESULT, error=None):
        self.result = result
        self.error = error
        self.requests = []

    async def classify(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.result


class FakeStream(VideoStream):
    def __init__(self):
        self.stopped = False

    def read_frame(self):
        return np.full((720, 1280, 3), 60, dtype=np.uint8)

    def capabilities(self):
        return {}

    def apply_constraints(self, **constraints):
        pass

    def stop(self):
        self.stopped = True


class FakeProvider(StreamProvider):
    def __init__(self):
        self.streams = []

    @property
    def available(self):
        return True

    async def open(self, constraints):
        stream = FakeStream()
        self.streams.append(stream)
        return stream


@pytest.fixture
def config(tmp_path):
    cfg = ScanConfig()
    cfg.storage.db_path = str(tmp_path / "state.db")
    cfg.session.progress_interval = 0.01
    return cfg


def _image():
    return imaging.encode_jpeg(np.full((1200, 1600, 3), 200, dtype=np.uint8), 95)


class TestScan:
    @pytest.mark.asyncio
    async def test_success_is_recorded_with_thumbnail(self, config):
        async with ScanPipeline(config, backend=FakeBackend()) as pipeline:
            pipeline.add_image(_image())
            outcome = await pipeline.scan()

            assert outcome.ok
            items = pipeline.history.items
            assert len(items) == 1
            assert items[0].result.reason == "Contains E120"
            assert max(items[0].thumbnail.width, items[0].thumbnail.height) == 200
            assert pipeline.state.images == []
            assert pipeline.state.is_loading is False
            assert pipeline.entitlement.scan_count == 1

    @pytest.mark.asyncio
    async def test_text_scan_has_no_thumbnail(self, config):
        async with ScanPipeline(config, backend=FakeBackend()) as pipeline:
            await pipeline.scan(text="sugar, carmine")
            assert pipeline.history.items[0].thumbnail is None

    @pytest.mark.asyncio
    async def test_timeout_writes_no_history(self, config):
        backend = FakeBackend(error=ScanError(ScanFailureKind.TIMEOUT, "504"))
        async with ScanPipeline(config, backend=backend) as pipeline:
            pipeline.add_image(_image())
            outcome = await pipeline.scan()

            assert outcome.error.kind is ScanFailureKind.TIMEOUT
            assert len(pipeline.history) == 0
            assert pipeline.entitlement.scan_count == 0
            assert len(pipeline.state.images) == 1

    @pytest.mark.asyncio
    async def test_reported_failure_writes_no_history(self, config):
        backend = FakeBackend(result=ScanResult.failure("Not a food product label"))
        async with ScanPipeline(config, backend=backend) as pipeline:
            outcome = await pipeline.scan(text="???")
            assert not outcome.ok
            assert len(pipeline.history) == 0

    @pytest.mark.asyncio
    async def test_busy_flag_rejects_second_scan(self, config):
        backend = FakeBackend()
        async with ScanPipeline(config, backend=backend) as pipeline:
            pipeline.state.is_loading = True
            assert await pipeline.scan(text="salt") is None
            assert backend.requests == []

    @pytest.mark.asyncio
    async def test_history_survives_restart(self, config):
        async with ScanPipeline(config, backend=FakeBackend()) as pipeline:
            await pipeline.scan(text="water")

        async with ScanPipeline(config, backend=FakeBackend()) as pipeline:
            assert [i.result.reason for i in pipeline.history.items] == ["Contains E120"]
            assert pipeline.entitlement.scan_count == 1


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_images_holds_between_shots(self, config):
        provider = FakeProvider()
        events = []
        pipeline = ScanPipeline(
            config, backend=FakeBackend(), provider=provider, on_feedback=events.append
        )
        await pipeline.start()

        captured = await pipeline.capture_images(3)

        assert len(captured) == 3
        assert len(pipeline.state.images) == 3
        assert events == ["image_added", "image_added", "captured"]
        assert provider.streams[0].stopped is True
        pipeline.close()

    @pytest.mark.asyncio
    async def test_capture_respects_image_limit(self, config):
        pipeline = ScanPipeline(config, backend=FakeBackend(), provider=FakeProvider())
        await pipeline.start()
        for _ in range(3):
            pipeline.add_image(_image())

        captured = await pipeline.capture_images(4)

        assert len(captured) == 1
        assert len(pipeline.state.images) == 4
        pipeline.close()

    def test_open_camera_uses_config(self, config):
        config.camera.jpeg_quality = 80
        config.camera.long_press_ms = 300
        pipeline = ScanPipeline(config, backend=FakeBackend(), provider=FakeProvider())
        session = pipeline.open_camera()
        assert session.state is CaptureState.UNINITIALIZED
        assert session._jpeg_quality == 80
        assert session._long_press_ms == 300
        pipeline.close()


class TestBuildEntitlement:
    def test_local_only_without_supabase(self, config, tmp_path):
        storage = SecureStorage(tmp_path / "s.db")
        state = build_entitlement(config, storage)
        assert state._store is None
        assert state._identity_provider is None
        assert state.free_limit == 20
        storage.close()

    def test_supabase_when_configured(self, config, tmp_path):
        config.entitlement.supabase_url = "https://project.supabase.co"
        config.entitlement.supabase_anon_key = "anon"
        storage = SecureStorage(tmp_path / "s.db")
        state = build_entitlement(config, storage)
        assert isinstance(state._store, SupabaseEntitlementStore)
        storage.close()
