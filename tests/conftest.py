"""In-memory stand-ins for the durable store, asset store, image generator and providers."""

import asyncio
from typing import Optional
from uuid import uuid4

import pytest

from bulkvideo import metrics
from bulkvideo.animation_provider import AnimationProvider, AnimationProviderId, AnimationResult
from bulkvideo.errors import AnimationError, ArtifactUnavailableError, StoreUnavailableError
from bulkvideo.provider_factory import PROVIDER_CLASSES, parse_provider
from bulkvideo.pipeline.animate import SceneAnimator
from bulkvideo.pipeline.models import BatchJob, RenderedOutput, VideoItem
from bulkvideo.pipeline.orchestrator import BulkJobOrchestrator
from bulkvideo.pipeline.render import MultiFormatRenderer
from bulkvideo.pipeline.scene_gen import SceneContent
from bulkvideo.pipeline.storage import ArtifactRef


class MemoryStore:
    """Same async surface as SupabaseBatchStore, backed by dicts."""

    def __init__(self):
        self.users = {"ext-alice": "user-alice", "ext-bob": "user-bob"}
        self.batches: dict[str, BatchJob] = {}
        self.items: dict[str, VideoItem] = {}
        self.scenes = {}
        self.outputs: dict[str, RenderedOutput] = {}
        self.unavailable = False
        self.fail_next = 0

    def _check(self):
        if self.fail_next:
            self.fail_next -= 1
            raise StoreUnavailableError("Durable store unreachable: connection reset")
        if self.unavailable:
            raise StoreUnavailableError("Durable store unreachable: connection refused")

    @staticmethod
    def _get(table: dict, record_id: str, name: str):
        if record_id not in table:
            raise LookupError(f"{name} record {record_id} not found")
        return table[record_id]

    async def resolve_user_id(self, external_id: str) -> Optional[str]:
        self._check()
        return self.users.get(external_id)

    async def create_batch(self, batch):
        self._check()
        self.batches[batch.id] = batch
        return batch

    async def get_batch(self, batch_id):
        self._check()
        return self._get(self.batches, batch_id, "batch_jobs")

    async def create_items(self, items):
        self._check()
        for item in items:
            self.items[item.id] = item
        return sorted(items, key=lambda i: i.row_index)

    async def get_item(self, item_id):
        self._check()
        return self._get(self.items, item_id, "video_items")

    async def list_items(self, batch_id, status=None):
        self._check()
        items = [i for i in self.items.values() if i.batch_id == batch_id and (status is None or i.status == status)]
        return sorted(items, key=lambda i: i.row_index)

    async def update_item(self, item_id, **fields):
        self._check()
        item = self._get(self.items, item_id, "video_items").model_copy(update=fields)
        self.items[item_id] = item
        return item

    async def create_scene(self, scene):
        self._check()
        self.scenes[scene.id] = scene
        return scene

    async def get_scene(self, scene_id):
        self._check()
        return self._get(self.scenes, scene_id, "scenes")

    async def list_scenes(self, item_id):
        self._check()
        return sorted((s for s in self.scenes.values() if s.item_id == item_id), key=lambda s: s.order)

    async def update_scene(self, scene_id, **fields):
        self._check()
        scene = self._get(self.scenes, scene_id, "scenes").model_copy(update=fields)
        self.scenes[scene_id] = scene
        return scene

    async def delete_scenes(self, item_id):
        doomed = [k for k, s in self.scenes.items() if s.item_id == item_id]
        for key in doomed:
            del self.scenes[key]
        return len(doomed)

    async def get_output(self, item_id, fmt):
        self._check()
        return next((o for o in self.outputs.values() if o.item_id == item_id and o.format == fmt), None)

    async def list_outputs(self, item_id):
        self._check()
        return sorted((o for o in self.outputs.values() if o.item_id == item_id), key=lambda o: o.format)

    async def list_batch_outputs(self, batch_id):
        self._check()
        return [o for o in self.outputs.values() if o.batch_id == batch_id]

    async def upsert_output(self, item_id, batch_id, fmt, **fields):
        self._check()
        existing = await self.get_output(item_id, fmt)
        if existing:
            output = existing.model_copy(update=fields)
        else:
            output = RenderedOutput(id=str(uuid4()), item_id=item_id, batch_id=batch_id, format=fmt, **fields)
        self.outputs[output.id] = output
        return output

    async def delete_outputs(self, item_id):
        doomed = [k for k, o in self.outputs.items() if o.item_id == item_id]
        for key in doomed:
            del self.outputs[key]
        return len(doomed)


class FakeGateway:
    """Asset store double: refs map to in-memory blobs, signing is deterministic."""

    BUCKETS = {"images", "videos"}

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.missing: set[str] = set()
        self.uploads: list[str] = []
        self.deleted: list[str] = []

    def presign(self, ref, mode=None, download_filename=None, expires_in=None, content_type=None):
        url = f"https://signed.example/{str(ref).replace('s3://', '')}?X-Amz-Signature=abc"
        if download_filename:
            url += f"&filename={download_filename}"
        return url

    def is_store_url(self, url):
        try:
            self.extract_ref(url)
        except ValueError:
            return False
        return True

    def extract_ref(self, url):
        if url.startswith("s3://"):
            ref = ArtifactRef.parse(url)
        elif url.startswith("https://signed.example/"):
            bucket, _, key = url.split("?")[0].replace("https://signed.example/", "").partition("/")
            ref = ArtifactRef(bucket, key)
        else:
            raise ValueError(f"URL does not belong to the asset store: {url}")
        if ref.bucket not in self.BUCKETS or not ref.key:
            raise ValueError(f"URL does not belong to the asset store: {url}")
        return ref

    def persistable_ref(self, url):
        return self.extract_ref(url).uri if self.is_store_url(url) else url

    def resolve_read_url(self, value):
        return self.presign(value) if self.is_store_url(value) else value

    async def upload_bytes(self, key, data, content_type="image/png"):
        ref = ArtifactRef("images", key)
        self.blobs[ref.uri] = data
        self.uploads.append(ref.uri)
        return ref

    async def upload_file(self, path, key, content_type="video/mp4"):
        with open(path, "rb") as f:
            data = f.read()
        ref = ArtifactRef("videos", key)
        self.blobs[ref.uri] = data
        self.uploads.append(ref.uri)
        return ref

    async def copy_from_url(self, url, key, content_type="video/mp4"):
        ref = ArtifactRef("videos", key)
        self.blobs[ref.uri] = f"copied:{url}".encode()
        return ref

    async def delete(self, ref):
        self.deleted.append(str(ref))
        self.blobs.pop(str(ref), None)

    async def fetch_bytes(self, value):
        return b"reference-image"

    async def download_to(self, ref, fileobj):
        uri = str(ref)
        if uri in self.missing:
            raise ArtifactUnavailableError(f"{uri}: HTTP 404")
        fileobj.write(self.blobs.get(uri, b"clip:" + uri.encode()))


class FakeContentGenerator:
    """Scene images without Gemini. Rows whose text contains a failing marker raise."""

    def __init__(self, fail_marker: str = "BROKEN", delay: float = 0.01):
        self.fail_marker = fail_marker
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: list[tuple[str, int]] = []

    async def generate(self, item, batch, settings, order, prompt=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            self.calls.append((item.id, order))
            if self.fail_marker in item.text_content:
                raise RuntimeError("Gemini returned no image (SAFETY)")
            return SceneContent(
                prompt=prompt or f"{item.text_content} scene {order}",
                image_ref=f"s3://images/scenes/{item.id}/scene-{order}-{uuid4().hex[:6]}.png",
            )
        finally:
            self.in_flight -= 1


class FakeProvider(AnimationProvider):
    """Real capability checks, canned results."""

    def __init__(self, provider_id, error: Optional[AnimationError] = None):
        self.provider_id = provider_id
        self.capabilities = PROVIDER_CLASSES[provider_id].capabilities
        self.error = error
        self.failing_items: dict[str, AnimationError] = {}
        self.calls = []

    def fail_for(self, item_id: str, error: AnimationError):
        """Raise `error` for every scene image of one item only."""
        self.failing_items[item_id] = error

    async def _submit(self, source_image_url, motion_prompt, duration, resolution, camera_fixed, seed, aspect_ratio):
        self.calls.append({
            "image": source_image_url, "prompt": motion_prompt, "duration": duration,
            "resolution": resolution, "aspect_ratio": aspect_ratio,
        })
        if self.error:
            raise self.error
        for item_id, error in self.failing_items.items():
            if f"/scenes/{item_id}/" in source_image_url:
                raise error
        return AnimationResult(video_url=f"https://cdn.provider.example/{uuid4().hex}.mp4", seed=42)


class FakeProviderFactory:
    def __init__(self):
        self.providers = {pid: FakeProvider(pid) for pid in AnimationProviderId}
        self.requested = []

    def get_provider(self, provider):
        provider_id = parse_provider(provider)
        self.requested.append(provider_id)
        return self.providers[provider_id]

    @property
    def total_calls(self) -> int:
        return sum(len(p.calls) for p in self.providers.values())


class FakeCompositor:
    def __init__(self, failing_formats=()):
        self.failing_formats = set(failing_formats)
        self.rendered = []

    async def concatenate(self, clip_paths, output_path):
        with open(output_path, "wb") as out:
            for path in clip_paths:
                with open(path, "rb") as clip:
                    out.write(clip.read())

    async def render_format(self, master_path, output_path, width, height, logo=None):
        fmt = f"{width}x{height}"
        if fmt in self.failing_formats:
            raise RuntimeError(f"ffmpeg exited with status 1 for {fmt}")
        self.rendered.append(fmt)
        with open(output_path, "wb") as f:
            f.write(f"video {fmt}".encode())


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def content():
    return FakeContentGenerator()


@pytest.fixture
def factory():
    return FakeProviderFactory()


@pytest.fixture
def compositor():
    return FakeCompositor()


@pytest.fixture
def orchestrator(store, gateway, content, factory, compositor):
    return BulkJobOrchestrator(
        store,
        content,
        SceneAnimator(store, gateway, factory=factory, allow_fallback=False),
        MultiFormatRenderer(store, gateway, compositor=compositor),
        concurrency=3,
    )


def seed_batch(store: MemoryStore, texts, user_id="user-alice", **batch_fields) -> BatchJob:
    """Put a batch with one pending item per text straight into the store."""
    batch = BatchJob(id=str(uuid4()), user_id=user_id, name="Summer Sale", **batch_fields)
    store.batches[batch.id] = batch
    for row_index, text in enumerate(texts, start=1):
        item = VideoItem(
            id=f"item-{row_index}",
            batch_id=batch.id,
            user_id=user_id,
            row_index=row_index,
            text_content=text,
        )
        store.items[item.id] = item
    return batch
