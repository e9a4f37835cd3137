import io
import asyncio
import zipfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import seed_batch
from bulkvideo.errors import QuotaExceededError, RateLimitedError
from bulkvideo.pipeline.models import RenderStatus, Scene, VideoStatus
from bulkvideo.pipeline.routes import get_gateway, get_orchestrator, get_store, router

ALICE = {"X-User-Id": "ext-alice"}
BOB = {"X-User-Id": "ext-bob"}

CSV = """text_content,product_image,video_formats,animation_provider
"Aurora headphones, noise cancelling",https://cdn.example.com/aurora.png,"1080x1920,wide",runway
Nimbus sneakers,,,
"""


def make_client(store, gateway, orchestrator) -> TestClient:
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    return TestClient(app)


@pytest.fixture
def client(store, gateway, orchestrator):
    return make_client(store, gateway, orchestrator)


# ── Auth / ownership ─────────────────────────────────────────────────────────

def test_missing_or_unknown_user_is_401(client):
    assert client.get("/bulk-video/any").status_code == 401
    assert client.get("/bulk-video/any", headers={"X-User-Id": "ext-mallory"}).status_code == 401


def test_other_users_batch_is_403(client, store):
    batch = seed_batch(store, ["Aurora"])
    assert client.get(f"/bulk-video/{batch.id}", headers=BOB).status_code == 403


def test_unknown_batch_is_404(client):
    assert client.get("/bulk-video/does-not-exist", headers=ALICE).status_code == 404


def test_store_outage_is_503(client, store):
    store.unavailable = True
    assert client.get("/bulk-video/anything", headers=ALICE).status_code == 503


# ── Import / status ──────────────────────────────────────────────────────────

def test_import_creates_batch_and_items(client, store):
    response = client.post("/bulk-video/import", headers=ALICE, json={
        "name": "Summer Sale",
        "csv_text": CSV,
        "default_formats": ["1080x1920", "1920X1080"],
    })

    assert response.status_code == 200
    body = response.json()
    assert body["item_count"] == 2
    assert body["warnings"] == ["Row 1: ignoring invalid format 'wide'"]
    assert body["batch"]["default_formats"] == ["1080x1920", "1920x1080"]

    items = sorted(store.items.values(), key=lambda i: i.row_index)
    assert [i.user_id for i in items] == ["user-alice", "user-alice"]
    assert items[0].custom_animation_provider == "runway"
    assert items[0].custom_formats == ["1080x1920"]
    assert items[1].product_image_url is None
    assert all(i.status == VideoStatus.PENDING for i in items)


@pytest.mark.parametrize("payload", [
    {"name": "x"},
    {"name": "x", "csv_text": "text_content,animation_provider\nAurora,sora\n"},
    {"name": "x", "csv_text": "title\nAurora\n"},
    {"name": "x", "csv_text": "text_content\nAurora\n", "default_formats": ["1081x1920"]},
    {"name": "x", "csv_text": "text_content\nAurora\n", "default_style_preset": "nope"},
])
def test_import_validation_errors_are_400(client, store, payload):
    response = client.post("/bulk-video/import", headers=ALICE, json=payload)
    assert response.status_code == 400
    assert store.batches == {}


def test_batch_status_counts(client, store, orchestrator):
    batch = seed_batch(store, ["Aurora", "BROKEN row", "Nimbus"])
    asyncio.run(orchestrator.run_batch(batch.id, render=False))

    body = client.get(f"/bulk-video/{batch.id}", headers=ALICE).json()

    assert body["total"] == 3
    assert body["completed"] == 2
    assert body["failed"] == 1
    assert [i["row_index"] for i in body["items"]] == [1, 2, 3]


def test_generate_starts_background_run(store, gateway):
    orchestrator = MagicMock()
    orchestrator.run_batch_background = AsyncMock()
    client = make_client(store, gateway, orchestrator)
    batch = seed_batch(store, ["Aurora", "Nimbus"])

    response = client.post(f"/bulk-video/{batch.id}/generate", headers=ALICE)

    assert response.status_code == 200
    assert response.json()["pending"] == 2
    orchestrator.run_batch_background.assert_awaited_once_with(batch.id)


def test_generate_counts_items_a_dead_run_left_generating(store, gateway):
    orchestrator = MagicMock()
    orchestrator.run_batch_background = AsyncMock()
    orchestrator.is_item_active.return_value = False
    client = make_client(store, gateway, orchestrator)
    batch = seed_batch(store, ["Aurora", "Nimbus", "Solace"])
    store.items["item-2"] = store.items["item-2"].model_copy(update={"status": VideoStatus.GENERATING})
    store.items["item-3"] = store.items["item-3"].model_copy(update={"status": VideoStatus.COMPLETED})

    response = client.post(f"/bulk-video/{batch.id}/generate", headers=ALICE)

    assert response.json()["pending"] == 2


# ── Repair ───────────────────────────────────────────────────────────────────

def test_regenerate_item_left_generating_by_dead_run(client, store):
    seed_batch(store, ["Aurora"])
    store.items["item-1"] = store.items["item-1"].model_copy(update={"status": VideoStatus.GENERATING})

    response = client.post("/bulk-video/items/item-1/regenerate", headers=ALICE)

    assert response.status_code == 200
    assert store.items["item-1"].status == VideoStatus.COMPLETED


def test_regenerate_item_being_worked_on_is_400(store, gateway):
    orchestrator = MagicMock()
    orchestrator.is_item_active.return_value = True
    client = make_client(store, gateway, orchestrator)
    seed_batch(store, ["Aurora"])

    response = client.post("/bulk-video/items/item-1/regenerate", headers=ALICE)

    assert response.status_code == 400
    orchestrator.regenerate_item.assert_not_called()


# ── Batch-wide repair ────────────────────────────────────────────────────────

def test_batch_regenerate_reruns_selected_items(client, store, orchestrator):
    batch = seed_batch(store, ["Aurora", "BROKEN row", "Solace"])
    asyncio.run(orchestrator.run_batch(batch.id, render=False))
    store.items["item-2"] = store.items["item-2"].model_copy(update={"text_content": "Nimbus sneakers"})

    response = client.post(f"/bulk-video/{batch.id}/regenerate", headers=ALICE, json={"item_ids": ["item-2"]})

    assert response.status_code == 200
    assert response.json()["started"] == ["item-2"]
    assert store.items["item-2"].status == VideoStatus.COMPLETED
    assert store.items["item-2"].error is None


def test_batch_regenerate_skips_items_being_worked_on(store, gateway):
    orchestrator = MagicMock()
    orchestrator.is_item_active.side_effect = lambda item_id: item_id == "item-1"
    orchestrator.regenerate_item = AsyncMock()
    client = make_client(store, gateway, orchestrator)
    batch = seed_batch(store, ["Aurora", "Nimbus"])

    body = client.post(
        f"/bulk-video/{batch.id}/regenerate", headers=ALICE, json={"item_ids": ["item-1", "item-2", "item-2"]},
    ).json()

    assert body["started"] == ["item-2"]
    assert body["skipped"] == ["item-1"]
    orchestrator.regenerate_item.assert_called_once_with("item-2")


@pytest.mark.parametrize("item_ids, headers, status", [
    ([], ALICE, 400),
    (["item-1", "item-99"], ALICE, 404),
    (["item-1"], BOB, 403),
])
def test_batch_regenerate_errors(client, store, item_ids, headers, status):
    batch = seed_batch(store, ["Aurora"])

    response = client.post(f"/bulk-video/{batch.id}/regenerate", headers=headers, json={"item_ids": item_ids})

    assert response.status_code == status
    assert store.items["item-1"].status == VideoStatus.PENDING


def test_batch_render_rerenders_completed_items_only(client, store, orchestrator, compositor):
    batch = seed_batch(store, ["Aurora", "BROKEN row", "Solace"])
    asyncio.run(orchestrator.run_batch(batch.id))
    rendered = len(compositor.rendered)

    response = client.post(f"/bulk-video/{batch.id}/render", headers=ALICE, json={})

    assert response.json()["item_ids"] == ["item-1", "item-3"]
    assert len(compositor.rendered) == rendered + 2


def test_batch_render_selected_items_missing_formats(client, store, orchestrator, compositor):
    batch = seed_batch(store, ["Aurora", "Nimbus"], default_formats=["1080x1920", "1920x1080"])
    asyncio.run(orchestrator.run_batch(batch.id))
    lost = next(o for o in store.outputs.values() if o.item_id == "item-2" and o.format == "1920x1080")
    del store.outputs[lost.id]
    compositor.rendered.clear()

    response = client.post(
        f"/bulk-video/{batch.id}/render", headers=ALICE, json={"item_ids": ["item-2"], "mode": "missing"},
    )

    assert response.json()["item_ids"] == ["item-2"]
    assert compositor.rendered == ["1920x1080"]


def test_render_status_counts_expected_formats(client, store, orchestrator):
    batch = seed_batch(store, ["Aurora", "Nimbus", "BROKEN row"], default_formats=["1080x1920", "1920x1080"])
    asyncio.run(orchestrator.run_batch(batch.id))
    outputs = {(o.item_id, o.format): o for o in store.outputs.values()}
    del store.outputs[outputs[("item-2", "1920x1080")].id]
    rendering = outputs[("item-2", "1080x1920")]
    store.outputs[rendering.id] = rendering.model_copy(update={"status": RenderStatus.RENDERING})

    body = client.get(f"/bulk-video/{batch.id}/render-status", headers=ALICE).json()

    assert body["is_rendering"] is True
    assert (body["total"], body["completed"], body["rendering"], body["pending"], body["failed"]) == (4, 2, 1, 1, 0)
    assert [row["item_id"] for row in body["items"]] == ["item-1", "item-2"]
    assert body["items"][1]["formats"] == {"1080x1920": "rendering", "1920x1080": "pending"}


def test_render_status_of_other_users_batch_is_403(client, store):
    batch = seed_batch(store, ["Aurora"])
    assert client.get(f"/bulk-video/{batch.id}/render-status", headers=BOB).status_code == 403


def test_regenerate_animation_with_unknown_provider_is_400(client, store, orchestrator, factory):
    batch = seed_batch(store, ["Aurora"])
    asyncio.run(orchestrator.run_batch(batch.id, render=False))
    scene = asyncio.run(store.list_scenes("item-1"))[0]
    calls = factory.total_calls

    response = client.post(f"/bulk-video/scenes/{scene.id}/regenerate-animation", headers=ALICE, json={"provider": "sora"})

    assert response.status_code == 400
    assert factory.total_calls == calls


@pytest.mark.parametrize("error, status", [
    (QuotaExceededError("Insufficient credits for runway", "runway", 402), 402),
    (RateLimitedError("Rate limit exceeded for runway", "runway", 429), 429),
    (RuntimeError("boom"), 500),
])
def test_provider_errors_map_to_statuses(store, gateway, error, status):
    orchestrator = MagicMock()
    orchestrator.regenerate_scene_animation = AsyncMock(side_effect=error)
    client = make_client(store, gateway, orchestrator)
    seed_batch(store, ["Aurora"])
    store.scenes["s1"] = Scene(id="s1", item_id="item-1", order=0)

    response = client.post("/bulk-video/scenes/s1/regenerate-animation", headers=ALICE, json={"provider": "runway"})

    assert response.status_code == status


def test_animation_history_endpoint(client, store, orchestrator):
    batch = seed_batch(store, ["Aurora"])
    asyncio.run(orchestrator.run_batch(batch.id, render=False))
    scene = asyncio.run(store.list_scenes("item-1"))[0]
    asyncio.run(orchestrator.regenerate_scene_animation(scene.id))

    body = client.get(f"/bulk-video/scenes/{scene.id}/animation-history", headers=ALICE).json()

    assert len(body["history"]) == 2
    assert body["current"]["video_ref"] == body["history"][0]["video_ref"]
    assert body["history"][0]["url"].startswith("https://signed.example/")


def test_render_single_format(client, store, orchestrator):
    batch = seed_batch(store, ["Aurora"], default_formats=["1080x1920", "1920x1080"])
    asyncio.run(orchestrator.run_batch(batch.id))

    response = client.post("/bulk-video/items/item-1/render", headers=ALICE, json={"format": "1920x1080"})

    assert response.status_code == 200
    assert [o["format"] for o in response.json()["outputs"]] == ["1920x1080"]

    outputs = client.get("/bulk-video/items/item-1/outputs", headers=ALICE).json()["outputs"]
    assert {o["format"] for o in outputs} == {"1080x1920", "1920x1080"}
    assert all(o["url"].startswith("https://signed.example/") for o in outputs)


# ── Download / storage ───────────────────────────────────────────────────────

def _finished_batch(store, orchestrator):
    batch = seed_batch(store, ["Aurora", "Nimbus", "Solace"])
    asyncio.run(orchestrator.run_batch(batch.id))
    assert all(o.status == RenderStatus.COMPLETED for o in store.outputs.values())
    return batch


def test_download_links(client, store, orchestrator):
    batch = _finished_batch(store, orchestrator)

    response = client.post(f"/bulk-video/{batch.id}/download", headers=ALICE, json={"mode": "links"})

    names = [f["name"] for f in response.json()["files"]]
    assert names == [f"summer-sale/video-00{i}-1080x1920.mp4" for i in (1, 2, 3)]


def test_download_zip_skips_missing_artifact(client, store, gateway, orchestrator):
    batch = _finished_batch(store, orchestrator)
    lost = next(o for o in store.outputs.values() if o.item_id == "item-2")
    gateway.missing = {lost.artifact_ref}

    response = client.post(f"/bulk-video/{batch.id}/download", headers=ALICE, json={"mode": "zip"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        assert archive.namelist() == [
            "summer-sale/video-001-1080x1920.mp4",
            "summer-sale/video-003-1080x1920.mp4",
        ]


def test_download_selected_outputs_only(client, store, orchestrator):
    batch = _finished_batch(store, orchestrator)
    chosen = next(o for o in store.outputs.values() if o.item_id == "item-3")

    response = client.post(
        f"/bulk-video/{batch.id}/download", headers=ALICE, json={"mode": "links", "output_ids": [chosen.id]},
    )

    assert [f["name"] for f in response.json()["files"]] == ["summer-sale/video-003-1080x1920.mp4"]


def test_download_with_nothing_finished_is_404(client, store):
    batch = seed_batch(store, ["Aurora"])
    assert client.post(f"/bulk-video/{batch.id}/download", headers=ALICE, json={}).status_code == 404


def test_refresh_url_for_own_artifact(client, store):
    seed_batch(store, ["Aurora"])

    response = client.post("/bulk-video/storage/refresh-url", headers=ALICE, json={
        "url": "https://signed.example/videos/renders/item-1/1080x1920-ab12.mp4?X-Amz-Signature=old",
    })

    assert response.status_code == 200
    assert response.json()["ref"] == "s3://videos/renders/item-1/1080x1920-ab12.mp4"
    assert "old" not in response.json()["url"]


def test_refresh_url_for_own_logo_and_shared_samples(client, store):
    batch = seed_batch(store, ["Aurora"])

    for url in (f"s3://images/logos/{batch.id}/logo.png", "s3://videos/samples/fallback-1.mp4"):
        assert client.post("/bulk-video/storage/refresh-url", headers=ALICE, json={"url": url}).status_code == 200


@pytest.mark.parametrize("url, status", [
    ("https://cdn.example.com/a.mp4", 400),
    ("s3://acme-cdn/renders/item-1/a.mp4", 400),
    ("s3://videos/renders/item-1/1080x1920-ab12.mp4", 403),
    ("s3://videos/exports/everything.zip", 403),
    ("s3://videos/renders/item-404/a.mp4", 404),
])
def test_refresh_url_rejects_foreign_or_unowned_refs(client, store, url, status):
    seed_batch(store, ["Aurora"], user_id="user-alice")

    response = client.post("/bulk-video/storage/refresh-url", headers=BOB, json={"url": url})

    assert response.status_code == status


def test_presets(client):
    body = client.get("/bulk-video/presets").json()

    assert "product" in body["style_presets"]
    assert {p["id"] for p in body["providers"]} == {"bytedance", "runway"}
    assert body["animation_templates"]
