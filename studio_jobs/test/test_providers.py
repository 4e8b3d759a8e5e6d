import base64
import json

import httpx
import pytest

from studio_jobs.domain.enums import JobKind, ProviderState
from studio_jobs.domain.errors import ProviderRejected, ValidationError
from studio_jobs.services.providers.a2e import A2EClient
from studio_jobs.services.providers.base import first_non_empty
from studio_jobs.services.providers.fal_images import FalImageClient
from studio_jobs.services.providers.heygen import HeyGenVideoClient
from studio_jobs.services.providers.openai_images import OpenAIImageClient
from studio_jobs.services.providers.registry import ProviderRegistry

from conftest import PNG_BYTES, FakeProvider

A2E_BASE = "https://a2e.example.com/api/v1"


async def no_sleep(_):
    return None


def by_route(routes):
    """MockTransport keyed by (method, path); records request bodies."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        body = json.loads(request.content) if request.content and request.headers.get("content-type", "").startswith("application/json") else None
        calls.append((key, body, request))
        if key not in routes:
            return httpx.Response(404, json={"message": "not found"})
        return routes[key](request)

    return httpx.MockTransport(handler), calls


def reply(payload, status_code=200):
    return lambda request: httpx.Response(status_code, json=payload)


# -----------------------------
# Result field priority
# -----------------------------
def test_first_non_empty_respects_priority_order():
    payload = {"result": "r", "url": "", "video_url": "https://cdn/v.mp4"}
    assert first_non_empty(payload, ("url", "video_url", "result")) == "https://cdn/v.mp4"
    assert first_non_empty({"images": [{"url": "https://cdn/i.png"}]}, ("images.0.url", "url")) == "https://cdn/i.png"
    assert first_non_empty({}, ("url",)) is None


# -----------------------------
# OpenAI
# -----------------------------
@pytest.mark.asyncio
async def test_openai_inline_image_is_final_on_submit():
    b64 = base64.b64encode(PNG_BYTES).decode()
    transport, calls = by_route({("POST", "/v1/images/generations"): reply({"data": [{"b64_json": b64, "url": "https://cdn/x.png"}]})})
    client = OpenAIImageClient(api_key="sk-test", base_url="https://openai.example.com/v1", transport=transport, sleep=no_sleep)

    handle = await client.submit(JobKind.image, {"prompt": "a red fox", "aspect_ratio": "16:9"})
    status = await client.poll(handle)

    assert status.state == ProviderState.succeeded
    assert status.payload == PNG_BYTES
    assert status.result_url is None
    assert calls[0][1]["size"] == "1792x1024"


# -----------------------------
# fal
# -----------------------------
@pytest.mark.asyncio
async def test_fal_queue_status_then_result():
    transport, _ = by_route(
        {
            ("POST", "/fal-ai/flux/dev"): reply(
                {
                    "request_id": "req-1",
                    "status_url": "https://queue.example.com/fal-ai/flux/dev/requests/req-1/status",
                    "response_url": "https://queue.example.com/fal-ai/flux/dev/requests/req-1",
                }
            ),
            ("GET", "/fal-ai/flux/dev/requests/req-1/status"): reply({"status": "COMPLETED"}),
            ("GET", "/fal-ai/flux/dev/requests/req-1"): reply({"images": [{"url": "https://cdn/fox.png"}], "seed": 7}),
        }
    )
    client = FalImageClient(api_key="k", base_url="https://queue.example.com", transport=transport, sleep=no_sleep)

    handle = await client.submit(JobKind.image, {"prompt": "a red fox", "aspect_ratio": "1:1"})
    status = await client.poll(handle)

    assert handle.task_id == "req-1"
    assert status.state == ProviderState.succeeded
    assert status.result_url == "https://cdn/fox.png"


@pytest.mark.asyncio
async def test_fal_status_unavailable_falls_back_to_result_shape():
    """405 on the status link means: ask the result endpoint instead"""
    transport, calls = by_route(
        {
            ("POST", "/fal-ai/flux/dev"): reply({"request_id": "req-2"}),
            ("GET", "/fal-ai/flux/dev/requests/req-2/status"): reply({"detail": "method"}, 405),
            ("GET", "/fal-ai/flux/dev/requests/req-2"): reply({"status": "IN_PROGRESS"}, 202),
        }
    )
    client = FalImageClient(api_key="k", base_url="https://queue.example.com", transport=transport, sleep=no_sleep)

    handle = await client.submit(JobKind.image, {"prompt": "fox"})
    status = await client.poll(handle)

    assert status.state == ProviderState.pending
    assert [c[0][1] for c in calls][-2:] == ["/fal-ai/flux/dev/requests/req-2/status", "/fal-ai/flux/dev/requests/req-2"]


# -----------------------------
# A2E
# -----------------------------
def a2e_client(transport):
    return A2EClient(api_key="a2e-key", base_urls=[A2E_BASE], transport=transport, sleep=no_sleep)


@pytest.mark.asyncio
async def test_a2e_nonzero_code_is_a_rejection():
    transport, _ = by_route({("POST", "/api/v1/userNanoBanana/start"): reply({"code": 1001, "msg": "insufficient credits"})})

    with pytest.raises(ProviderRejected, match="insufficient credits"):
        await a2e_client(transport).submit(JobKind.image, {"prompt": "fox"})


@pytest.mark.asyncio
async def test_a2e_primary_error_uses_batch_result_shape():
    """Direct status erroring does not fail the poll while awsResult answers"""
    transport, _ = by_route(
        {
            ("POST", "/api/v1/userNanoBanana/start"): reply({"code": 0, "data": {"_id": "img-1"}}),
            ("GET", "/api/v1/userNanoBanana/img-1"): reply({"message": "internal"}, 500),
            ("POST", "/api/v1/video/awsResult"): reply(
                {"code": 0, "data": [{"_id": "img-1", "status": "completed", "image_urls": ["https://cdn/a.png"]}]}
            ),
        }
    )
    client = a2e_client(transport)

    handle = await client.submit(JobKind.image, {"prompt": "fox"})
    status = await client.poll(handle)

    assert status.state == ProviderState.succeeded
    assert status.result_url == "https://cdn/a.png"


@pytest.mark.parametrize(
    "broken",
    [
        lambda r: httpx.Response(200, content=b'{"code":0,"data":"\xc3\x28"}', headers={"content-type": "application/json"}),
        lambda r: httpx.Response(200, content=b"not-gzip", headers={"content-encoding": "gzip"}),
    ],
    ids=["non_utf8_body", "corrupt_gzip"],
)
@pytest.mark.asyncio
async def test_a2e_undecodable_primary_uses_batch_result_shape(broken):
    transport, _ = by_route(
        {
            ("POST", "/api/v1/userNanoBanana/start"): reply({"code": 0, "data": {"_id": "img-9"}}),
            ("GET", "/api/v1/userNanoBanana/img-9"): broken,
            ("POST", "/api/v1/video/awsResult"): reply(
                {"code": 0, "data": [{"_id": "img-9", "status": "completed", "image_urls": ["https://cdn/b.png"]}]}
            ),
        }
    )
    client = a2e_client(transport)

    status = await client.poll(await client.submit(JobKind.image, {"prompt": "fox"}))

    assert status.state == ProviderState.succeeded
    assert status.result_url == "https://cdn/b.png"


@pytest.mark.asyncio
async def test_a2e_empty_status_is_pending():
    transport, _ = by_route(
        {
            ("POST", "/api/v1/userNanoBanana/start"): reply({"code": 0, "data": {"_id": "img-2"}}),
            ("GET", "/api/v1/userNanoBanana/img-2"): lambda r: httpx.Response(200, text=""),
        }
    )
    client = a2e_client(transport)

    status = await client.poll(await client.submit(JobKind.image, {"prompt": "fox"}))

    assert status.state == ProviderState.pending


@pytest.mark.asyncio
async def test_a2e_avatar_training_resolves_anchor():
    state = {"polls": 0}

    def twin_status(request):
        state["polls"] += 1
        if state["polls"] == 1:
            return httpx.Response(200, json={"code": 0, "data": {"current_status": "training"}})
        return httpx.Response(200, json={"code": 0, "data": {"current_status": "completed", "user_video_twin_id": "twin-9"}})

    transport, calls = by_route(
        {
            ("POST", "/api/v1/userVideoTwin/startTraining"): reply({"code": 0, "data": {"_id": "train-1"}}),
            ("GET", "/api/v1/userVideoTwin/train-1"): twin_status,
            ("GET", "/api/v1/anchor/character_list"): reply(
                {
                    "code": 0,
                    "data": [
                        {"_id": "anchor-x", "user_video_twin_id": "other"},
                        {"_id": "anchor-9", "user_video_twin_id": "twin-9"},
                    ],
                }
            ),
        }
    )
    client = a2e_client(transport)

    handle = await client.submit(
        JobKind.avatar, {"name": "Asha", "source_image_url": "https://cdn/face.png", "gender": "female"}
    )
    first = await client.poll(handle)
    final = await client.poll(handle)

    assert first.state == ProviderState.pending
    assert first.progress == 80
    assert final.state == ProviderState.succeeded
    assert final.result_url == "https://cdn/face.png"
    assert final.metadata == {"anchor_id": "anchor-9", "user_video_twin_id": "twin-9", "training_task_id": "train-1"}
    start_body = calls[0][1]
    assert start_body["image_url"] == "https://cdn/face.png"
    assert start_body["model_version"] == "V2.1"


@pytest.mark.asyncio
async def test_a2e_avatar_without_anchor_fails():
    transport, _ = by_route(
        {
            ("POST", "/api/v1/userVideoTwin/startTraining"): reply({"code": 0, "data": {"_id": "train-2"}}),
            ("GET", "/api/v1/userVideoTwin/train-2"): reply({"code": 0, "data": {"current_status": "completed"}}),
            ("GET", "/api/v1/anchor/character_list"): reply({"code": 0, "data": []}),
        }
    )
    client = a2e_client(transport)

    status = await client.poll(await client.submit(JobKind.avatar, {"name": "A", "source_image_url": "https://cdn/f.png"}))

    assert status.state == ProviderState.failed
    assert "anchor" in status.error_detail


@pytest.mark.asyncio
async def test_a2e_video_runs_tts_before_generate():
    transport, calls = by_route(
        {
            ("POST", "/api/v1/video/send_tts"): reply({"code": 0, "data": {"audioSrc": "https://cdn/tts.mp3"}}),
            ("POST", "/api/v1/video/generate"): reply({"code": 0, "data": {"_id": "vid-1"}}),
            ("GET", "/api/v1/video/status/vid-1"): reply(
                {"code": 0, "data": {"status": "failed", "failed_message": "quota exceeded"}}
            ),
        }
    )
    client = a2e_client(transport)

    handle = await client.submit(
        JobKind.video, {"avatar_id": "anchor-9", "script": "Hello there", "voice_id": "v-1", "aspect_ratio": "9:16"}
    )
    status = await client.poll(handle)

    tts_body = calls[0][1]
    gen_body = calls[1][1]
    assert tts_body["msg"] == "Hello there"
    assert tts_body["tts_id"] == "v-1"
    assert gen_body["audioSrc"] == "https://cdn/tts.mp3"
    assert gen_body["anchor_id"] == "anchor-9"
    assert status.state == ProviderState.failed
    assert status.error_detail == "quota exceeded"


def test_a2e_video_needs_an_anchor():
    client = A2EClient(api_key="k", base_urls=[A2E_BASE])
    assert client.accepts(JobKind.video, {"avatar_id": "anchor-1", "script": "hi"})
    assert not client.accepts(JobKind.video, {"source_image_url": "https://cdn/f.png", "script": "hi"})


# -----------------------------
# HeyGen
# -----------------------------
@pytest.mark.asyncio
async def test_heygen_uploads_photo_then_polls_list_when_status_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        host, path = request.url.host, request.url.path
        if host == "cdn.example.com":
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})
        if host == "upload.example.com" and path == "/v1/talking_photo":
            assert request.headers["content-type"] == "image/png"
            return httpx.Response(200, json={"code": 100, "data": {"talking_photo_id": "tp-1"}})
        if path == "/v2/video/av4/generate":
            body = json.loads(request.content)
            assert body["image_key"] == "tp-1"
            assert body["audio_url"] == "https://cdn.example.com/voice.mp3"
            assert body["dimension"] == {"width": 576, "height": 1024}
            return httpx.Response(200, json={"data": {"video_id": "hv-1"}})
        if path == "/v1/video_status.get":
            return httpx.Response(404, text="gone")
        if path == "/v1/video.list":
            return httpx.Response(
                200,
                json={"data": {"videos": [{"video_id": "hv-1", "status": "completed", "video_url": "https://cdn/v.mp4"}]}},
            )
        return httpx.Response(404)

    client = HeyGenVideoClient(
        api_key="hg",
        base_url="https://api.example.com",
        upload_base_url="https://upload.example.com",
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )
    params = {
        "source_image_url": "https://cdn.example.com/face.png",
        "audio_url": "https://cdn.example.com/voice.mp3",
        "aspect_ratio": "9:16",
    }

    handle = await client.submit(JobKind.video, params)
    status = await client.poll(handle)

    assert handle.task_id == "hv-1"
    assert status.state == ProviderState.succeeded
    assert status.result_url == "https://cdn/v.mp4"


def test_heygen_script_needs_a_voice():
    client = HeyGenVideoClient(api_key="hg", default_voice_id="")
    assert not client.accepts(JobKind.video, {"source_image_url": "https://cdn/f.png", "script": "hi"})
    assert client.accepts(JobKind.video, {"source_image_url": "https://cdn/f.png", "script": "hi", "voice_id": "v"})


# -----------------------------
# Registry
# -----------------------------
def test_default_selection_takes_first_configured_in_priority_order():
    openai = FakeProvider("openai", configured=False)
    fal = FakeProvider("fal")
    a2e = FakeProvider("a2e")
    registry = ProviderRegistry([openai, fal, a2e], priority={JobKind.image: ("openai", "fal", "a2e")})

    assert registry.select(JobKind.image, {"prompt": "fox"}).name == "fal"


def test_explicit_provider_must_be_configured_and_capable():
    fal = FakeProvider("fal", configured=False)
    heygen = FakeProvider("heygen", kinds=(JobKind.video,))
    registry = ProviderRegistry([fal, heygen], priority={JobKind.image: ("fal",)})

    with pytest.raises(ValidationError, match="not configured"):
        registry.select(JobKind.image, {"prompt": "fox", "provider": "fal"})
    with pytest.raises(ValidationError, match="does not support"):
        registry.select(JobKind.image, {"prompt": "fox", "provider": "heygen"})
    with pytest.raises(ValidationError, match="unknown provider"):
        registry.select(JobKind.image, {"prompt": "fox", "provider": "midjourney"})


def test_no_configured_provider_is_a_validation_error():
    registry = ProviderRegistry([FakeProvider("fal", configured=False)], priority={JobKind.image: ("fal",)})
    with pytest.raises(ValidationError):
        registry.select(JobKind.image, {"prompt": "fox"})


def test_describe_lists_configured_providers_and_sizes():
    registry = ProviderRegistry(
        [FakeProvider("a2e", kinds=(JobKind.image, JobKind.avatar, JobKind.video))],
        priority={JobKind.image: ("a2e",), JobKind.avatar: ("a2e",), JobKind.video: ("a2e",)},
    )
    info = registry.describe()
    assert info["providers"]["avatar"] == ["a2e"]
    assert info["aspect_ratios"]["16:9"] == {"width": 1024, "height": 576}
