import json

import httpx
import pytest

from conftest import png_bytes
from nodegen.core.catalog import ModelCatalog
from nodegen.core.errors import MalformedResponseError, ProviderError, UploadError, ValidationError
from nodegen.core.media import MediaPreprocessor
from nodegen.core.poller import AsyncJobPoller, GenerationJob, JobState
from nodegen.models.models import GenerationMode, MediaKind
from nodegen.providers.base import GenerationRequest, MediaInput
from nodegen.providers.kie import KieClient, KieMarketAdapter, KieVeoAdapter

UPLOAD_URL = "https://upload.example.com/api/file-base64-upload"


class KieServer:
    """Routes requests by path to queued JSON responses and records them."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, path, *responses):
        self.routes.setdefault(path, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"code": 404, "msg": "no route"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def bodies(self, path):
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


@pytest.fixture
def server():
    return KieServer()


@pytest.fixture
def client(server):
    return KieClient("test-key", base_url="https://api.kie.test", upload_url=UPLOAD_URL, transport=httpx.MockTransport(server))


def request_for(model_id, mode, **fields):
    return GenerationRequest(node_id="n1", model=ModelCatalog().get(model_id), mode=mode, **fields)


def new_job():
    return GenerationJob("n1", provider="kie", model_id="")


@pytest.mark.asyncio
async def test_market_task_runs_to_success(server, client):
    server.on("/api/v1/jobs/createTask", {"code": 200, "data": {"taskId": "k1"}})
    server.on(
        "/api/v1/jobs/recordInfo",
        {"code": 200, "data": {"state": "generating"}},
        {
            "code": 200,
            "data": {
                "state": "success",
                "resultJson": json.dumps({"resultUrls": ["https://cdn.example.com/a.png", "https://cdn.example.com/b.png"]}),
            },
        },
    )
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))
    job = new_job()
    request = request_for("grok-imagine-text-to-image", GenerationMode.TEXT_ONLY, prompt="a red fox", aspect_ratio="16:9")

    outcome = await adapter.generate(request, job)

    assert outcome.result_url == "https://cdn.example.com/a.png"
    assert outcome.result_urls == ["https://cdn.example.com/a.png", "https://cdn.example.com/b.png"]
    assert outcome.task_id == "k1"
    assert job.state == JobState.SUCCEEDED
    assert server.bodies("/api/v1/jobs/createTask") == [
        {"model": "grok-imagine/text-to-image", "input": {"prompt": "a red fox", "aspect_ratio": "16:9"}}
    ]
    assert server.requests[0].headers["Authorization"] == "Bearer test-key"
    assert server.requests[-1].url.params["taskId"] == "k1"


@pytest.mark.asyncio
async def test_binary_input_is_uploaded_before_create(server, client):
    server.on(UPLOAD_URL.replace("https://upload.example.com", ""), {"code": 200, "data": {"downloadUrl": "https://files.example.com/in.png"}})
    server.on("/api/v1/jobs/createTask", {"code": 200, "data": {"taskId": "k2"}})
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))
    image = MediaInput(MediaKind.IMAGE, data=png_bytes(), mime_type="image/png", parent_id="p1")
    request = request_for("grok-imagine-image-to-image", GenerationMode.SINGLE_REFERENCE, images=[image])

    task_id = await adapter.create_task(request, new_job())

    assert task_id == "k2"
    upload = json.loads(server.requests[0].content)
    assert upload["base64Data"].startswith("data:image/png;base64,")
    assert upload["fileName"].endswith(".png")
    assert server.bodies("/api/v1/jobs/createTask")[0]["input"] == {"image_urls": ["https://files.example.com/in.png"]}
    assert image.url == "https://files.example.com/in.png"


@pytest.mark.asyncio
async def test_remote_inputs_are_not_uploaded(server, client):
    server.on("/api/v1/jobs/createTask", {"code": 200, "data": {"taskId": "k3"}})
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))
    request = request_for(
        "kie-kling-2.6-motion-control",
        GenerationMode.MOTION_CONTROL,
        images=[MediaInput(MediaKind.IMAGE, url="https://cdn.example.com/char.png")],
        video=MediaInput(MediaKind.VIDEO, url="https://cdn.example.com/dance.mp4"),
        resolution="1080p",
    )

    await adapter.create_task(request, new_job())

    assert len(server.requests) == 1
    body = server.bodies("/api/v1/jobs/createTask")[0]
    assert body["model"] == "kling-2.6/motion-control"
    assert body["input"]["input_urls"] == ["https://cdn.example.com/char.png"]
    assert body["input"]["video_urls"] == ["https://cdn.example.com/dance.mp4"]
    assert body["input"]["mode"] == "1080p"


@pytest.mark.asyncio
async def test_failed_task_reports_fail_message(server, client):
    server.on("/api/v1/jobs/createTask", {"code": 200, "data": {"taskId": "k4"}})
    server.on("/api/v1/jobs/recordInfo", {"code": 200, "data": {"state": "fail", "failMsg": "prompt rejected"}})
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))
    job = new_job()

    with pytest.raises(ProviderError) as exc:
        await adapter.generate(request_for("grok-imagine-text-to-image", GenerationMode.TEXT_ONLY, prompt="x"), job)

    assert "prompt rejected" in str(exc.value)
    assert job.state == JobState.FAILED


@pytest.mark.asyncio
async def test_http_error_carries_status_and_request_id(server, client):
    server.on(
        "/api/v1/jobs/createTask",
        httpx.Response(500, text="upstream exploded", headers={"x-request-id": "req-42"}),
    )
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))

    with pytest.raises(ProviderError) as exc:
        await adapter.create_task(request_for("grok-imagine-text-to-image", GenerationMode.TEXT_ONLY, prompt="x"), new_job())

    assert exc.value.status_code == 500
    assert exc.value.request_id == "req-42"
    assert "req-42" in str(exc.value)


@pytest.mark.asyncio
async def test_body_error_code_is_a_provider_error(server, client):
    server.on("/api/v1/jobs/createTask", {"code": 402, "msg": "Insufficient credits"})
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))

    with pytest.raises(ProviderError) as exc:
        await adapter.create_task(request_for("grok-imagine-text-to-image", GenerationMode.TEXT_ONLY, prompt="x"), new_job())
    assert "Insufficient credits" in str(exc.value)


@pytest.mark.asyncio
async def test_non_json_and_missing_task_id_are_malformed(server, client):
    adapter = KieMarketAdapter(client, AsyncJobPoller(interval=0))
    request = request_for("grok-imagine-text-to-image", GenerationMode.TEXT_ONLY, prompt="x")

    server.on("/api/v1/jobs/createTask", httpx.Response(200, text="<html>maintenance</html>"))
    with pytest.raises(MalformedResponseError):
        await adapter.create_task(request, new_job())

    server.routes["/api/v1/jobs/createTask"] = [{"code": 200, "data": {}}]
    with pytest.raises(MalformedResponseError):
        await adapter.create_task(request, new_job())


@pytest.mark.asyncio
async def test_upload_failure_is_an_upload_error(server, client):
    server.on(UPLOAD_URL.replace("https://upload.example.com", ""), httpx.Response(413, text="too large"))
    with pytest.raises(UploadError):
        await client.upload(b"123", "image/png")


@pytest.mark.asyncio
async def test_veo_frame_to_frame_fits_binary_frames(server, client):
    server.on(UPLOAD_URL.replace("https://upload.example.com", ""), {"code": 200, "data": {"downloadUrl": "https://files.example.com/end.jpg"}})
    server.on("/api/v1/veo/generate", {"code": 200, "data": {"taskId": "veo-1"}})
    server.on(
        "/api/v1/veo/record-info",
        {"code": 200, "data": {"successFlag": 0}},
        {"code": 200, "data": {"successFlag": 1, "response": {"resultUrls": ["https://cdn.example.com/veo.mp4"]}}},
    )
    media = MediaPreprocessor()
    adapter = KieVeoAdapter(client, AsyncJobPoller(interval=0), media)
    end_frame = MediaInput(MediaKind.IMAGE, data=png_bytes(500, 500), mime_type="image/png")
    request = request_for(
        "kie-veo3-fast",
        GenerationMode.FRAME_TO_FRAME,
        prompt="morph",
        images=[MediaInput(MediaKind.IMAGE, url="https://cdn.example.com/start.png"), end_frame],
        aspect_ratio="16:9",
        resolution="720p",
    )

    outcome = await adapter.generate(request, new_job())

    assert outcome.result_url == "https://cdn.example.com/veo.mp4"
    body = server.bodies("/api/v1/veo/generate")[0]
    assert body["generationType"] == "FIRST_AND_LAST_FRAMES_2_VIDEO"
    assert body["imageUrls"] == ["https://cdn.example.com/start.png", "https://files.example.com/end.jpg"]
    assert body["model"] == "veo3_fast"
    assert end_frame.mime_type == "image/jpeg"
    assert media.dimensions(end_frame.data) == (1280, 720)
    media.shutdown()


@pytest.mark.asyncio
async def test_veo_extend_uses_source_task(server, client):
    server.on("/api/v1/veo/extend", {"code": 200, "data": {"taskId": "veo-2"}})
    adapter = KieVeoAdapter(client, AsyncJobPoller(interval=0), MediaPreprocessor())
    request = request_for("kie-veo3-extend", GenerationMode.EXTEND, prompt="keep going", source_task_id="veo-1")

    assert await adapter.create_task(request, new_job()) == "veo-2"
    assert server.bodies("/api/v1/veo/extend") == [{"taskId": "veo-1", "prompt": "keep going", "model": "fast"}]

    with pytest.raises(ValidationError):
        await adapter.create_task(request_for("kie-veo3-extend", GenerationMode.EXTEND, prompt="x"), new_job())


@pytest.mark.asyncio
async def test_veo_failure_flag(server, client):
    server.on("/api/v1/veo/generate", {"code": 200, "data": {"taskId": "veo-3"}})
    server.on("/api/v1/veo/record-info", {"code": 200, "data": {"successFlag": 2, "errorMessage": "unsafe image"}})
    adapter = KieVeoAdapter(client, AsyncJobPoller(interval=0), MediaPreprocessor())

    with pytest.raises(ProviderError) as exc:
        await adapter.generate(request_for("kie-veo3", GenerationMode.TEXT_ONLY, prompt="x", aspect_ratio="16:9"), new_job())
    assert "unsafe image" in str(exc.value)
