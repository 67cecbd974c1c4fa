import asyncio

import pytest

from conftest import ScriptedTaskAdapter, make_node, png_data_uri, succeeded
from nodegen.core.catalog import KIE_VEO, REPLICATE
from nodegen.core.errors import NodeBusyError, NodeNotFoundError
from nodegen.core.poller import JobState, PollResult, TaskState
from nodegen.models.models import FrameRole, GenerationMode, NodeStatus, NodeType


async def wait_for_polls(adapter, count):
    while adapter.polls < count:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_text_to_image_success(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, responses=[PollResult(TaskState.PENDING), succeeded()])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="a lighthouse at dusk"))

    node = await dispatcher.generate("img")

    assert node.status == NodeStatus.SUCCESS
    assert node.result_url == "https://cdn.example.com/out.png"
    assert node.model_id == "nano-banana"
    assert node.provider_task_id == "t1"
    assert node.error_message is None
    assert adapter.requests[0].mode == GenerationMode.TEXT_ONLY
    assert adapter.requests[0].prompt == "a lighthouse at dusk"
    record = dispatcher.tracker.get("img")
    assert record["status"] == "success"
    assert record["result_url"] == node.result_url
    assert dispatcher.active_job("img") is None


@pytest.mark.asyncio
async def test_prompt_from_text_parent(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, responses=[succeeded()])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("t", NodeType.TEXT, status=NodeStatus.IDLE, prompt="a foggy harbour"))
    graph.add(make_node("img", status=NodeStatus.IDLE, parent_ids=["t"]))

    await dispatcher.generate("img")

    assert adapter.requests[0].prompt == "a foggy harbour"


@pytest.mark.asyncio
async def test_missing_prompt_fails_the_node(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE))

    node = await dispatcher.generate("img")

    assert node.status == NodeStatus.ERROR
    assert "prompt is required" in node.error_message
    assert adapter.requests == []


@pytest.mark.asyncio
async def test_busy_node_rejects_second_generate(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))

    task = dispatcher.start("img")
    await wait_for_polls(adapter, 1)

    with pytest.raises(NodeBusyError):
        dispatcher.start("img")

    assert dispatcher.cancel("img")
    await task
    assert len(adapter.requests) == 1


@pytest.mark.asyncio
async def test_supersede_discards_old_result(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter}, busy_policy="supersede")
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))

    first = dispatcher.start("img")
    await wait_for_polls(adapter, 1)
    first_job = dispatcher.active_job("img")

    adapter.default = succeeded("https://cdn.example.com/second.png")
    second = dispatcher.start("img")
    old, node = await asyncio.gather(first, second)

    assert old is None
    assert first_job.state == JobState.CANCELLED
    assert node.status == NodeStatus.SUCCESS
    assert graph.get("img").result_url == "https://cdn.example.com/second.png"


@pytest.mark.asyncio
async def test_cancel_mid_poll_leaves_node_idle(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))

    task = dispatcher.start("img")
    await wait_for_polls(adapter, 2)
    job = dispatcher.active_job("img")
    polls_at_cancel = adapter.polls

    assert dispatcher.cancel("img")
    await task

    node = graph.get("img")
    assert job.state == JobState.CANCELLED
    assert node.status == NodeStatus.IDLE
    assert node.result_url is None
    assert adapter.polls == polls_at_cancel
    assert dispatcher.tracker.get("img")["status"] == "cancelled"
    assert dispatcher.cancel("img") is False


@pytest.mark.asyncio
async def test_provider_failure_stays_on_the_node(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, responses=[PollResult(TaskState.FAILED, failure_reason="NSFW")])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))
    graph.add(make_node("child", NodeType.IMAGE_EDITOR, status=NodeStatus.IDLE, parent_ids=["img"]))

    node = await dispatcher.generate("img")

    assert node.status == NodeStatus.ERROR
    assert "NSFW" in node.error_message
    assert graph.get("child").status == NodeStatus.IDLE
    assert dispatcher.tracker.get("img")["status"] == "error"


@pytest.mark.asyncio
async def test_invalid_inputs_fail_the_node(graph, make_dispatcher, fast_poller):
    dispatcher = make_dispatcher({REPLICATE: ScriptedTaskAdapter(fast_poller)})
    graph.add(make_node("m1", NodeType.VIDEO))
    graph.add(make_node("m2", NodeType.VIDEO))
    graph.add(make_node("v", NodeType.VIDEO, status=NodeStatus.IDLE, prompt="x", parent_ids=["m1", "m2"]))

    node = await dispatcher.generate("v")

    assert node.status == NodeStatus.ERROR
    assert "at most one video" in node.error_message


@pytest.mark.asyncio
async def test_frame_to_frame_follows_swapped_roles(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, name=KIE_VEO, responses=[succeeded("https://cdn.example.com/v.mp4")])
    dispatcher = make_dispatcher({KIE_VEO: adapter})
    graph.add(make_node("a"))
    graph.add(make_node("b"))
    graph.add(make_node("v", NodeType.VIDEO, status=NodeStatus.IDLE, prompt="morph", parent_ids=["a", "b"]))
    graph.update_node("v", frame_inputs={"a": FrameRole.END, "b": FrameRole.START})

    node = await dispatcher.generate("v")

    request = adapter.requests[0]
    assert request.mode == GenerationMode.FRAME_TO_FRAME
    assert [image.parent_id for image in request.images] == ["b", "a"]
    assert node.model_id == "kie-veo3-fast"
    assert node.aspect_ratio == "16:9"
    assert node.video_duration == 8


@pytest.mark.asyncio
async def test_extend_passes_source_task(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, name=KIE_VEO, responses=[succeeded("https://cdn.example.com/v2.mp4")])
    dispatcher = make_dispatcher({KIE_VEO: adapter})
    graph.add(make_node("src", NodeType.VIDEO, provider_task_id="veo-123"))
    graph.add(make_node("v", NodeType.VIDEO, status=NodeStatus.IDLE, prompt="keep going", parent_ids=["src"]))

    await dispatcher.generate("v")

    request = adapter.requests[0]
    assert request.mode == GenerationMode.EXTEND
    assert request.source_task_id == "veo-123"
    assert request.model.id == "kie-veo3-extend"


@pytest.mark.asyncio
async def test_binary_parent_is_loaded_and_sets_auto_aspect(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, responses=[succeeded()])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("p", result_url=png_data_uri(320, 180)))
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="restyle", parent_ids=["p"]))

    await dispatcher.generate("img")

    image = adapter.requests[0].images[0]
    assert image.url is None
    assert image.data.startswith(b"\x89PNG")
    assert image.mime_type == "image/png"
    assert adapter.requests[0].aspect_ratio == "16:9"


@pytest.mark.asyncio
async def test_variations_fill_result_urls(graph, make_dispatcher, fast_poller):
    urls = [f"https://cdn.example.com/v{i}.png" for i in range(4)]
    adapter = ScriptedTaskAdapter(fast_poller, responses=[PollResult(TaskState.SUCCEEDED, urls, raw_state="succeeded")])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="kites", model_id="flux-schnell", variation_count=4))

    node = await dispatcher.generate("img")

    assert adapter.requests[0].variation_count == 4
    assert node.result_urls == urls
    assert node.face_url() == urls[0]


@pytest.mark.asyncio
async def test_variation_count_reset_for_single_image_model(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller, responses=[succeeded()])
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="kites", model_id="nano-banana", variation_count=2))

    node = await dispatcher.generate("img")

    assert adapter.requests[0].variation_count == 1
    assert node.variation_count == 1


@pytest.mark.asyncio
async def test_unconfigured_model_is_rejected(graph, make_dispatcher, fast_poller):
    dispatcher = make_dispatcher({REPLICATE: ScriptedTaskAdapter(fast_poller)})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x", model_id="grok-imagine-text-to-image"))

    node = await dispatcher.generate("img")

    assert node.status == NodeStatus.ERROR
    assert "not configured" in node.error_message


@pytest.mark.asyncio
async def test_preview_does_not_change_the_node(graph, make_dispatcher, fast_poller):
    dispatcher = make_dispatcher({REPLICATE: ScriptedTaskAdapter(fast_poller)})
    graph.add(make_node("a"))
    graph.add(make_node("b"))
    graph.add(make_node("img", status=NodeStatus.IDLE, model_id="flux-1.1-pro", parent_ids=["a", "b"]))
    before = graph.get("img")

    resolution, model, changed, available = dispatcher.preview("img")

    assert resolution.mode == GenerationMode.MULTI_REFERENCE
    assert model.id == "nano-banana"
    assert changed
    assert graph.get("img") == before


@pytest.mark.asyncio
async def test_node_removed_mid_generation(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))

    task = dispatcher.start("img")
    await wait_for_polls(adapter, 1)
    graph.remove("img")
    adapter.default = succeeded()

    assert await task is None
    with pytest.raises(NodeNotFoundError):
        dispatcher.cancel("img")


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(graph, make_dispatcher, fast_poller):
    adapter = ScriptedTaskAdapter(fast_poller)
    dispatcher = make_dispatcher({REPLICATE: adapter})
    graph.add(make_node("img", status=NodeStatus.IDLE, prompt="x"))

    task = dispatcher.start("img")
    await wait_for_polls(adapter, 1)
    await dispatcher.shutdown()

    assert task.done()
    assert graph.get("img").status == NodeStatus.IDLE
