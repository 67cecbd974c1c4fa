import base64
from io import BytesIO

import pytest
from PIL import Image

from nodegen.core.catalog import ModelCatalog
from nodegen.core.dispatcher import GenerationDispatcher
from nodegen.core.graph import NodeGraph
from nodegen.core.media import MediaPreprocessor
from nodegen.core.poller import AsyncJobPoller, PollResult, TaskState
from nodegen.models.models import Node, NodeStatus, NodeType
from nodegen.providers.base import TaskProviderAdapter


def png_bytes(width=64, height=64, color=(200, 30, 30)):
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri(width=64, height=64):
    return "data:image/png;base64," + base64.b64encode(png_bytes(width, height)).decode("ascii")


def make_node(node_id, node_type=NodeType.IMAGE, status=NodeStatus.SUCCESS, result_url=None, **fields):
    if result_url is None and status == NodeStatus.SUCCESS and node_type not in (NodeType.TEXT, NodeType.STYLE):
        suffix = "mp4" if node_type == NodeType.VIDEO else "png"
        result_url = f"https://cdn.example.com/{node_id}.{suffix}"
    return Node(id=node_id, type=node_type, status=status, result_url=result_url, **fields)


class ScriptedTaskAdapter(TaskProviderAdapter):
    """create_task returns a fixed id; poll replays scripted results, then `default`."""

    def __init__(self, poller, name="replicate", responses=None, task_id="t1"):
        super().__init__(poller)
        self.name = name
        self.task_id = task_id
        self.responses = list(responses or [])
        self.default = PollResult(TaskState.PENDING, raw_state="processing")
        self.requests = []
        self.polls = 0

    async def create_task(self, request, job):
        self.requests.append(request)
        return self.task_id

    async def poll(self, task_id):
        self.polls += 1
        if self.responses:
            return self.responses.pop(0)
        return self.default


def succeeded(url="https://cdn.example.com/out.png"):
    return PollResult(TaskState.SUCCEEDED, {"output": [url]}, raw_state="succeeded")


@pytest.fixture
def graph():
    return NodeGraph()


@pytest.fixture
def catalog():
    return ModelCatalog()


@pytest.fixture
def media(tmp_path):
    preprocessor = MediaPreprocessor(library_dir=tmp_path)
    yield preprocessor
    preprocessor.shutdown()


@pytest.fixture
def fast_poller():
    return AsyncJobPoller(interval=0, max_wait=60)


@pytest.fixture
def make_dispatcher(graph, catalog, media):
    def build(adapters, busy_policy="reject"):
        return GenerationDispatcher(
            graph,
            catalog,
            adapters,
            media,
            busy_policy=busy_policy,
            probe_results=False,
        )

    return build
