"""
Wires settings, graph, providers and dispatcher together
"""

import logging
from typing import Dict, Optional

import httpx

from nodegen.core.catalog import FAL, KIE, KIE_VEO, REPLICATE, ModelCatalog
from nodegen.core.config import Settings
from nodegen.core.dispatcher import GenerationDispatcher
from nodegen.core.graph import NodeGraph
from nodegen.core.media import MediaPreprocessor
from nodegen.core.poller import AsyncJobPoller
from nodegen.core.tracker import GenerationTracker
from nodegen.providers.base import ProviderAdapter
from nodegen.providers.fal import FalAdapter
from nodegen.providers.kie import KieClient, KieMarketAdapter, KieVeoAdapter
from nodegen.providers.replicate_provider import ReplicateAdapter
from nodegen.providers.uploads import S3Uploader

logger = logging.getLogger(__name__)


class GenerationEngine:
    """Everything one service instance needs, built once from Settings."""

    def __init__(
        self,
        settings: Settings,
        graph: NodeGraph,
        catalog: ModelCatalog,
        dispatcher: GenerationDispatcher,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.graph = graph
        self.catalog = catalog
        self.dispatcher = dispatcher
        self.http_client = http_client

    @property
    def tracker(self) -> GenerationTracker:
        return self.dispatcher.tracker

    @property
    def adapters(self) -> Dict[str, ProviderAdapter]:
        return self.dispatcher.adapters

    async def aclose(self):
        await self.dispatcher.shutdown()
        closed = set()
        for adapter in self.adapters.values():
            client = getattr(adapter, "client", None)
            if client is not None:
                if id(client) in closed:
                    continue
                closed.add(id(client))
            await adapter.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()
        self.dispatcher.media.shutdown()


def build_adapters(settings: Settings, media: MediaPreprocessor, poller: AsyncJobPoller) -> Dict[str, ProviderAdapter]:
    """One adapter per provider whose credentials are configured."""
    adapters: Dict[str, ProviderAdapter] = {}

    if settings.kie_api_key:
        kie_client = KieClient(
            settings.kie_api_key,
            base_url=settings.kie_base_url,
            upload_url=settings.kie_upload_url,
            timeout=settings.http_timeout,
        )
        adapters[KIE] = KieMarketAdapter(kie_client, poller)
        adapters[KIE_VEO] = KieVeoAdapter(kie_client, poller, media)
    else:
        logger.warning("⚠️ KIE_API_KEY not set - Kie.ai models disabled")

    if settings.fal_key:
        adapters[FAL] = FalAdapter.from_key(settings.fal_key, max_wait=settings.max_wait, timeout=settings.http_timeout)
    else:
        logger.warning("⚠️ FAL_KEY not set - fal.ai models disabled")

    if settings.replicate_api_token:
        adapters[REPLICATE] = ReplicateAdapter.from_token(
            settings.replicate_api_token, S3Uploader.from_settings(settings), poller
        )
    else:
        logger.warning("⚠️ REPLICATE_API_TOKEN not set - Replicate models disabled")

    return adapters


def build_engine(
    settings: Settings,
    adapters: Optional[Dict[str, ProviderAdapter]] = None,
    catalog: Optional[ModelCatalog] = None,
    poller: Optional[AsyncJobPoller] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> GenerationEngine:
    media = MediaPreprocessor(
        max_dimension=settings.max_image_dimension,
        max_bytes=settings.max_image_bytes,
        library_dir=settings.library_dir,
    )
    poller = poller or AsyncJobPoller(interval=settings.poll_interval, max_wait=settings.max_wait)
    if adapters is None:
        adapters = build_adapters(settings, media, poller)
    if http_client is None and settings.probe_results:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)

    graph = NodeGraph()
    catalog = catalog or ModelCatalog()
    dispatcher = GenerationDispatcher(
        graph,
        catalog,
        adapters,
        media,
        tracker=GenerationTracker(),
        busy_policy=settings.busy_policy,
        probe_results=settings.probe_results,
        http_client=http_client,
    )
    logger.info(f"🧩 Engine ready with providers: {', '.join(sorted(adapters)) or 'none'}")
    return GenerationEngine(settings, graph, catalog, dispatcher, http_client)
