import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request

from appbuilder.apply.orchestrator import ApplicationOrchestrator
from appbuilder.config import Settings
from appbuilder.generation.pipeline import GenerationPipeline
from appbuilder.generation.producer import ModelStreamProducer
from appbuilder.generation.session import CancelToken, SessionRegistry
from appbuilder.mirror import GitHubMirrorClient, MirrorService
from appbuilder.run_store import RunStore, RuntimeCacheRunStore
from appbuilder.sandbox.backend import SandboxBackend, VercelSandboxBackend
from appbuilder.sandbox.bootstrap import Sleep
from appbuilder.sandbox.provisioner import SandboxManager
from appbuilder.usage.ledger import LedgerStore, RuntimeCacheLedger
from appbuilder.usage.reconciler import UsageReconciler


logger = logging.getLogger("appbuilder.services")


@dataclass
class Services:
    """Everything a request handler needs, owned by one app instance."""

    settings: Settings
    manager: SandboxManager
    orchestrator: ApplicationOrchestrator
    reconciler: UsageReconciler
    registry: SessionRegistry
    producer: ModelStreamProducer
    pipeline: GenerationPipeline
    runs: RunStore
    mirror: MirrorService
    cancel_tokens: dict[str, CancelToken] = field(default_factory=dict)
    preview_events: deque = field(default_factory=lambda: deque(maxlen=50))

    def record_preview_event(self, kind: str, data: dict[str, Any]) -> None:
        self.preview_events.append({"type": kind, **data})


def build_services(
    settings: Settings,
    *,
    backend: SandboxBackend | None = None,
    ledger: LedgerStore | None = None,
    runs: RunStore | None = None,
    producer: ModelStreamProducer | None = None,
    mirror: MirrorService | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Services:
    if mirror is None:
        client = (
            GitHubMirrorClient(settings.github_token, settings.github_api_url)
            if settings.github_token
            else None
        )
        mirror = MirrorService(client)
    manager = SandboxManager(
        backend or VercelSandboxBackend(), settings, sleep=sleep
    )
    orchestrator = ApplicationOrchestrator(manager, settings, mirror, sleep=sleep)
    reconciler = UsageReconciler(ledger or RuntimeCacheLedger(), settings.default_credits)
    registry = SessionRegistry()
    producer = producer or ModelStreamProducer(settings)
    pipeline = GenerationPipeline(registry, reconciler, manager, orchestrator, producer.stream_bytes)
    logger.info(
        "services ready (mirror=%s, build_check=%s)", mirror.enabled, settings.build_check
    )
    return Services(
        settings=settings,
        manager=manager,
        orchestrator=orchestrator,
        reconciler=reconciler,
        registry=registry,
        producer=producer,
        pipeline=pipeline,
        runs=runs or RuntimeCacheRunStore(),
        mirror=mirror,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
