from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import time

from cascademerge.bitbucket_gateway import BitbucketGateway
from cascademerge.cascade import CascadeResolver
from cascademerge.config import AppConfig
from cascademerge.dispatcher import EventDispatcher
from cascademerge.models import CascadeEvent
from cascademerge.observability import log_event, log_warning_event, logging_repo_context
from cascademerge.orchestrator import CascadeOrchestrator


LOGGER = logging.getLogger("cascademerge.service")


class CascadeService:
    """Runs each accepted event on a worker thread without blocking the caller.

    Outcomes are only observable through logs; a failed event never affects
    other events or the process.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        *,
        worker_count: int,
        gateway: BitbucketGateway | None = None,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.dispatcher = dispatcher
        self._gateway = gateway
        self._pool = ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="cascade-worker"
        )

    def submit(self, event: CascadeEvent) -> Future[None]:
        future = self._pool.submit(self._handle, event)
        log_event(
            LOGGER,
            "cascade_event_scheduled",
            repo_full_name=event.repository.full_name,
            trigger=event.trigger,
            source=event.source_branch,
            destination=event.destination_branch,
        )
        return future

    def shutdown(self, *, wait: bool = True) -> None:
        # Pending events are abandoned on shutdown; the next webhook re-drives them.
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
        if self._gateway is not None:
            self._gateway.close()

    def _handle(self, event: CascadeEvent) -> None:
        started_at = time.monotonic()
        with logging_repo_context(event.repository.full_name):
            try:
                self.dispatcher.handle_event(event)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "cascade_event_failed",
                    repo_full_name=event.repository.full_name,
                    trigger=event.trigger,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return
            log_event(
                LOGGER,
                "cascade_event_finished",
                repo_full_name=event.repository.full_name,
                trigger=event.trigger,
                duration_ms=int((time.monotonic() - started_at) * 1000),
            )


def build_gateway(config: AppConfig) -> BitbucketGateway:
    return BitbucketGateway(
        config.bitbucket.primary,
        api_url=config.bitbucket.api_url,
        timeout_seconds=config.bitbucket.request_timeout_seconds,
        merge_strategy=config.cascade.merge_strategy,
    )


def build_dispatcher(config: AppConfig, gateway: BitbucketGateway) -> EventDispatcher:
    resolver = CascadeResolver(
        gateway, default_development_branch=config.cascade.development_branch_name
    )
    orchestrator = CascadeOrchestrator(
        gateway,
        primary=config.bitbucket.primary,
        approvers=config.bitbucket.approvers,
        marker=config.cascade.marker,
    )
    return EventDispatcher(
        platform=gateway,
        resolver=resolver,
        orchestrator=orchestrator,
        release_branch_prefix=config.cascade.release_branch_prefix,
    )


def build_service(config: AppConfig) -> CascadeService:
    gateway = build_gateway(config)
    return CascadeService(
        build_dispatcher(config, gateway),
        worker_count=config.cascade.worker_count,
        gateway=gateway,
    )
