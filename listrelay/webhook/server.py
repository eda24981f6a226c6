"""FastAPI intake server for SharePoint list change notifications."""

import asyncio
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import BackgroundTasks, FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from listrelay import __version__
from listrelay.auth.token_cache import CredentialCache, graph_token_fetcher
from listrelay.changes.delta import DeltaTracker
from listrelay.changes.detector import ChangeDetector
from listrelay.changes.state_store import JsonFileStateStore
from listrelay.config import (
    AZURE_CLIENT_ID,
    AZURE_CLIENT_SECRET,
    AZURE_TENANT_ID,
    GRAPH_SCOPE,
    STATE_RETENTION_DAYS,
    STATE_STORE_PATH,
    TRACKING_LIST_ID,
    TRACKING_SITE_PATH,
    WEBHOOK_QUEUE_MAX,
    WEBHOOK_WORKER_COUNT,
)
from listrelay.dispatch import Dispatcher
from listrelay.errors import RelayError, ValidationError
from listrelay.forwarder import Forwarder
from listrelay.processors import build_default_registry
from listrelay.queue.client import QueueClientFactory
from listrelay.source.graph_client import GRAPH_PROVIDER_KEY, SharePointClient
from listrelay.utils.logger import bind_context, clear_context, get_logger
from listrelay.webhook.models import Notification
from listrelay.webhook.tracking import GraphTrackingStore, InMemoryTrackingStore
from listrelay.webhook.validators import validate_notification_batch

logger = get_logger("listrelay.webhook.server")

_ACCEPTED = '{"status":"accepted"}'


def build_dispatcher(http_client: httpx.AsyncClient, credentials: CredentialCache) -> Dispatcher:
    """Wire the dispatch core from process configuration."""
    if not credentials.is_registered(GRAPH_PROVIDER_KEY):
        credentials.register(
            GRAPH_PROVIDER_KEY,
            graph_token_fetcher(AZURE_TENANT_ID, AZURE_CLIENT_ID, AZURE_CLIENT_SECRET, GRAPH_SCOPE),
            tenant=AZURE_TENANT_ID,
            client_id=AZURE_CLIENT_ID,
        )
    source = SharePointClient(http_client, credentials)
    store = JsonFileStateStore(STATE_STORE_PATH)
    change_detector = ChangeDetector(store)
    delta = DeltaTracker(store, source)
    if TRACKING_SITE_PATH and TRACKING_LIST_ID:
        tracking: Any = GraphTrackingStore(source, TRACKING_SITE_PATH, TRACKING_LIST_ID)
    else:
        logger.warning("webhook.tracking.not_configured")
        tracking = InMemoryTrackingStore()
    return Dispatcher(
        registry=build_default_registry(),
        queue_clients=QueueClientFactory(http_client, credentials),
        source=source,
        tracking=tracking,
        change_detector=change_detector,
        forwarder=Forwarder(http_client, source=source, store=store),
        delta=delta,
    )


async def _process_batch(app: FastAPI, notifications: list[Notification]) -> None:
    dispatcher: Dispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is None:
        logger.error("webhook.notifications.no_dispatcher")
        return
    bind_context(batch_size=len(notifications))
    try:
        await dispatcher.dispatch_batch(notifications)
    except Exception as e:
        logger.exception("webhook.notifications.batch_error", error=str(e))
    finally:
        clear_context()


async def _notification_worker(app: FastAPI, worker_id: int) -> None:
    """Worker loop: take one batch from the queue and dispatch it. Stops on CancelledError."""
    queue: asyncio.Queue[list[Notification]] = app.state.notification_queue
    logger.info("webhook.worker.started", worker_id=worker_id)
    try:
        while True:
            batch = await queue.get()
            try:
                await _process_batch(app, batch)
            finally:
                queue.task_done()
    except asyncio.CancelledError:
        logger.info("webhook.worker.stopped", worker_id=worker_id)
        raise


def _setup_workers(app: FastAPI, queue_max: int, worker_count: int) -> None:
    """Create bounded queue and worker pool for notification processing."""
    app.state.notification_queue = asyncio.Queue(maxsize=queue_max)
    worker_count = max(1, min(worker_count, 64))
    app.state._worker_tasks = [
        asyncio.create_task(_notification_worker(app, i)) for i in range(worker_count)
    ]
    logger.info("webhook.lifespan.queue_started", queue_max=queue_max, worker_count=worker_count)


def _setup_dispatcher(app: FastAPI) -> None:
    """Create the shared HTTP client, credential cache and dispatcher on app.state."""
    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(30.0),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
    )
    credentials = CredentialCache()
    app.state._http_client = http_client
    app.state.credentials = credentials
    app.state.dispatcher = build_dispatcher(http_client, credentials)


async def _shutdown_tasks(app: FastAPI) -> None:
    """Cancel workers, close the HTTP client, then wait for workers to finish."""
    shutdown_timeout = 10.0
    worker_tasks: list[asyncio.Task[Any]] = list(getattr(app.state, "_worker_tasks", None) or [])
    for t in worker_tasks:
        t.cancel()

    http_client = getattr(app.state, "_http_client", None)
    if http_client is not None:
        try:
            await http_client.aclose()
        except Exception as e:
            logger.debug("webhook.lifespan.http_client_close_error", error=str(e))
        app.state._http_client = None

    if worker_tasks:
        try:
            await asyncio.wait_for(
                asyncio.gather(*worker_tasks, return_exceptions=True),
                timeout=shutdown_timeout,
            )
        except asyncio.TimeoutError:
            pending = sum(1 for t in worker_tasks if not t.done())
            logger.warning("webhook.lifespan.shutdown_timeout", timeout=shutdown_timeout, pending=pending)
    app.state.notification_queue = None


@asynccontextmanager
async def _lifespan(
    app: FastAPI,
    create_dispatcher: bool = True,
    queue_max: int = WEBHOOK_QUEUE_MAX,
    worker_count: int = WEBHOOK_WORKER_COUNT,
):
    """Build the dispatcher (unless one was injected) and start the worker pool."""
    if create_dispatcher:
        _setup_dispatcher(app)
        try:
            removed = await app.state.dispatcher.cleanup(STATE_RETENTION_DAYS)
            logger.info("webhook.lifespan.snapshots_purged", removed=removed, days=STATE_RETENTION_DAYS)
        except Exception as e:
            logger.warning("webhook.lifespan.snapshot_purge_failed", error=str(e))
    _setup_workers(app, queue_max, worker_count)

    yield

    await _shutdown_tasks(app)


def create_app(
    dispatcher: Dispatcher | None = None,
    credentials: CredentialCache | None = None,
    queue_max: int = WEBHOOK_QUEUE_MAX,
    worker_count: int = WEBHOOK_WORKER_COUNT,
) -> FastAPI:
    """
    Create FastAPI app. If dispatcher is passed, use it; otherwise the lifespan builds one from
    configuration in the server's event loop. Without a running lifespan (no worker queue),
    batches are dispatched as background tasks after the response.
    """
    app = FastAPI(
        title="SharePoint List Relay",
        version=__version__,
        lifespan=lambda app: _lifespan(
            app,
            create_dispatcher=dispatcher is None,
            queue_max=queue_max,
            worker_count=worker_count,
        ),
    )
    app.state.notification_queue = None
    if dispatcher is not None:
        app.state.dispatcher = dispatcher
        app.state.credentials = credentials

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/processors")
    async def processors() -> dict[str, list[dict[str, str]]]:
        current: Dispatcher | None = getattr(app.state, "dispatcher", None)
        if current is None:
            return {"processors": []}
        return {
            "processors": [
                {"name": d.name, "description": d.description} for d in current.registry.descriptors()
            ]
        }

    @app.get("/auth/cache-stats")
    async def cache_stats() -> dict[str, Any]:
        cache: CredentialCache | None = getattr(app.state, "credentials", None)
        if cache is None:
            raise RelayError("Credential cache not initialised", status_code=503)
        return cache.stats()

    @app.api_route("/webhook/notifications", methods=["GET", "POST"], response_model=None)
    async def notifications(request: Request, background_tasks: BackgroundTasks) -> Response:
        # Subscription validation: Graph sends validationToken as query param
        validation_token = request.query_params.get("validationToken")
        if validation_token:
            logger.info("webhook.notifications.validation_handshake")
            return PlainTextResponse(content=validation_token, status_code=200, media_type="text/plain")
        if request.method != "POST":
            return JSONResponse(
                status_code=400,
                content={"error": ValidationError("validationToken query parameter is required").to_dict()},
            )

        try:
            body = await request.json()
        except ValueError as e:
            logger.warning("webhook.notifications.parse_error", error=str(e))
            return JSONResponse(
                status_code=400,
                content={"error": ValidationError("Request body must be valid JSON").to_dict()},
            )
        try:
            batch = validate_notification_batch(body)
        except ValidationError as e:
            logger.warning("webhook.notifications.invalid_batch", error=e.message, details=e.details)
            return JSONResponse(status_code=400, content={"error": e.to_dict()})

        if not batch:
            logger.info("webhook.notifications.empty_batch")
            return Response(status_code=202, content=_ACCEPTED, media_type="application/json")

        queue: asyncio.Queue[list[Notification]] | None = getattr(app.state, "notification_queue", None)
        if queue is not None:
            try:
                queue.put_nowait(batch)
            except asyncio.QueueFull:
                logger.warning(
                    "webhook.notifications.queue_full",
                    notifications=len(batch),
                    queue_max=queue.maxsize,
                )
            else:
                logger.info(
                    "webhook.notifications.enqueued",
                    notifications=len(batch),
                    queue_size=queue.qsize(),
                    queue_max=queue.maxsize,
                )
                return Response(status_code=202, content=_ACCEPTED, media_type="application/json")
        background_tasks.add_task(_process_batch, app, batch)
        logger.info("webhook.notifications.scheduled", notifications=len(batch))

        return Response(status_code=202, content=_ACCEPTED, media_type="application/json")

    return app
