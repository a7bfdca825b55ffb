import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from http import HTTPStatus

from fastapi import FastAPI
from fastapi import Request
from fastapi import Response
from starlette.requests import ClientDisconnect

from notifications.enrichment import ManifestEnricher
from notifications.models import NotificationBatch
from notifications.outcome import BatchOutcome
from regtools.images import RegistryClient
from regtools.images import ping_registry
from utils.config import Config
from utils.errors import BodyReadError
from utils.errors import PayloadDecodeError
from vision.describe import DescriptionClient

logger = logging.getLogger(__name__)

# How often a running batch checks whether the registry is still connected (seconds)
DISCONNECT_POLL_INTERVAL = 0.5


async def read_batch(request: Request) -> NotificationBatch:
    """
    Reads and decodes the request body.

    Raises:
        BodyReadError: the body could not be read, e.g. the client went away
        PayloadDecodeError: the body is not a notification
    """
    try:
        body = await request.body()
    except ClientDisconnect as e:
        raise BodyReadError("Client disconnected while sending the notification") from e
    return NotificationBatch.from_json(body)


async def _cancel_on_disconnect(request: Request, task: asyncio.Task) -> None:
    while not task.done():
        if await request.is_disconnected():
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def process_until_disconnect(
    request: Request,
    enricher: ManifestEnricher,
    batch: NotificationBatch,
) -> BatchOutcome | None:
    """
    Runs the batch, cancelling it if the client disconnects first.  Whatever
    was already pushed or tagged stays as it is, nothing is rolled back.

    Returns None if the batch was cancelled.
    """
    task = asyncio.create_task(enricher.process_batch(batch))
    watcher = asyncio.create_task(_cancel_on_disconnect(request, task))
    try:
        return await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        # Only swallow the cancellation caused by the disconnect
        if current is not None and current.cancelling():
            raise
        logger.warning(f"Client disconnected, abandoned processing of {len(batch)} event(s)")
        return None
    finally:
        watcher.cancel()


async def receive_notifications(request: Request) -> Response:
    """
    Handles one notification POST from the registry.

    The response only says the events were accepted.  Whatever goes wrong
    while processing them is logged, and the registry still gets a 200.
    """
    config: Config = request.app.state.config

    try:
        batch = await read_batch(request)
    except BodyReadError as e:
        logger.error(f"Failed to read notification body: {e}")
        return Response(status_code=HTTPStatus.INTERNAL_SERVER_ERROR)
    except PayloadDecodeError as e:
        logger.warning(f"Rejecting notification: {e}")
        return Response(status_code=HTTPStatus.BAD_REQUEST)

    if len(batch) == 0:
        logger.debug("Notification contained no events")
        return Response(status_code=HTTPStatus.OK)

    # Clients are per request, nothing is shared between notifications
    async with (
        RegistryClient(
            config.registry_address,
            plain_http=config.registry_plain_http,
            token=config.registry_token,
        ) as registry,
        DescriptionClient(
            config.description_api_key,
            url=config.description_url,
            model=config.description_model,
        ) as describer,
    ):
        enricher = ManifestEnricher(registry, describer)
        outcome = await process_until_disconnect(request, enricher, batch)

    if outcome is None:
        # Nobody is left to read this
        return Response(status_code=HTTPStatus.OK)

    logger.info(f"Processed {len(batch)} event(s): {outcome.summary()}")
    for failed in outcome.failed:
        logger.warning(f"Event {failed.event_id} failed: {failed}")

    return Response(status_code=HTTPStatus.OK)


async def healthz() -> Response:
    return Response(status_code=HTTPStatus.OK)


def create_application(config: Config, *, check_registry: bool = True) -> FastAPI:
    """
    Create and configure the webhook application.

    Args:
        config: The process configuration, stored on the application state
        check_registry: Ping the registry on start-up, only ever logged
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if check_registry:
            await ping_registry(config.registry_address, plain_http=config.registry_plain_http)
        logger.info(f"Accepting notifications for registry {config.registry_address}")
        yield
        logger.info("Webhook shutdown complete")

    application = FastAPI(
        title="Registry Layer Describer",
        description="Describes the layers of opted-in images pushed to a container registry",
        lifespan=lifespan,
    )
    application.state.config = config

    # The registry can be pointed at either path
    application.add_api_route("/", receive_notifications, methods=["POST"])
    application.add_api_route("/notifications", receive_notifications, methods=["POST"])
    application.add_api_route("/healthz", healthz, methods=["GET"])

    return application
