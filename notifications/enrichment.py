"""
Adds a generated description to every layer of an opted-in manifest.

For each notification event the pushed manifest is fetched by digest.  If it
carries the opt-in annotation set to "true", each layer blob is sent to the
description service and the text stored as a layer annotation.  The opt-in
annotation is then removed, the modified manifest pushed (under its own, new
digest) and the target tag moved to it.

Nothing raised while handling an event escapes.  Every failure is logged
where it happens and recorded in the returned outcome, and processing moves
on to the next layer, or the next event.  A manifest where only some layers
could be described is still published.
"""

import logging
from collections.abc import Iterable

from notifications.models import RegistryEvent
from notifications.outcome import BatchOutcome
from notifications.outcome import EventOutcome
from notifications.outcome import EventStatus
from notifications.outcome import LayerOutcome
from notifications.outcome import LayerStatus
from regtools.images import OCI_MANIFEST_MEDIA_TYPE
from regtools.images import AnyManifest
from regtools.images import RegistryClient
from regtools.images import Repository
from regtools.images import encode_manifest
from regtools.images import is_manifest_media_type
from regtools.models import Descriptor
from utils import bytes_to_human_readable
from utils.config import DESCRIPTION_ANNOTATION
from utils.config import MARKER_ANNOTATION
from utils.config import TARGET_TAG
from utils.errors import ConnectFailedError
from utils.errors import DescriptionError
from utils.errors import PushFailedError
from utils.errors import RegistryError
from utils.errors import TagFailedError
from vision.describe import DescriptionClient

logger = logging.getLogger(__name__)


class ManifestEnricher:
    def __init__(
        self,
        registry: RegistryClient,
        describer: DescriptionClient,
        *,
        marker_key: str = MARKER_ANNOTATION,
        annotation_key: str = DESCRIPTION_ANNOTATION,
        target_tag: str = TARGET_TAG,
    ) -> None:
        self._registry = registry
        self._describer = describer
        self.marker_key = marker_key
        self.annotation_key = annotation_key
        self.target_tag = target_tag

    def opted_in(self, manifest: AnyManifest) -> bool:
        """
        Only the exact string "true" opts in
        """
        annotations = manifest.get("annotations") or {}
        return annotations.get(self.marker_key) == "true"

    def strip_marker(self, manifest: AnyManifest) -> None:
        annotations = manifest.get("annotations")
        if annotations is None:
            return
        annotations.pop(self.marker_key, None)
        # An empty map is left out entirely
        if not annotations:
            del manifest["annotations"]

    async def process_batch(self, events: Iterable[RegistryEvent]) -> BatchOutcome:
        """
        Processes each event in turn.  A failure in one event never stops the
        following ones.
        """
        batch = BatchOutcome()
        for event in events:
            try:
                outcome = await self.process(event)
            except Exception as e:
                logger.exception(f"Unexpected error processing {event}")
                outcome = EventOutcome(
                    event_id=event.id,
                    repository=event.target.repository,
                    digest=event.target.digest,
                    status=EventStatus.ERRORED,
                    error=e,
                )
            batch.add(outcome)
        return batch

    async def process(self, event: RegistryEvent) -> EventOutcome:
        target = event.target

        def _outcome(status: EventStatus, **kwargs) -> EventOutcome:
            return EventOutcome(
                event_id=event.id,
                repository=target.repository,
                digest=target.digest,
                status=status,
                **kwargs,
            )

        if target.media_type and not is_manifest_media_type(target.media_type):
            logger.debug(f"Ignoring {event}, {target.media_type} is not a manifest")
            return _outcome(EventStatus.IGNORED)

        #
        # Step 1 - resolve the repository
        #
        try:
            repo = self._registry.resolve_repository(target.repository)
        except ConnectFailedError as e:
            logger.error(f"Error getting repository for {event}: {e}")
            return _outcome(EventStatus.RESOLVE_FAILED, error=e)

        #
        # Step 2 - fetch the pushed manifest
        #
        try:
            manifest, _ = await repo.fetch_manifest(target.digest)
        except RegistryError as e:
            logger.error(f"Error fetching manifest {target}: {e}")
            return _outcome(EventStatus.FETCH_FAILED, error=e)

        #
        # Step 3 - only opted in manifests are touched
        #
        if not self.opted_in(manifest):
            logger.info(f"Manifest {target} does not require additional processing")
            return _outcome(EventStatus.NOT_OPTED_IN)

        #
        # Step 4 - describe the layers, in order
        #
        layers = await self._describe_layers(repo, manifest)

        #
        # Step 5 - the marker goes, so this manifest is never processed again
        #
        self.strip_marker(manifest)

        #
        # Step 6 - push the modified manifest, which gets its own digest
        #
        media_type = manifest.get("mediaType") or target.media_type or OCI_MANIFEST_MEDIA_TYPE
        try:
            pushed = await repo.push_manifest(media_type, encode_manifest(manifest))
        except PushFailedError as e:
            logger.error(f"Error pushing modified manifest for {target}: {e}")
            return _outcome(EventStatus.PUSH_FAILED, layers=layers, error=e)

        logger.info(f"Pushed modified manifest {repo.name}@{pushed['digest']} (from {target.digest})")

        #
        # Step 7 - move the tag
        #
        try:
            await repo.tag(pushed, self.target_tag)
        except TagFailedError as e:
            logger.error(f"Error tagging {repo.name}@{pushed['digest']} as {self.target_tag}: {e}")
            return _outcome(EventStatus.TAG_FAILED, layers=layers, pushed=pushed, error=e)

        outcome = _outcome(EventStatus.PUBLISHED, layers=layers, pushed=pushed)
        if outcome.partial:
            logger.warning(f"Only partially described {outcome}")
        else:
            logger.info(f"Finished {outcome}")
        return outcome

    async def _describe_layers(self, repo: Repository, manifest: AnyManifest) -> list[LayerOutcome]:
        """
        Describes each layer, writing the annotated descriptor back at the
        same index.  Layers which fail are left as they were.
        """
        layers: list[Descriptor] = manifest.get("layers") or []  # type: ignore[assignment]
        outcomes: list[LayerOutcome] = []

        for index, layer in enumerate(layers):
            digest = layer.get("digest", "")

            try:
                data = await repo.fetch_blob(layer)
            except RegistryError as e:
                logger.error(f"Error fetching layer {index} ({digest}): {e}")
                outcomes.append(LayerOutcome(index, digest, LayerStatus.FETCH_FAILED, error=e))
                continue

            logger.info(f"Describing layer {index} ({digest}), {bytes_to_human_readable(len(data))}")
            try:
                description = await self._describer.describe(
                    data,
                    layer.get("mediaType", DescriptionClient.DEFAULT_MEDIA_TYPE),
                )
            except DescriptionError as e:
                logger.error(f"Failed to describe layer {index} ({digest}): {e}")
                outcomes.append(LayerOutcome(index, digest, LayerStatus.DESCRIBE_FAILED, error=e))
                continue

            updated = Descriptor(**layer)
            updated["annotations"] = {**(layer.get("annotations") or {}), self.annotation_key: description}
            layers[index] = updated

            logger.debug(f"Described layer {index} ({digest})")
            outcomes.append(LayerOutcome(index, digest, LayerStatus.DESCRIBED, description=description))

        return outcomes
