from collections.abc import Sequence
from typing import NotRequired
from typing import TypedDict

# Annotations are rewritten in place while enriching, so these are plain dicts
Annotations = dict[str, str]

# --------------------------
# Platform (strict spec keys)
# --------------------------
Platform = TypedDict(
    "Platform",
    {
        "architecture": str,
        "os": str,
        "os.version": NotRequired[str],
        "os.features": NotRequired[Sequence[str]],
        "variant": NotRequired[str],
        "features": NotRequired[Sequence[str]],
    },
)


# --------------------------
# Descriptor (OCI descriptor)
# --------------------------
class Descriptor(TypedDict, total=False):
    """
    application/vnd.oci.descriptor.v1+json
    See: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    mediaType: str
    size: int
    digest: str
    urls: NotRequired[list[str]]
    annotations: NotRequired[Annotations]
    platform: NotRequired[Platform]
    artifactType: NotRequired[str]


# --------------------------
# OCI image index
# --------------------------
class OCIImageIndex(TypedDict):
    """
    application/vnd.oci.image.index.v1+json
    """

    schemaVersion: int
    mediaType: NotRequired[str]
    manifests: list[Descriptor]
    annotations: NotRequired[Annotations]


# --------------------------
# OCI manifest
# --------------------------
class OCIManifest(TypedDict):
    """
    application/vnd.oci.image.manifest.v1+json
    See: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    schemaVersion: int
    mediaType: NotRequired[str]
    artifactType: NotRequired[str]
    config: Descriptor
    layers: list[Descriptor]
    subject: NotRequired[Descriptor]
    annotations: NotRequired[Annotations]


class DockerManifestV2(TypedDict):
    """
    application/vnd.docker.distribution.manifest.v2+json
    This is similar to an OCIManifest in practice but historically different constants.
    """

    schemaVersion: int
    mediaType: NotRequired[str]
    config: Descriptor
    layers: list[Descriptor]
    annotations: NotRequired[Annotations]
