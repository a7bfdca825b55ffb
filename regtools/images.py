import hashlib
import json
import logging
import re
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from http import HTTPStatus
from typing import Self
from typing import cast

import httpx
from httpx_retries import Retry
from httpx_retries import RetryTransport

from regtools.models import Descriptor
from regtools.models import DockerManifestV2
from regtools.models import OCIImageIndex
from regtools.models import OCIManifest
from utils.errors import ConnectFailedError
from utils.errors import DecodeFailedError
from utils.errors import DigestMismatchError
from utils.errors import IOFailedError
from utils.errors import NotFoundError
from utils.errors import PushFailedError
from utils.errors import TagFailedError

# Constants for media types and the HTTP Accept header
OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"

MANIFEST_MEDIA_TYPES = {
    OCI_INDEX_MEDIA_TYPE,
    DOCKER_MANIFEST_LIST_MEDIA_TYPE,
    OCI_MANIFEST_MEDIA_TYPE,
    DOCKER_MANIFEST_MEDIA_TYPE,
}

ACCEPT_HEADER = (
    f"{OCI_MANIFEST_MEDIA_TYPE}, "
    f"{DOCKER_MANIFEST_MEDIA_TYPE}, "
    f"{OCI_INDEX_MEDIA_TYPE}, "
    f"{DOCKER_MANIFEST_LIST_MEDIA_TYPE}"
)

SUPPORTED_DIGEST_ALGORITHMS = {"sha256", "sha512"}

# Repository name grammar, see
# https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-manifests
REPOSITORY_NAME_RE = re.compile(
    r"^[a-z0-9]+((\.|_|__|-+)[a-z0-9]+)*(/[a-z0-9]+((\.|_|__|-+)[a-z0-9]+)*)*$",
)

logger = logging.getLogger(__name__)

AnyManifest = OCIManifest | DockerManifestV2 | OCIImageIndex


def is_manifest_media_type(media_type: str) -> bool:
    return media_type in MANIFEST_MEDIA_TYPES


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """
    Returns the content digest of the given bytes, e.g. "sha256:<hex>"
    """
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


def verify_content(data: bytes, descriptor: Descriptor) -> None:
    """
    Checks the given bytes are what the descriptor says they are, by both
    size and digest.  Raises DigestMismatchError if not.
    """
    digest = descriptor.get("digest", "")
    expected_size = descriptor.get("size")
    if expected_size is not None and len(data) != expected_size:
        raise DigestMismatchError(
            f"Size mismatch for {digest}: expected {expected_size}, got {len(data)}",
        )

    algorithm, _, _ = digest.partition(":")
    if algorithm not in SUPPORTED_DIGEST_ALGORITHMS:
        raise DigestMismatchError(f"Unsupported digest algorithm: {digest}")

    actual = compute_digest(data, algorithm)
    if actual != digest:
        raise DigestMismatchError(f"Digest mismatch: expected {digest}, got {actual}")


def decode_manifest(data: bytes) -> AnyManifest:
    """
    Parses raw manifest bytes.  Only the overall shape is checked, any
    other keys are kept as-is so they survive a republish.
    """
    try:
        parsed_json = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DecodeFailedError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(parsed_json, dict):
        raise DecodeFailedError("Manifest is not a JSON object")

    layers = parsed_json.get("layers")
    if layers is not None and (
        not isinstance(layers, list) or not all(isinstance(x, dict) for x in layers)
    ):
        raise DecodeFailedError("Manifest layers are not a list of descriptors")

    annotations = parsed_json.get("annotations")
    if annotations is not None and not isinstance(annotations, dict):
        raise DecodeFailedError("Manifest annotations are not an object")

    return cast(AnyManifest, parsed_json)


def encode_manifest(manifest: AnyManifest) -> bytes:
    """
    Marshals a manifest to compact JSON, keeping the key order.  Equal
    manifests always give equal bytes, and so equal digests.
    """
    return json.dumps(manifest, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True, slots=True)
class CachedToken:
    """
    A cached bearer token with expiration tracking.
    """

    token: str
    expires_at: float


class BearerAuth(httpx.Auth):
    """
    Custom authentication handler for httpx to manage registry bearer tokens.
    It answers the registry's challenge by fetching a token for the repository
    scope (pull, or pull and push for writes), caching it until shortly
    before it expires.

    Registries which do not challenge are left alone.
    """

    __slots__ = ("_client", "_token", "_tokens")

    def __init__(self, client: httpx.AsyncClient, token: str | None = None) -> None:
        self._tokens: dict[str, CachedToken] = {}
        self._client = client
        self._token = token

    @staticmethod
    def _scope_for(request: httpx.Request) -> str | None:
        repo_match = re.search(r"/v2/(.+?)/(manifests|blobs|tags)/", request.url.path)
        if not repo_match:
            return None
        actions = "pull" if request.method in {"GET", "HEAD"} else "pull,push"
        return f"repository:{repo_match.group(1)}:{actions}"

    async def async_auth_flow(
        self,
        request: httpx.Request,
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        scope = self._scope_for(request)
        if scope is None:
            # Not a repository request, e.g. the /v2/ version check
            yield request
            return

        # Check if we have a valid cached token for this scope
        if (cached := self._tokens.get(scope)) and time.time() < cached.expires_at:
            request.headers["Authorization"] = f"Bearer {cached.token}"
            yield request
            return

        # Try the request unauthenticated first to get the auth challenge
        response: httpx.Response = yield request

        if response.status_code != httpx.codes.UNAUTHORIZED or "Www-Authenticate" not in response.headers:
            return

        auth_header = response.headers["Www-Authenticate"]
        realm_match = re.search(r'Bearer realm="([^"]+)"', auth_header)
        service_match = re.search(r'service="([^"]+)"', auth_header)

        if not realm_match:
            # Not a bearer challenge, nothing this handler can do
            logger.warning(f"Unsupported registry auth challenge: {auth_header}")
            return

        params = {"scope": scope}
        if service_match:
            params["service"] = service_match.group(1)

        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        token_resp = await self._client.get(
            realm_match.group(1),
            params=params,
            headers=headers,
            auth=None,
        )
        token_resp.raise_for_status()

        token_data = token_resp.json()
        # Token servers answer with either name
        new_token = token_data.get("token") or token_data.get("access_token")
        if not new_token:
            raise ValueError(f"Token response missing 'token' field: {token_data}")

        # Use a 30 second buffer to avoid edge cases
        expires_in = token_data.get("expires_in", 300)
        expires_at = time.time() + expires_in - 30

        # Cache the token and retry the original request
        self._tokens[scope] = CachedToken(token=new_token, expires_at=expires_at)
        request.headers["Authorization"] = f"Bearer {new_token}"
        yield request


class Repository:
    """
    A handle to a single repository in the registry.  All operations are
    network round trips, nothing is cached.
    """

    def __init__(self, client: httpx.AsyncClient, name: str) -> None:
        self._client = client
        self.name = name

    def __str__(self) -> str:
        return f"Repository {self.name}"

    async def _get(self, url: str, headers: dict[str, str] | None = None) -> httpx.Response:
        # A failed token exchange in BearerAuth surfaces as ValueError
        try:
            resp = await self._client.get(url, headers=headers)
        except (httpx.HTTPError, ValueError) as e:
            raise IOFailedError(f"Request to {url} failed: {e}") from e

        if resp.status_code == HTTPStatus.NOT_FOUND:
            raise NotFoundError(f"{url} was not found")
        if not resp.is_success:
            raise IOFailedError(f"Request to {url} returned HTTP {resp.status_code}")
        return resp

    async def fetch_manifest(self, reference: str) -> tuple[AnyManifest, bytes]:
        """
        Fetches a manifest or index by digest (or tag).

        Returns both the decoded manifest and the raw bytes as served.
        """
        manifest_url = f"/v2/{self.name}/manifests/{reference}"
        logger.debug(f"Requesting manifest: {manifest_url}")

        resp = await self._get(manifest_url, headers={"Accept": ACCEPT_HEADER})
        data = resp.content
        return decode_manifest(data), data

    async def fetch_blob(self, descriptor: Descriptor) -> bytes:
        """
        Fetches the content the descriptor points at, verifying both size
        and digest before handing it back
        """
        digest = descriptor.get("digest", "")
        blob_url = f"/v2/{self.name}/blobs/{digest}"
        logger.debug(f"Requesting blob: {blob_url}")

        resp = await self._get(blob_url)
        data = resp.content
        verify_content(data, descriptor)
        return data

    async def push_manifest(self, media_type: str, data: bytes) -> Descriptor:
        """
        Pushes the manifest bytes by their digest.  Pushing the same bytes
        again lands at the same digest.
        """
        digest = compute_digest(data)
        manifest_url = f"/v2/{self.name}/manifests/{digest}"
        logger.debug(f"Pushing manifest: {manifest_url}")

        try:
            resp = await self._client.put(
                manifest_url,
                content=data,
                headers={"Content-Type": media_type},
            )
        except (httpx.HTTPError, ValueError) as e:
            raise PushFailedError(f"Push of {self.name}@{digest} failed: {e}") from e

        if not resp.is_success:
            raise PushFailedError(f"Push of {self.name}@{digest} returned HTTP {resp.status_code}")

        served_digest = resp.headers.get("Docker-Content-Digest")
        if served_digest and served_digest != digest:
            raise PushFailedError(
                f"Registry stored {self.name} manifest as {served_digest}, expected {digest}",
            )

        return Descriptor(mediaType=media_type, digest=digest, size=len(data))

    async def tag(self, descriptor: Descriptor, tag: str) -> None:
        """
        Points the tag at the manifest the descriptor references, by pushing
        that manifest's bytes under the tag name
        """
        digest = descriptor.get("digest", "")
        media_type = descriptor.get("mediaType", OCI_MANIFEST_MEDIA_TYPE)

        try:
            resp = await self._get(
                f"/v2/{self.name}/manifests/{digest}",
                headers={"Accept": media_type},
            )
        except (NotFoundError, IOFailedError) as e:
            raise TagFailedError(f"Unable to read {self.name}@{digest} for tagging: {e}") from e

        tag_url = f"/v2/{self.name}/manifests/{tag}"
        try:
            tag_resp = await self._client.put(
                tag_url,
                content=resp.content,
                headers={"Content-Type": media_type},
            )
        except (httpx.HTTPError, ValueError) as e:
            raise TagFailedError(f"Tagging {self.name}:{tag} failed: {e}") from e

        if not tag_resp.is_success:
            raise TagFailedError(f"Tagging {self.name}:{tag} returned HTTP {tag_resp.status_code}")


class RegistryClient:
    """A client for interacting with an OCI container registry via HTTP."""

    def __init__(
        self,
        host: str,
        *,
        plain_http: bool = True,
        token: str | None = None,
    ) -> None:
        self.host = host
        self.base_url = f"{'http' if plain_http else 'https'}://{self.host}"
        # Increase the pool timeout as well
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout=15.0, pool=20.0),
            follow_redirects=True,
        )
        self._client.auth = BearerAuth(self._client, token)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit the async context manager and close the client."""
        await self.close()

    def resolve_repository(self, name: str) -> Repository:
        """
        Returns a handle for the named repository (e.g. 'owner/image')
        """
        if not name or not REPOSITORY_NAME_RE.match(name):
            raise ConnectFailedError(f"Invalid repository name: {name!r}")
        return Repository(self._client, name)

    async def close(self) -> None:
        """Closes the underlying HTTP client."""
        await self._client.aclose()


async def ping_registry(
    host: str,
    *,
    plain_http: bool = True,
    retry: Retry | None = None,
) -> bool:
    """
    Checks the registry answers the version check endpoint.  Any answer of
    200 or 401 means it is up.  Retried with a short backoff, as this runs
    while everything is still starting up.
    """
    if retry is None:
        retry = Retry(total=3, backoff_factor=0.5)

    base_url = f"{'http' if plain_http else 'https'}://{host}"
    async with httpx.AsyncClient(
        base_url=base_url,
        transport=RetryTransport(retry=retry),
        timeout=5.0,
    ) as client:
        try:
            resp = await client.get("/v2/")
        except httpx.HTTPError as e:
            logger.error(f"Failed to ping registry at {base_url}: {e}")
            return False

    if resp.status_code in (HTTPStatus.OK, HTTPStatus.UNAUTHORIZED):
        logger.info(f"Registry at {base_url} is reachable")
        return True

    logger.error(f"Registry at {base_url} returned HTTP {resp.status_code}")
    return False
