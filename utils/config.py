import dataclasses
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final
from typing import Self

from utils import coerce_to_bool
from utils import get_log_level

DEFAULT_HTTP_ADDRESS: Final[str] = ":8888"
DEFAULT_REGISTRY_ADDRESS: Final[str] = "registry:5000"
DEFAULT_DESCRIPTION_API_KEY: Final[str] = "sk-proj-no-key-set-env"
DEFAULT_DESCRIPTION_URL: Final[str] = "https://api.openai.com/v1/chat/completions"
DEFAULT_DESCRIPTION_MODEL: Final[str] = "gpt-4o"

# Manifest annotation which opts an image into layer descriptions
MARKER_ANNOTATION: Final[str] = "notification.manifest.description"
# Layer annotation which receives the generated description
DESCRIPTION_ANNOTATION: Final[str] = "acme.description.openai"
# Tag moved to the republished manifest
TARGET_TAG: Final[str] = "latest"


@dataclass(frozen=True, slots=True)
class Config:
    """
    Process wide, read-only configuration.  Built once at start-up and handed
    to whatever needs it.
    """

    http_address: str = DEFAULT_HTTP_ADDRESS
    registry_address: str = DEFAULT_REGISTRY_ADDRESS
    registry_plain_http: bool = True
    registry_token: str | None = None
    description_api_key: str = DEFAULT_DESCRIPTION_API_KEY
    description_url: str = DEFAULT_DESCRIPTION_URL
    description_model: str = DEFAULT_DESCRIPTION_MODEL
    log_level: int = logging.INFO

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Self:
        if environ is None:
            environ = os.environ

        # Empty values fall back to the defaults too
        def _get(name: str, default: str) -> str:
            return environ.get(name) or default

        return cls(
            http_address=_get("ADDRESS_HTTP_SERVER", DEFAULT_HTTP_ADDRESS),
            registry_address=_get("ADDRESS_REGISTRY", DEFAULT_REGISTRY_ADDRESS),
            registry_plain_http=coerce_to_bool(_get("REGISTRY_PLAIN_HTTP", "true")),
            registry_token=environ.get("REGISTRY_TOKEN") or None,
            description_api_key=_get("OPEN_API_KEY", DEFAULT_DESCRIPTION_API_KEY),
            description_url=_get("DESCRIPTION_API_URL", DEFAULT_DESCRIPTION_URL),
            description_model=_get("DESCRIPTION_MODEL", DEFAULT_DESCRIPTION_MODEL),
            log_level=get_log_level(_get("LOG_LEVEL", "info")),
        )

    def with_overrides(
        self,
        *,
        http_address: str | None = None,
        registry_address: str | None = None,
        log_level: str | None = None,
    ) -> Self:
        """
        Returns a copy with any given (not None) values replaced
        """
        changes: dict[str, str | int] = {}
        if http_address:
            changes["http_address"] = http_address
        if registry_address:
            changes["registry_address"] = registry_address
        if log_level:
            changes["log_level"] = get_log_level(log_level)
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]

    @property
    def listen_host_port(self) -> tuple[str, int]:
        """
        Splits the HTTP address into host and port, an empty host (":8888")
        meaning every interface
        """
        host, _, port = self.http_address.rpartition(":")
        if not port.isdigit():
            raise ValueError(f"Invalid HTTP listen address: {self.http_address}")
        return (host or "0.0.0.0", int(port))
