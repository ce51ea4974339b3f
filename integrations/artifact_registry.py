#!/usr/bin/env python3
"""
Google Artifact Registry Integration

Read access to repositories, packages, versions, tags and Docker images
through the Artifact Registry v1 REST API, version deletion as a
long-running operation, and a token provider for the GCE metadata server.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import AccessToken, BearerTokenAuth, TokenProvider, TokenProviderAuth
from .base import IntegrationClient
from .errors import ConfigurationError, IntegrationError, RequestTimeoutError, ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .simulation import SimulationLayer
from .transport import HttpTransport

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
METADATA_TOKEN_PATH = "/computeMetadata/v1/instance/service-accounts/default/token"


class ArtifactRegistrySettings(IntegrationSettings):
    """Artifact Registry settings (``ARTIFACT_REGISTRY_`` environment prefix)."""

    model_config = SettingsConfigDict(
        env_prefix="ARTIFACT_REGISTRY_", env_file=".env", extra="ignore"
    )

    base_url: str = Field(default="https://artifactregistry.googleapis.com/v1")
    project_id: str = Field(default="", description="Google Cloud project id")
    location: str = Field(default="us-central1", description="Repository location")
    access_token: Optional[str] = Field(default=None, description="Static OAuth access token")
    use_metadata_server: bool = Field(
        default=False, description="Fetch tokens from the GCE metadata server"
    )
    metadata_url: str = Field(default="http://metadata.google.internal")
    operation_poll_interval: float = Field(default=2.0)
    operation_timeout: float = Field(default=300.0)

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.project_id:
            issues.append("Artifact Registry project_id is required")
        if not self.location:
            issues.append("Artifact Registry location is required")
        if self.operation_poll_interval <= 0:
            issues.append(f"Invalid operation poll interval: {self.operation_poll_interval}")
        return issues


class GoogleMetadataTokenProvider:
    """
    Tokens for the instance's default service account.

    Tokens are cached until five minutes before expiry.
    """

    def __init__(self, http: HttpTransport, refresh_buffer: float = 300.0):
        self.http = http
        self.refresh_buffer = refresh_buffer
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()

    async def get_token(
        self, scopes: Sequence[str], force_refresh: bool = False
    ) -> AccessToken:
        async with self._lock:
            if (
                not force_refresh
                and self._token is not None
                and not self._token.is_expiring(self.refresh_buffer)
            ):
                return self._token
            data = await self.http.request_json(
                "GET",
                METADATA_TOKEN_PATH,
                params={"scopes": ",".join(scopes)} if scopes else None,
                headers={"Metadata-Flavor": "Google"},
                operation="metadata_token",
            )
            if "access_token" not in data:
                raise IntegrationError(
                    "Metadata server response carried no access_token", provider="gcp_metadata"
                )
            self._token = AccessToken(
                token=data["access_token"],
                expires_on=time.time() + float(data.get("expires_in", 3600)),
                token_type=data.get("token_type", "Bearer"),
            )
            logger.debug("Fetched metadata server token, expires in %ss", data.get("expires_in"))
            return self._token

    async def close(self):
        await self.http.close()


class Repository(VendorModel):
    name: str
    format: Optional[str] = None
    description: Optional[str] = None
    mode: Optional[str] = None
    size_bytes: Optional[str] = Field(default=None, alias="sizeBytes")
    create_time: Optional[str] = Field(default=None, alias="createTime")
    update_time: Optional[str] = Field(default=None, alias="updateTime")
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def repository_id(self) -> str:
        return self.name.rsplit("/", 1)[-1]


class Package(VendorModel):
    name: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    create_time: Optional[str] = Field(default=None, alias="createTime")
    update_time: Optional[str] = Field(default=None, alias="updateTime")


class Version(VendorModel):
    name: str
    description: Optional[str] = None
    create_time: Optional[str] = Field(default=None, alias="createTime")
    update_time: Optional[str] = Field(default=None, alias="updateTime")
    related_tags: List[Dict[str, Any]] = Field(default_factory=list, alias="relatedTags")


class Tag(VendorModel):
    name: str
    version: Optional[str] = None

    @property
    def tag(self) -> str:
        return self.name.rsplit("/", 1)[-1]


class DockerImage(VendorModel):
    name: str
    uri: str = ""
    tags: List[str] = Field(default_factory=list)
    image_size_bytes: Optional[str] = Field(default=None, alias="imageSizeBytes")
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    upload_time: Optional[str] = Field(default=None, alias="uploadTime")
    build_time: Optional[str] = Field(default=None, alias="buildTime")
    update_time: Optional[str] = Field(default=None, alias="updateTime")

    @property
    def digest(self) -> Optional[str]:
        _, _, digest = self.uri.partition("@")
        return digest or None


class Operation(VendorModel):
    name: str
    done: bool = False
    error: Optional[Dict[str, Any]] = None
    response: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class ArtifactRegistryClient(IntegrationClient):
    """Artifact Registry v1 client."""

    provider = "artifact_registry"
    settings_class = ArtifactRegistrySettings

    def __init__(
        self,
        settings: ArtifactRegistrySettings,
        http: HttpTransport,
        token_provider: Optional[TokenProvider] = None,
    ):
        super().__init__(settings, http)
        self.token_provider = token_provider

    @classmethod
    def from_settings(
        cls,
        settings: ArtifactRegistrySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        **kwargs,
    ) -> "ArtifactRegistryClient":
        settings.validate_configuration()
        kwargs.setdefault("simulation", SimulationLayer.from_settings(settings))
        if token_provider is None and settings.use_metadata_server:
            metadata_http = HttpTransport(
                settings,
                "gcp_metadata",
                base_url=settings.metadata_url,
                transport=transport,
                simulation=kwargs["simulation"],
            )
            token_provider = GoogleMetadataTokenProvider(metadata_http)

        if token_provider is not None:
            auth: httpx.Auth = TokenProviderAuth(token_provider, [CLOUD_PLATFORM_SCOPE])
        elif settings.access_token:
            auth = BearerTokenAuth(settings.access_token)
        else:
            raise ConfigurationError(
                "Artifact Registry needs an access_token, the metadata server or a token provider",
                provider=cls.provider,
            )
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http, token_provider)

    async def close(self):
        await super().close()
        if isinstance(self.token_provider, GoogleMetadataTokenProvider):
            await self.token_provider.close()

    @property
    def location_path(self) -> str:
        return f"projects/{self.settings.project_id}/locations/{self.settings.location}"

    def repository_path(self, repository: str) -> str:
        if not repository:
            raise ValidationError("Repository id must not be empty", provider=self.provider)
        return f"{self.location_path}/repositories/{repository}"

    def package_path(self, repository: str, package: str) -> str:
        if not package:
            raise ValidationError("Package name must not be empty", provider=self.provider)
        # Docker package names contain slashes and travel encoded
        return f"{self.repository_path(repository)}/packages/{quote(package, safe='')}"

    def _list(
        self,
        path: str,
        items_key: str,
        operation: str,
        page_size: Optional[int] = None,
        **params,
    ) -> AsyncIterator[Dict[str, Any]]:
        return self.http.paginate(
            f"/{path}",
            items_key,
            "nextPageToken",
            "pageToken",
            params={"pageSize": page_size, **params},
            operation=operation,
        )

    async def list_repositories(self, page_size: Optional[int] = None) -> AsyncIterator[Repository]:
        async for item in self._list(
            f"{self.location_path}/repositories", "repositories", "list_repositories", page_size
        ):
            yield Repository.model_validate(item)

    async def get_repository(self, repository: str) -> Repository:
        data = await self.http.request_json(
            "GET",
            f"/{self.repository_path(repository)}",
            operation="get_repository",
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        return Repository.model_validate(data)

    async def list_packages(
        self, repository: str, page_size: Optional[int] = None
    ) -> AsyncIterator[Package]:
        async for item in self._list(
            f"{self.repository_path(repository)}/packages", "packages", "list_packages", page_size
        ):
            yield Package.model_validate(item)

    async def list_versions(
        self,
        repository: str,
        package: str,
        page_size: Optional[int] = None,
        view: Optional[str] = None,
        order_by: Optional[str] = None,
    ) -> AsyncIterator[Version]:
        async for item in self._list(
            f"{self.package_path(repository, package)}/versions",
            "versions",
            "list_versions",
            page_size,
            view=view,
            orderBy=order_by,
        ):
            yield Version.model_validate(item)

    async def list_tags(
        self, repository: str, package: str, page_size: Optional[int] = None
    ) -> AsyncIterator[Tag]:
        async for item in self._list(
            f"{self.package_path(repository, package)}/tags", "tags", "list_tags", page_size
        ):
            yield Tag.model_validate(item)

    async def list_docker_images(
        self, repository: str, page_size: Optional[int] = None, order_by: Optional[str] = None
    ) -> AsyncIterator[DockerImage]:
        async for item in self._list(
            f"{self.repository_path(repository)}/dockerImages",
            "dockerImages",
            "list_docker_images",
            page_size,
            orderBy=order_by,
        ):
            yield DockerImage.model_validate(item)

    async def get_docker_image(self, repository: str, image: str) -> DockerImage:
        """Fetch an image by ``name@sha256:...`` reference."""
        if "@" not in image:
            raise ValidationError(
                "Docker image reference must include a digest (name@sha256:...)",
                provider=self.provider,
            )
        data = await self.http.request_json(
            "GET",
            f"/{self.repository_path(repository)}/dockerImages/{quote(image, safe='@:')}",
            operation="get_docker_image",
        )
        return DockerImage.model_validate(data)

    async def delete_version(
        self, repository: str, package: str, version: str, force: bool = False
    ) -> Operation:
        """Start deleting a version; the returned operation completes asynchronously."""
        data = await self.http.request_json(
            "DELETE",
            f"/{self.package_path(repository, package)}/versions/{quote(version, safe='')}",
            params={"force": "true" if force else None},
            operation="delete_version",
        )
        operation = Operation.model_validate(data)
        logger.info("Deleting %s/%s@%s (operation %s)", repository, package, version, operation.name)
        return operation

    async def get_operation(self, name: str) -> Operation:
        data = await self.http.request_json("GET", f"/{name}", operation="get_operation")
        return Operation.model_validate(data)

    async def wait_for_operation(
        self,
        operation: Operation,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Operation:
        """
        Poll a long-running operation until it is done.

        Raises:
            IntegrationError: The operation finished with an error
            RequestTimeoutError: The operation did not finish in time
        """
        timeout = timeout if timeout is not None else self.settings.operation_timeout
        poll_interval = poll_interval or self.settings.operation_poll_interval
        deadline = time.monotonic() + timeout
        while not operation.done:
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(
                    f"Operation {operation.name} did not finish within {timeout}s",
                    provider=self.provider,
                )
            await asyncio.sleep(poll_interval)
            operation = await self.get_operation(operation.name)

        if operation.error:
            raise IntegrationError(
                operation.error.get("message", f"Operation {operation.name} failed"),
                provider=self.provider,
                response_data=operation.error,
            )
        return operation

    async def _ping(self):
        data = await self.http.request_json(
            "GET",
            f"/{self.location_path}/repositories",
            params={"pageSize": 1},
            operation="list_repositories",
        )
        return {"repositories": len(data.get("repositories", []))}
