#!/usr/bin/env python3
"""
Jenkins Integration

Jenkins remote access API client: jobs, parameterised builds through the
queue, build status, progressive console output and build cancellation.
Mutating requests carry a CSRF crumb that is cached and refreshed once when
Jenkins rejects it.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .base import IntegrationClient
from .errors import (
    IntegrationError,
    NotFoundError,
    PermissionDeniedError,
    RequestTimeoutError,
    ValidationError,
)
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

QUEUE_LOCATION_PATTERN = re.compile(r"/queue/item/(\d+)/?$")


class JenkinsSettings(IntegrationSettings):
    """Jenkins settings (``JENKINS_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="JENKINS_", env_file=".env", extra="ignore")

    base_url: str = Field(default="", description="Jenkins root URL")
    username: Optional[str] = Field(default=None)
    api_token: Optional[str] = Field(default=None, description="User API token")
    crumb_enabled: bool = Field(default=True, description="Send CSRF crumbs on POST")
    crumb_ttl: float = Field(default=1800.0, description="Seconds a fetched crumb is reused")
    poll_interval: float = Field(default=2.0, description="Queue and build polling interval")
    queue_timeout: float = Field(default=300.0, description="Seconds to wait for a build to start")
    build_timeout: float = Field(default=3600.0, description="Seconds to wait for a build to end")

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.base_url:
            issues.append("Jenkins base_url is required")
        if bool(self.username) != bool(self.api_token):
            issues.append("Jenkins username and api_token must be set together")
        if self.poll_interval <= 0:
            issues.append(f"Invalid poll interval: {self.poll_interval}")
        return issues


@dataclass
class Crumb:
    field: str
    value: str
    fetched_at: float


class JobSummary(VendorModel):
    name: str
    url: Optional[str] = None
    color: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")


class BuildRef(VendorModel):
    number: int
    url: Optional[str] = None


class Job(VendorModel):
    name: str
    url: Optional[str] = None
    full_name: Optional[str] = Field(default=None, alias="fullName")
    description: Optional[str] = None
    color: Optional[str] = None
    buildable: bool = True
    in_queue: bool = Field(default=False, alias="inQueue")
    next_build_number: Optional[int] = Field(default=None, alias="nextBuildNumber")
    last_build: Optional[BuildRef] = Field(default=None, alias="lastBuild")
    last_successful_build: Optional[BuildRef] = Field(default=None, alias="lastSuccessfulBuild")
    last_failed_build: Optional[BuildRef] = Field(default=None, alias="lastFailedBuild")
    jobs: List[JobSummary] = Field(default_factory=list)


class QueueItem(VendorModel):
    id: int
    why: Optional[str] = None
    blocked: bool = False
    buildable: bool = False
    cancelled: bool = False
    stuck: bool = False
    in_queue_since: Optional[int] = Field(default=None, alias="inQueueSince")
    executable: Optional[BuildRef] = None


class Build(VendorModel):
    number: int
    url: Optional[str] = None
    result: Optional[str] = None
    building: bool = False
    duration: int = 0
    estimated_duration: Optional[int] = Field(default=None, alias="estimatedDuration")
    timestamp: Optional[int] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")
    queue_id: Optional[int] = Field(default=None, alias="queueId")

    @property
    def succeeded(self) -> bool:
        return self.result == "SUCCESS"


class ConsoleChunk(VendorModel):
    text: str
    next_start: int
    more_data: bool


def job_path(name: str) -> str:
    """Map ``folder/sub/job`` to ``/job/folder/job/sub/job/job``."""
    segments = [segment for segment in name.strip("/").split("/") if segment]
    if not segments:
        raise ValidationError("Job name must not be empty", provider="jenkins")
    return "".join(f"/job/{quote(segment, safe='')}" for segment in segments)


def parse_queue_location(location: Optional[str]) -> int:
    match = QUEUE_LOCATION_PATTERN.search(location or "")
    if not match:
        raise IntegrationError(
            f"Build was queued but no queue item location was returned: {location!r}",
            provider="jenkins",
        )
    return int(match.group(1))


class JenkinsClient(IntegrationClient):
    """Jenkins remote access API client."""

    provider = "jenkins"
    settings_class = JenkinsSettings

    def __init__(self, settings: JenkinsSettings, http: HttpTransport):
        super().__init__(settings, http)
        self._crumb: Optional[Crumb] = None
        self._crumb_unavailable = False
        self._crumb_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: JenkinsSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "JenkinsClient":
        settings.validate_configuration()
        auth = (
            httpx.BasicAuth(settings.username, settings.api_token)
            if settings.username
            else None
        )
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    # Crumbs

    async def get_crumb(self, force_refresh: bool = False) -> Optional[Crumb]:
        """Return the cached crumb, fetching one when missing or stale."""
        if not self.settings.crumb_enabled:
            return None
        async with self._crumb_lock:
            if force_refresh:
                self._crumb = None
                self._crumb_unavailable = False
            if self._crumb_unavailable:
                return None
            if (
                self._crumb is not None
                and time.monotonic() - self._crumb.fetched_at < self.settings.crumb_ttl
            ):
                return self._crumb
            try:
                data = await self.http.request_json(
                    "GET", "/crumbIssuer/api/json", operation="crumb"
                )
            except NotFoundError:
                logger.info("Jenkins crumb issuer is disabled; sending requests without crumbs")
                self._crumb_unavailable = True
                return None
            self._crumb = Crumb(
                field=data.get("crumbRequestField", "Jenkins-Crumb"),
                value=data.get("crumb", ""),
                fetched_at=time.monotonic(),
            )
            return self._crumb

    def invalidate_crumb(self):
        self._crumb = None

    async def _post(
        self,
        path: str,
        operation: str,
        data: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        expected_status=None,
    ) -> httpx.Response:
        refreshed = False
        while True:
            crumb = await self.get_crumb(force_refresh=refreshed)
            headers = {crumb.field: crumb.value} if crumb else None
            try:
                return await self.http.request(
                    "POST",
                    path,
                    data=data,
                    params=params,
                    headers=headers,
                    operation=operation,
                    expected_status=expected_status,
                    retry=False,
                )
            except PermissionDeniedError:
                if refreshed or not self.settings.crumb_enabled:
                    raise
                logger.info("Jenkins rejected %s with 403, refreshing crumb", operation)
                refreshed = True

    # Jobs

    async def get_job(self, name: str) -> Job:
        data = await self.http.request_json(
            "GET", f"{job_path(name)}/api/json", operation="get_job"
        )
        return Job.model_validate(data)

    async def list_jobs(self, folder: Optional[str] = None) -> List[JobSummary]:
        prefix = job_path(folder) if folder else ""
        data = await self.http.request_json(
            "GET",
            f"{prefix}/api/json",
            params={"tree": "jobs[name,url,color,fullName]"},
            operation="list_jobs",
        )
        return [JobSummary.model_validate(job) for job in data.get("jobs", [])]

    # Builds

    async def trigger_build(
        self, name: str, parameters: Optional[Mapping[str, Any]] = None
    ) -> int:
        """Queue a build and return its queue item id."""
        action = "buildWithParameters" if parameters else "build"
        form = {key: str(value) for key, value in (parameters or {}).items()}
        response = await self._post(
            f"{job_path(name)}/{action}",
            operation="trigger_build",
            data=form or None,
            expected_status=(200, 201),
        )
        queue_id = parse_queue_location(response.headers.get("location"))
        logger.info("Queued %s as queue item %d", name, queue_id)
        return queue_id

    async def get_queue_item(self, queue_id: int) -> QueueItem:
        data = await self.http.request_json(
            "GET", f"/queue/item/{queue_id}/api/json", operation="get_queue_item"
        )
        return QueueItem.model_validate(data)

    async def wait_for_build_start(
        self,
        queue_id: int,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> BuildRef:
        """Poll the queue until the item becomes a build."""
        timeout = timeout if timeout is not None else self.settings.queue_timeout
        poll_interval = poll_interval or self.settings.poll_interval
        deadline = time.monotonic() + timeout
        while True:
            item = await self.get_queue_item(queue_id)
            if item.cancelled:
                raise IntegrationError(
                    f"Queue item {queue_id} was cancelled", provider=self.provider
                )
            if item.executable is not None:
                return item.executable
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(
                    f"Queue item {queue_id} did not start within {timeout}s ({item.why})",
                    provider=self.provider,
                )
            await asyncio.sleep(poll_interval)

    async def get_build(self, name: str, number: int) -> Build:
        data = await self.http.request_json(
            "GET", f"{job_path(name)}/{number}/api/json", operation="get_build"
        )
        return Build.model_validate(data)

    async def get_last_build(self, name: str) -> Optional[Build]:
        """Latest build of a job, or None if it never ran."""
        try:
            data = await self.http.request_json(
                "GET", f"{job_path(name)}/lastBuild/api/json", operation="get_last_build"
            )
        except NotFoundError:
            return None
        return Build.model_validate(data)

    async def get_console_output(self, name: str, number: int, start: int = 0) -> ConsoleChunk:
        """Console text from byte offset ``start``; ``next_start`` continues it."""
        response = await self.http.request(
            "GET",
            f"{job_path(name)}/{number}/logText/progressiveText",
            params={"start": start},
            headers={"Accept": "text/plain"},
            operation="get_console_output",
        )
        size = response.headers.get("x-text-size")
        return ConsoleChunk(
            text=response.text,
            next_start=int(size) if size else start + len(response.content),
            more_data=response.headers.get("x-more-data", "").lower() == "true",
        )

    async def iter_console_output(
        self, name: str, number: int, poll_interval: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Follow a build's console until Jenkins reports no more data."""
        poll_interval = poll_interval or self.settings.poll_interval
        start = 0
        while True:
            chunk = await self.get_console_output(name, number, start)
            if chunk.text:
                yield chunk.text
            start = chunk.next_start
            if not chunk.more_data:
                return
            await asyncio.sleep(poll_interval)

    async def stop_build(self, name: str, number: int):
        await self._post(
            f"{job_path(name)}/{number}/stop",
            operation="stop_build",
            expected_status=(200, 302),
        )
        logger.info("Requested stop of %s #%d", name, number)

    async def wait_for_build(
        self,
        name: str,
        number: int,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Build:
        """Poll a build until it finishes and return the final state."""
        timeout = timeout if timeout is not None else self.settings.build_timeout
        poll_interval = poll_interval or self.settings.poll_interval
        deadline = time.monotonic() + timeout
        while True:
            build = await self.get_build(name, number)
            if not build.building and build.result is not None:
                logger.info("%s #%d finished: %s", name, number, build.result)
                return build
            if time.monotonic() >= deadline:
                raise RequestTimeoutError(
                    f"{name} #{number} did not finish within {timeout}s", provider=self.provider
                )
            await asyncio.sleep(poll_interval)

    async def _ping(self):
        data = await self.http.request_json(
            "GET", "/api/json", params={"tree": "mode,nodeName"}, operation="ping"
        )
        return {"mode": data.get("mode")}
