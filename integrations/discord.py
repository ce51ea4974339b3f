#!/usr/bin/env python3
"""
Discord Integration

Webhook execution and Bot REST calls against the Discord API v10: messages,
reactions, threads, direct messages and channels. Discord's per-route rate
limit buckets are tracked from the ``X-RateLimit-*`` response headers and
requests wait for their bucket (or a global limit) to reset.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote

import httpx
from pydantic import Field
from pydantic_settings import SettingsConfigDict

from .auth import ApiKeyAuth
from .base import IntegrationClient
from .errors import ConfigurationError, NotFoundError, ValidationError
from .models import VendorModel
from .settings import IntegrationSettings
from .transport import HttpTransport

logger = logging.getLogger(__name__)

MAX_MESSAGE_CONTENT_LENGTH = 2000
MAX_EMBEDS_PER_MESSAGE = 10
MAX_EMBED_TOTAL_CHARACTERS = 6000

WEBHOOK_URL_PATTERN = re.compile(
    r"discord(?:app)?\.com/api(?:/v\d+)?/webhooks/(?P<id>\d+)/(?P<token>[\w-]+)"
)
# Path segments whose following id is a major parameter and keeps its own bucket
MAJOR_PARAMETERS = {"channels", "guilds", "webhooks"}


class DiscordSettings(IntegrationSettings):
    """Discord settings (``DISCORD_`` environment prefix)."""

    model_config = SettingsConfigDict(env_prefix="DISCORD_", env_file=".env", extra="ignore")

    base_url: str = Field(default="https://discord.com/api/v10")
    bot_token: Optional[str] = Field(default=None, description="Bot token")
    default_webhook_url: Optional[str] = Field(default=None)
    channel_routes: Dict[str, str] = Field(
        default_factory=dict, description="Named channel routes, name -> channel id"
    )
    max_rate_limit_wait: float = Field(
        default=60.0, description="Longest a request waits for its rate limit bucket"
    )

    def collect_issues(self) -> List[str]:
        issues = super().collect_issues()
        if not self.bot_token and not self.default_webhook_url:
            issues.append("Discord needs a bot_token or a default_webhook_url")
        if self.default_webhook_url and not WEBHOOK_URL_PATTERN.search(self.default_webhook_url):
            issues.append("default_webhook_url is not a Discord webhook URL")
        for name, channel_id in self.channel_routes.items():
            if not channel_id.isdigit():
                issues.append(f"Channel route {name!r} must map to a numeric channel id")
        return issues


def parse_webhook_url(url: str) -> Tuple[str, str]:
    """Return (webhook id, webhook token) from a webhook URL."""
    match = WEBHOOK_URL_PATTERN.search(url)
    if not match:
        raise ValidationError("Invalid Discord webhook URL", provider="discord")
    return match.group("id"), match.group("token")


class EmbedField(VendorModel):
    name: str
    value: str
    inline: Optional[bool] = None


class Embed(VendorModel):
    title: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    color: Optional[int] = None
    timestamp: Optional[str] = None
    fields: List[EmbedField] = Field(default_factory=list)
    footer: Optional[Dict[str, Any]] = None
    author: Optional[Dict[str, Any]] = None
    image: Optional[Dict[str, Any]] = None
    thumbnail: Optional[Dict[str, Any]] = None

    def character_count(self) -> int:
        """Characters counted against the 6000 character embed limit."""
        total = len(self.title or "") + len(self.description or "")
        for item in self.fields:
            total += len(item.name) + len(item.value)
        total += len((self.footer or {}).get("text", ""))
        total += len((self.author or {}).get("name", ""))
        return total


class Message(VendorModel):
    id: str
    channel_id: Optional[str] = None
    content: str = ""
    embeds: List[Dict[str, Any]] = Field(default_factory=list)
    author: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    edited_timestamp: Optional[str] = None
    webhook_id: Optional[str] = None


class Channel(VendorModel):
    id: str
    type: int = 0
    name: Optional[str] = None
    guild_id: Optional[str] = None
    parent_id: Optional[str] = None


EmbedInput = Union[Embed, Dict[str, Any]]


def _embeds(embeds: Optional[Sequence[EmbedInput]]) -> List[Embed]:
    return [e if isinstance(e, Embed) else Embed.model_validate(e) for e in embeds or []]


def validate_message(content: Optional[str], embeds: Sequence[Embed]):
    """Apply Discord's content and embed limits before sending."""
    errors = []
    if content is not None and len(content) > MAX_MESSAGE_CONTENT_LENGTH:
        errors.append(f"Content exceeds {MAX_MESSAGE_CONTENT_LENGTH} characters")
    if len(embeds) > MAX_EMBEDS_PER_MESSAGE:
        errors.append(f"Too many embeds (max {MAX_EMBEDS_PER_MESSAGE})")
    if sum(embed.character_count() for embed in embeds) > MAX_EMBED_TOTAL_CHARACTERS:
        errors.append(f"Embed total characters exceed {MAX_EMBED_TOTAL_CHARACTERS}")
    if errors:
        raise ValidationError("; ".join(errors), validation_errors=errors, provider="discord")


def route_key(method: str, path: str) -> str:
    """
    Bucket route for a request path.

    Ids are collapsed to ``:id`` except the major parameter that follows
    ``channels``, ``guilds`` or ``webhooks`` (and a webhook's token).
    """
    segments = [s for s in path.split("/") if s]
    # Drop the /api/v10 prefix when the path is absolute
    if len(segments) >= 2 and segments[0] == "api" and segments[1].startswith("v"):
        segments = segments[2:]
    route = []
    for index, segment in enumerate(segments):
        previous = segments[index - 1] if index else ""
        before_previous = segments[index - 2] if index > 1 else ""
        if previous in MAJOR_PARAMETERS:
            route.append(segment)
        elif before_previous == "webhooks":
            route.append(segment)
        elif previous == "reactions":
            route.append(":emoji")
        elif segment.isdigit():
            route.append(":id")
        else:
            route.append(segment)
    return f"{method.upper()} /{'/'.join(route)}"


@dataclass
class BucketState:
    remaining: int = 1
    reset_at: float = 0.0


class DiscordRateLimiter:
    """
    Per-route bucket tracking driven by ``X-RateLimit-*`` headers.

    Routes map to the bucket id Discord reports, so routes sharing a bucket
    share its remaining count. A global 429 pauses every route.
    """

    def __init__(self, max_wait: float = 60.0):
        self.max_wait = max_wait
        self._route_buckets: Dict[str, str] = {}
        self._buckets: Dict[str, BucketState] = {}
        self._global_reset_at = 0.0
        self.lock = asyncio.Lock()
        self.waits = 0

    def _bucket_for(self, route: str) -> BucketState:
        bucket_id = self._route_buckets.get(route, route)
        return self._buckets.setdefault(bucket_id, BucketState())

    def delay_for(self, route: str, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        delay = max(0.0, self._global_reset_at - now)
        bucket = self._bucket_for(route)
        if bucket.remaining <= 0 and bucket.reset_at > now:
            delay = max(delay, bucket.reset_at - now)
        return delay

    def _take(self, route: str):
        bucket = self._bucket_for(route)
        if bucket.reset_at <= time.monotonic():
            bucket.remaining = max(bucket.remaining, 1)
        bucket.remaining -= 1

    async def acquire(self, route: str):
        """Wait for ``route``'s bucket, then take one request from it."""
        async with self.lock:
            delay = self.delay_for(route)
            if delay <= 0:
                self._take(route)
                return
            self.waits += 1

        # Sleep outside the lock; other buckets are not blocked
        logger.info("Discord rate limit: waiting %.2fs for %s", delay, route)
        await asyncio.sleep(min(delay, self.max_wait))
        async with self.lock:
            self._take(route)

    def update(self, route: str, headers: httpx.Headers, status_code: int):
        now = time.monotonic()
        bucket_id = headers.get("x-ratelimit-bucket")
        if bucket_id:
            self._route_buckets[route] = bucket_id
        bucket = self._bucket_for(route)

        remaining = headers.get("x-ratelimit-remaining")
        reset_after = headers.get("x-ratelimit-reset-after")
        if remaining is not None:
            bucket.remaining = int(remaining)
        if reset_after is not None:
            bucket.reset_at = now + float(reset_after)

        if status_code == 429:
            retry_after = float(headers.get("retry-after") or reset_after or 1.0)
            if headers.get("x-ratelimit-global", "").lower() == "true":
                self._global_reset_at = now + retry_after
                logger.warning("Discord global rate limit hit, pausing %.2fs", retry_after)
            else:
                bucket.remaining = 0
                bucket.reset_at = now + retry_after

    def get_stats(self) -> Dict[str, Any]:
        return {
            "buckets": len(self._buckets),
            "routes": len(self._route_buckets),
            "waits": self.waits,
            "global_limited": self._global_reset_at > time.monotonic(),
        }


class DiscordClient(IntegrationClient):
    """Discord webhook and bot REST client."""

    provider = "discord"
    settings_class = DiscordSettings

    def __init__(
        self,
        settings: DiscordSettings,
        http: HttpTransport,
        rate_limiter: Optional[DiscordRateLimiter] = None,
    ):
        super().__init__(settings, http)
        self.rate_limiter = rate_limiter or DiscordRateLimiter(settings.max_rate_limit_wait)
        hooks = self.http.client.event_hooks
        hooks["request"].append(self._before_request)
        hooks["response"].append(self._after_response)
        self.http.client.event_hooks = hooks

    @classmethod
    def from_settings(
        cls,
        settings: DiscordSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **kwargs,
    ) -> "DiscordClient":
        settings.validate_configuration()
        auth = None
        if settings.bot_token:
            auth = ApiKeyAuth(settings.bot_token, header="Authorization", prefix="Bot")
        http = HttpTransport.from_settings(
            settings, cls.provider, auth=auth, transport=transport, **kwargs
        )
        return cls(settings, http)

    async def _before_request(self, request: httpx.Request):
        await self.rate_limiter.acquire(route_key(request.method, request.url.path))

    async def _after_response(self, response: httpx.Response):
        request = response.request
        self.rate_limiter.update(
            route_key(request.method, request.url.path), response.headers, response.status_code
        )

    def _require_bot(self):
        if not self.settings.bot_token:
            raise ConfigurationError("This operation needs a bot_token", provider=self.provider)

    def resolve_channel(self, channel: str) -> str:
        """Accept a channel id or a named route from ``channel_routes``."""
        if channel.isdigit():
            return channel
        channel_id = self.settings.channel_routes.get(channel)
        if not channel_id:
            raise ValidationError(f"Unknown channel route: {channel}", provider=self.provider)
        return channel_id

    def _webhook(self, url: Optional[str]) -> Tuple[str, str]:
        url = url or self.settings.default_webhook_url
        if not url:
            raise ConfigurationError("No webhook URL configured", provider=self.provider)
        return parse_webhook_url(url)

    @staticmethod
    def _message_body(
        content: Optional[str],
        embeds: List[Embed],
        components: Optional[Sequence[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if content is not None:
            body["content"] = content
        if embeds:
            body["embeds"] = [embed.to_payload() for embed in embeds]
        if components:
            body["components"] = list(components)
        return body

    # Webhooks

    async def execute_webhook(
        self,
        content: Optional[str] = None,
        embeds: Optional[Sequence[EmbedInput]] = None,
        username: Optional[str] = None,
        avatar_url: Optional[str] = None,
        components: Optional[Sequence[Dict[str, Any]]] = None,
        wait: bool = False,
        thread_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> Optional[Message]:
        """Post through a webhook; the created message is returned only with ``wait``."""
        webhook_id, token = self._webhook(url)
        embed_models = _embeds(embeds)
        if content is None and not embed_models:
            raise ValidationError("Webhook messages need content or embeds", provider=self.provider)
        validate_message(content, embed_models)

        body = self._message_body(content, embed_models, components)
        if username:
            body["username"] = username
        if avatar_url:
            body["avatar_url"] = avatar_url

        response = await self.http.request(
            "POST",
            f"/webhooks/{webhook_id}/{token}",
            params={"wait": "true" if wait else None, "thread_id": thread_id},
            json=body,
            auth=httpx.Auth(),
            operation="execute_webhook",
            retry=False,
        )
        logger.info("Webhook %s executed", webhook_id)
        if wait and response.content:
            return Message.model_validate(response.json())
        return None

    async def edit_webhook_message(
        self,
        message_id: str,
        content: Optional[str] = None,
        embeds: Optional[Sequence[EmbedInput]] = None,
        url: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> Message:
        webhook_id, token = self._webhook(url)
        embed_models = _embeds(embeds)
        validate_message(content, embed_models)
        data = await self.http.request_json(
            "PATCH",
            f"/webhooks/{webhook_id}/{token}/messages/{message_id}",
            params={"thread_id": thread_id},
            json=self._message_body(content, embed_models, None),
            auth=httpx.Auth(),
            operation="edit_webhook_message",
        )
        return Message.model_validate(data)

    async def delete_webhook_message(
        self, message_id: str, url: Optional[str] = None, thread_id: Optional[str] = None
    ):
        webhook_id, token = self._webhook(url)
        await self.http.request(
            "DELETE",
            f"/webhooks/{webhook_id}/{token}/messages/{message_id}",
            params={"thread_id": thread_id},
            auth=httpx.Auth(),
            operation="delete_webhook_message",
        )

    # Messages

    async def send_message(
        self,
        channel: str,
        content: Optional[str] = None,
        embeds: Optional[Sequence[EmbedInput]] = None,
        components: Optional[Sequence[Dict[str, Any]]] = None,
        reply_to: Optional[str] = None,
        mention_replied_user: Optional[bool] = None,
    ) -> Message:
        self._require_bot()
        channel_id = self.resolve_channel(channel)
        embed_models = _embeds(embeds)
        if content is None and not embed_models and not components:
            raise ValidationError(
                "Messages need content, embeds or components", provider=self.provider
            )
        validate_message(content, embed_models)

        body = self._message_body(content, embed_models, components)
        if reply_to:
            body["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
            if mention_replied_user is not None:
                body["allowed_mentions"] = {"replied_user": mention_replied_user}

        data = await self.http.request_json(
            "POST",
            f"/channels/{channel_id}/messages",
            json=body,
            operation="send_message",
            retry=False,
        )
        message = Message.model_validate(data)
        logger.info("Sent message %s to channel %s", message.id, channel_id)
        return message

    async def edit_message(
        self,
        channel: str,
        message_id: str,
        content: Optional[str] = None,
        embeds: Optional[Sequence[EmbedInput]] = None,
    ) -> Message:
        self._require_bot()
        channel_id = self.resolve_channel(channel)
        embed_models = _embeds(embeds)
        validate_message(content, embed_models)
        data = await self.http.request_json(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            json=self._message_body(content, embed_models, None),
            operation="edit_message",
        )
        return Message.model_validate(data)

    async def delete_message(self, channel: str, message_id: str):
        """Delete a message; an already deleted message is not an error."""
        self._require_bot()
        channel_id = self.resolve_channel(channel)
        try:
            await self.http.request(
                "DELETE",
                f"/channels/{channel_id}/messages/{message_id}",
                operation="delete_message",
            )
        except NotFoundError:
            logger.debug("Message %s already deleted", message_id)

    async def add_reaction(self, channel: str, message_id: str, emoji: str):
        self._require_bot()
        channel_id = self.resolve_channel(channel)
        await self.http.request(
            "PUT",
            f"/channels/{channel_id}/messages/{message_id}/reactions/{quote(emoji, safe='')}/@me",
            operation="add_reaction",
        )

    # Channels

    async def create_thread(
        self,
        channel: str,
        name: str,
        message_id: Optional[str] = None,
        auto_archive_duration: int = 1440,
        thread_type: Optional[int] = None,
        invitable: Optional[bool] = None,
    ) -> Channel:
        self._require_bot()
        if not 1 <= len(name) <= 100:
            raise ValidationError("Thread name must be 1-100 characters", provider=self.provider)
        if auto_archive_duration not in (60, 1440, 4320, 10080):
            raise ValidationError(
                "auto_archive_duration must be 60, 1440, 4320 or 10080", provider=self.provider
            )
        channel_id = self.resolve_channel(channel)
        body: Dict[str, Any] = {"name": name, "auto_archive_duration": auto_archive_duration}
        if thread_type is not None:
            body["type"] = thread_type
        if invitable is not None:
            body["invitable"] = invitable
        path = (
            f"/channels/{channel_id}/messages/{message_id}/threads"
            if message_id
            else f"/channels/{channel_id}/threads"
        )
        data = await self.http.request_json(
            "POST", path, json=body, operation="create_thread", retry=False
        )
        return Channel.model_validate(data)

    async def send_to_thread(self, thread_id: str, **kwargs) -> Message:
        return await self.send_message(thread_id, **kwargs)

    async def send_dm(self, user_id: str, **kwargs) -> Message:
        """Open (or reuse) the DM channel with a user and send to it."""
        self._require_bot()
        data = await self.http.request_json(
            "POST", "/users/@me/channels", json={"recipient_id": user_id}, operation="create_dm"
        )
        dm_channel = Channel.model_validate(data)
        return await self.send_message(dm_channel.id, **kwargs)

    async def get_channel(self, channel: str) -> Channel:
        self._require_bot()
        data = await self.http.request_json(
            "GET",
            f"/channels/{self.resolve_channel(channel)}",
            operation="get_channel",
            cache_ttl=self.settings.cache_ttl_seconds,
        )
        return Channel.model_validate(data)

    async def _ping(self):
        if self.settings.bot_token:
            data = await self.http.request_json("GET", "/users/@me", operation="get_current_user")
            return {"user": data.get("username")}
        webhook_id, token = self._webhook(None)
        data = await self.http.request_json(
            "GET", f"/webhooks/{webhook_id}/{token}", auth=httpx.Auth(), operation="get_webhook"
        )
        return {"webhook": data.get("name")}
