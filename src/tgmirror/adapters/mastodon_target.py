"""Mastodon REST API target adapter.

Implements the core TargetPort with httpx. HTTP failures are translated into
the core error taxonomy so the delivery engine can tell transient attachment
processing and "already deleted" apart from real failures.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from tgmirror.core.errors import AttachmentsProcessingError, TargetError, TargetNotFoundError
from tgmirror.core.models import (
    AttachmentRef,
    Capabilities,
    PollLimits,
    StatusContent,
    TargetPost,
    Visibility,
)

LOGGER = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
UPLOAD_TIMEOUT = 120.0
ATTACHMENTS_PROCESSING_MARKER = "have not finished processing"


def post_from_json(payload: dict[str, Any], source: Optional[dict[str, Any]] = None) -> TargetPost:
    source = source or {}
    return TargetPost(
        id=str(payload["id"]),
        url=payload.get("url"),
        visibility=payload.get("visibility"),
        text=source.get("text", payload.get("text")),
        spoiler_text=source.get("spoiler_text", payload.get("spoiler_text")),
        attachment_ids=[str(a["id"]) for a in payload.get("media_attachments") or []],
    )


def capabilities_from_json(payload: dict[str, Any]) -> Capabilities:
    """Read limits from a /api/v2/instance response."""

    configuration = payload.get("configuration") or {}
    statuses = configuration.get("statuses") or {}
    media = configuration.get("media_attachments") or {}
    polls = configuration.get("polls")
    poll_limits = None
    if polls:
        poll_limits = PollLimits(
            min_duration=int(polls.get("min_expiration", 300)),
            max_duration=int(polls.get("max_expiration", 2629746)),
            max_options=int(polls.get("max_options", 4)),
            max_option_length=int(polls.get("max_characters_per_option", 50)),
        )
    return Capabilities(
        max_content_length=int(statuses.get("max_characters", 500)),
        max_attachments=int(statuses.get("max_media_attachments", 4)),
        per_url_reserved_chars=int(statuses.get("characters_reserved_per_url", 23)),
        max_attachment_bytes_by_kind={
            "image": int(media.get("image_size_limit", 16 * 1024 * 1024)),
            "video": int(media.get("video_size_limit", 99 * 1024 * 1024)),
        },
        supported_mime_types=frozenset(media.get("supported_mime_types") or []),
        poll_limits=poll_limits,
    )


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    body = response.text
    if response.status_code == 404:
        raise TargetNotFoundError(f"Not found: {response.request.url}", response.status_code, body)
    if response.status_code == 422 and ATTACHMENTS_PROCESSING_MARKER in body:
        raise AttachmentsProcessingError("Attachments are still processing", response.status_code, body)
    raise TargetError(f"Mastodon API error {response.status_code}: {body}", response.status_code, body)


class MastodonTarget:
    """Target adapter for one Mastodon account."""

    def __init__(self, instance: str, access_token: str) -> None:
        self.base_url = instance.rstrip("/")
        if not self.base_url.startswith("http"):
            self.base_url = f"https://{self.base_url}"
        self.headers = {"Authorization": f"Bearer {access_token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(
                method,
                f"{self.base_url}{path}",
                headers={**self.headers, **(headers or {})},
                **kwargs,
            )
        _raise_for_status(response)
        if not response.content:
            return None
        return response.json()

    async def get_capabilities(self) -> Capabilities:
        return capabilities_from_json(await self._request("GET", "/api/v2/instance"))

    async def get_account_id(self) -> str:
        account = await self._request("GET", "/api/v1/accounts/verify_credentials")
        LOGGER.info("Logged in as %s (#%s) on %s", account.get("username"), account["id"], self.base_url)
        return str(account["id"])

    async def publish(
        self,
        content: StatusContent,
        reply_to_id: Optional[str],
        attachments: List[AttachmentRef],
        visibility: Visibility,
        language: str,
        idempotency_key: Optional[str] = None,
    ) -> TargetPost:
        payload: dict[str, Any] = {
            "status": content.body,
            "visibility": visibility.value,
            "language": language,
        }
        if content.title:
            payload["spoiler_text"] = content.title
        if reply_to_id:
            payload["in_reply_to_id"] = reply_to_id
        if attachments:
            payload["media_ids"] = [a.id for a in attachments]
        elif content.poll is not None:
            payload["poll"] = {
                "options": content.poll.options,
                "expires_in": content.poll.expires_in,
                "multiple": content.poll.multiple,
            }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return post_from_json(await self._request("POST", "/api/v1/statuses", json=payload, headers=headers))

    async def edit(
        self,
        target_id: str,
        content: StatusContent,
        attachment_ids: List[str],
        language: str,
    ) -> TargetPost:
        payload: dict[str, Any] = {
            "status": content.body,
            "spoiler_text": content.title or "",
            "media_ids": attachment_ids,
            "language": language,
        }
        return post_from_json(await self._request("PUT", f"/api/v1/statuses/{target_id}", json=payload))

    async def get(self, target_id: str) -> TargetPost:
        # The plain-text source is a separate endpoint; the status itself is HTML.
        status = await self._request("GET", f"/api/v1/statuses/{target_id}")
        source = await self._request("GET", f"/api/v1/statuses/{target_id}/source")
        return post_from_json(status, source)

    async def delete(self, target_id: str) -> None:
        await self._request("DELETE", f"/api/v1/statuses/{target_id}")

    async def pin(self, target_id: str) -> TargetPost:
        return post_from_json(await self._request("POST", f"/api/v1/statuses/{target_id}/pin"))

    async def unpin(self, target_id: str) -> TargetPost:
        return post_from_json(await self._request("POST", f"/api/v1/statuses/{target_id}/unpin"))

    async def upload_attachment(
        self, data: bytes, filename: str, description: Optional[str] = None
    ) -> AttachmentRef:
        form = {"description": description} if description else None
        attachment = await self._request(
            "POST",
            "/api/v2/media",
            timeout=UPLOAD_TIMEOUT,
            files={"file": (filename, data)},
            data=form,
        )
        return AttachmentRef(id=str(attachment["id"]), kind=str(attachment.get("type", "unknown")))

    async def list_pinned(self, account_id: str) -> List[TargetPost]:
        statuses = await self._request(
            "GET", f"/api/v1/accounts/{account_id}/statuses", params={"pinned": "true"}
        )
        return [post_from_json(status) for status in statuses or []]
