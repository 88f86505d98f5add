# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""HTTP boundary to the remote classification service.

Request body::

    {"elements": [CompactDescriptor, ...], "pageUrl": ..., "pageTitle": ..., "chunkSize"?: int}

Accepted response bodies: a bare JSON array of items, or the service
envelope ``{"success": true, "simplified": [...], "processingTime": ...}``.
Everything else (transport error, non-2xx, non-JSON, non-array, or
``success: false``) raises :class:`ServiceError`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import Category, ClassifiedItem, CompactDescriptor, Importance
from .config import DEFAULT_API_ENDPOINT
from .errors import MalformedResponseError, ServiceError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50
DEFAULT_TIMEOUT = 30.0


class Classifier(Protocol):
    """What the pipeline needs from a classification backend."""

    async def classify(
        self,
        batch: Sequence[CompactDescriptor],
        page_title: str,
        page_url: str = "",
        chunk_size: int | None = None,
    ) -> list[ClassifiedItem]: ...


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class ClassifyRequest(BaseModel):
    """Outgoing request body (camelCase on the wire)."""

    elements: list[dict[str, str]]
    page_url: str = Field(default="", serialization_alias="pageUrl")
    page_title: str = Field(default="", serialization_alias="pageTitle")
    chunk_size: int | None = Field(default=None, serialization_alias="chunkSize")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ClassifiedItemModel(BaseModel):
    """One item as returned by the service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    id: str
    original_text: str = Field(default="", alias="originalText")
    simplified_text: str = Field(default="", alias="simplifiedText")
    category: Category
    importance: Importance = Importance.ESSENTIAL

    def to_item(self) -> ClassifiedItem:
        return ClassifiedItem(
            id=self.id,
            original_text=self.original_text,
            simplified_text=self.simplified_text or self.original_text,
            category=self.category,
            importance=self.importance,
        )


def _unwrap_items(body: Any) -> list[Any]:
    """Return the raw item list from a bare array or a service envelope."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        if body.get("success") is False:
            raise ServiceError(f"Service reported failure: {body.get('error') or 'unknown error'}")
        items = body.get("simplified")
        if isinstance(items, list):
            return items
        raise MalformedResponseError("Response envelope has no 'simplified' array")
    raise MalformedResponseError(f"Response is not an array (got {type(body).__name__})")


def parse_items(body: Any) -> list[ClassifiedItem]:
    """Validate raw items; schema-invalid entries are skipped, not fatal."""
    items: list[ClassifiedItem] = []
    skipped = 0
    for raw in _unwrap_items(body):
        try:
            items.append(ClassifiedItemModel.model_validate(raw).to_item())
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("Skipped %d malformed item(s) in classification response", skipped)
    return items


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ClassifierClient:
    """Async client for the classification endpoint.

    The endpoint is looked up through ``endpoint`` on every call so a
    settings change applies to the next request.
    """

    def __init__(
        self,
        endpoint: Callable[[], str] | str = DEFAULT_API_ENDPOINT,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint if callable(endpoint) else (lambda: endpoint)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self.calls = 0

    @property
    def endpoint(self) -> str:
        return self._endpoint()

    async def classify(
        self,
        batch: Sequence[CompactDescriptor],
        page_title: str,
        page_url: str = "",
        chunk_size: int | None = None,
    ) -> list[ClassifiedItem]:
        """Classify one bounded batch.

        Raises:
            ValueError: empty batch or more than MAX_BATCH_SIZE descriptors.
            ServiceError: transport, status, or payload failure.
        """
        if not batch:
            raise ValueError("classify() requires a non-empty batch")
        if len(batch) > MAX_BATCH_SIZE:
            raise ValueError(f"batch of {len(batch)} exceeds the {MAX_BATCH_SIZE}-descriptor limit")

        endpoint = self.endpoint
        body = ClassifyRequest(
            elements=[d.to_dict() for d in batch],
            page_url=page_url,
            page_title=page_title,
            chunk_size=chunk_size,
        ).to_wire()

        self.calls += 1
        logger.debug("Calling classifier: %s (%d elements)", endpoint, len(batch))
        try:
            response = await self._http.post(endpoint, json=body)
        except httpx.HTTPError as e:
            raise ServiceError(f"Transport failure calling {endpoint}: {e}") from e

        if not response.is_success:
            raise ServiceError(
                f"API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            payload = json.loads(response.text)
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON from classifier: {e}") from e

        items = parse_items(payload)
        logger.debug("Classifier returned %d items for %d elements", len(items), len(batch))
        return items

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> ClassifierClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()
