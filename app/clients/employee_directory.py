"""
Employee Directory client — resolves a collaborator id to display fields.

Lookups are decoration only: any failure (timeout, connection error, non-2xx,
malformed body) is logged and reported as "unknown" so the calling operation
proceeds with empty display fields. After the first transport failure the
directory is treated as unavailable for the rest of the instance's life, so
a slow directory costs one timeout per HTTP request, not one per row.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollaboratorInfo:
    name: str
    registration_number: str | None = None


class EmployeeDirectory:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.EMPLOYEE_DIRECTORY_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.EMPLOYEE_DIRECTORY_TIMEOUT_SECONDS
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._cache: dict[uuid.UUID, CollaboratorInfo | None] = {}
        self._unavailable = False

    @property
    def enabled(self) -> bool:
        return bool(self.base_url) and not self._unavailable

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def lookup(self, collaborator_id: uuid.UUID) -> CollaboratorInfo | None:
        if not self.enabled:
            return None
        if collaborator_id in self._cache:
            return self._cache[collaborator_id]

        info: CollaboratorInfo | None = None
        try:
            resp = await self._get_client().get(f"/employees/{collaborator_id}")
            if resp.status_code == 404:
                logger.info("Collaborator %s not found in directory", collaborator_id)
            else:
                resp.raise_for_status()
                body = resp.json()
                info = CollaboratorInfo(
                    name=str(body["name"]),
                    registration_number=body.get("registration_number"),
                )
        except httpx.TransportError as e:
            self._unavailable = True
            logger.warning(
                "Employee directory unreachable, skipping further lookups: %s", e
            )
            return None
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Employee directory lookup failed for %s: %s", collaborator_id, e)

        self._cache[collaborator_id] = info
        return info

    async def lookup_many(
        self, collaborator_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, CollaboratorInfo | None]:
        """Resolve distinct ids concurrently."""
        unique = list(dict.fromkeys(collaborator_ids))
        if not self.enabled or not unique:
            return {cid: None for cid in unique}
        results = await asyncio.gather(
            *(self.lookup(cid) for cid in unique), return_exceptions=True
        )
        resolved: dict[uuid.UUID, CollaboratorInfo | None] = {}
        for cid, result in zip(unique, results):
            if isinstance(result, BaseException):
                logger.warning("Collaborator enrichment failed for %s: %s", cid, result)
                resolved[cid] = None
            else:
                resolved[cid] = result
        return resolved
