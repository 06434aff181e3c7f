"""Content-addressed storage pinning (Pinata / IPFS)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import httpx

from .config import Settings
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PinResult:
    content_id: str
    uri: str
    size: int | None = None


class Pinner(Protocol):
    async def pin(self, payload: Any, name: str, tags: Mapping[str, Any] | None = None) -> PinResult: ...


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or "storage service error"

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("details") or error.get("reason") or error)
        if error:
            return str(error)
    return "storage service error"


class PinataClient:
    def __init__(
        self,
        jwt: str,
        api_url: str = "https://api.pinata.cloud",
        gateway_url: str = "https://gateway.pinata.cloud",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.jwt = jwt
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PinataClient":
        return cls(
            jwt=settings.pinata_jwt,
            api_url=settings.pinata_api_url,
            gateway_url=settings.ipfs_gateway_url,
            timeout=settings.storage_timeout_seconds,
        )

    def gateway_link(self, content_id: str) -> str:
        return f"{self.gateway_url}/ipfs/{content_id}"

    async def pin(self, payload: Any, name: str, tags: Mapping[str, Any] | None = None) -> PinResult:
        if not self.jwt:
            raise ExternalServiceError("storage", "PINATA_JWT is not configured")

        body = {
            "pinataContent": payload,
            "pinataMetadata": {
                "name": name,
                "keyvalues": {k: v if isinstance(v, (int, float)) else str(v) for k, v in (tags or {}).items()},
            },
            "pinataOptions": {"cidVersion": 1},
        }
        logger.info("Pinning %s (%d bytes)", name, len(json.dumps(payload, default=str)))

        try:
            async with httpx.AsyncClient(
                base_url=self.api_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    "/pinning/pinJSONToIPFS",
                    json=body,
                    headers={"Authorization": f"Bearer {self.jwt}"},
                )
            response.raise_for_status()
        except httpx.RequestError as exc:
            raise ExternalServiceError("storage", f"unable to contact pinning service ({exc})") from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                "storage",
                f"HTTP {exc.response.status_code}: {_extract_error_detail(exc.response)}",
                status_code=exc.response.status_code,
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalServiceError("storage", "pinning service returned invalid JSON") from exc

        content_id = data.get("IpfsHash") if isinstance(data, dict) else None
        if not isinstance(content_id, str) or not content_id:
            raise ExternalServiceError("storage", "pinning response did not contain IpfsHash")

        size = data.get("PinSize")
        logger.info("Pinned %s as %s", name, content_id)
        return PinResult(content_id=content_id, uri=f"ipfs://{content_id}", size=size if isinstance(size, int) else None)
