"""
IPFS document store — the content-addressed home of batch documents.

Talks to an IPFS HTTP API node (``/api/v0/add``, ``/api/v0/version``) with
httpx. Bytes are stored as given and never interpreted; the returned CID is
what the ledger keeps as a batch's document reference.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from common.errors import DocumentStoreError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds


class IpfsDocumentStore:

    def __init__(
        self,
        api_url: str,
        gateway_url: str = "https://ipfs.io/ipfs/",
        timeout: float = REQUEST_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self._client = httpx.Client(base_url=self.api_url, timeout=timeout, transport=transport)

    def put(self, data: bytes, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Store ``data``; returns its CID."""
        filename = (metadata or {}).get("filename", "document")
        try:
            resp = self._client.post(
                "/api/v0/add",
                params={"pin": "true", "cid-version": "1"},
                files={"file": (filename, data)},
            )
            resp.raise_for_status()
            cid = resp.json()["Hash"]
        except httpx.TimeoutException:
            logger.error("IPFS upload timed out (%d bytes)", len(data))
            raise DocumentStoreError("IPFS upload timed out")
        except httpx.HTTPStatusError as e:
            logger.error("IPFS HTTP error %s on upload", e.response.status_code)
            raise DocumentStoreError(f"IPFS upload failed with HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error("IPFS network error: %s", e)
            raise DocumentStoreError("IPFS service unavailable")
        except (KeyError, TypeError, ValueError):
            logger.error("IPFS returned an unexpected add response")
            raise DocumentStoreError("IPFS returned an unexpected response")

        logger.info("Stored %s in IPFS: cid=%s size=%d", filename, cid, len(data))
        return cid

    def put_json(self, obj: Any, filename: str = "metadata.json") -> str:
        body = json.dumps(obj, separators=(",", ":"), default=str).encode("utf-8")
        return self.put(body, {"filename": filename})

    def url_for(self, cid: str) -> str:
        return self.gateway_url + cid

    def ping(self) -> bool:
        try:
            resp = self._client.post("/api/v0/version")
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("IPFS ping failed: %s", e)
            return False

    def close(self) -> None:
        self._client.close()
