from __future__ import annotations
import logging
from typing import Any, Dict

import httpx

from namesync.config import Settings
from namesync.errors import PermanentError, TransientError

log = logging.getLogger(__name__)


class MetadataClient:
    """Reads name metadata (description, image, attributes, resolver) from the metadata service."""

    def __init__(self, settings: Settings, client: httpx.Client = None):
        self.base_url = settings.METADATA_URL.rstrip("/")
        self.contract = settings.METADATA_CONTRACT
        self.client = client or httpx.Client(timeout=settings.METADATA_TIMEOUT, follow_redirects=True)

    def fetch(self, token_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/{self.contract}/{token_id}"
        try:
            resp = self.client.get(url)
        except httpx.TransportError as e:
            raise TransientError(f"metadata service unreachable: {e}") from e
        if resp.status_code == 404:
            raise PermanentError(f"no metadata for token {token_id}")
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"metadata service returned {resp.status_code}")
        resp.raise_for_status()
        return resp.json()

    def close(self) -> None:
        self.client.close()
