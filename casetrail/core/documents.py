"""
Document References

Evidence and identity documents live in a content-addressing service;
the workflow only keeps their identifiers. This module holds the
collaborator interface, its in-process implementation, and the
append-only record of which identifiers belong to which actor or case.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from ..db.store import DOCUMENT_REFS, DocumentStore
from ..observability import get_logger
from ..schemas import DocumentOwnerKind, DocumentReference
from .errors import UploadError, ValidationError, translate_store_errors
from .hasher import Hasher

logger = get_logger(__name__)

DEFAULT_CONTENT_GATEWAY = "https://ipfs.io/ipfs/"

# Uploads above this size are refused before reaching the service
MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class ContentAddressingService(ABC):
    """put(data, filename) -> opaque content identifier."""

    @abstractmethod
    async def put(self, data: bytes, filename: Optional[str] = None) -> str:
        """
        Store content and return its identifier.

        Raises:
            UploadError: the content could not be stored
        """
        pass


class InMemoryContentStore(ContentAddressingService):
    """
    Content-addressed blobs held in process memory.

    Identifiers are derived from the SHA-256 of the bytes, so storing
    the same content twice yields the same identifier.
    """

    PREFIX = "sha256-"

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes, filename: Optional[str] = None) -> str:
        if not data:
            raise UploadError("Cannot store empty content")
        content_id = f"{self.PREFIX}{Hasher.hash_bytes(data)}"
        async with self._lock:
            self._blobs.setdefault(content_id, bytes(data))
        return content_id


class DocumentReferenceStore:
    """Additive record of content identifiers per owner."""

    def __init__(
        self,
        store: DocumentStore,
        content: ContentAddressingService,
        gateway_base: Optional[str] = None,
    ):
        self._store = store
        self._content = content
        base = gateway_base or os.getenv("CASETRAIL_CONTENT_GATEWAY", DEFAULT_CONTENT_GATEWAY)
        self._gateway_base = base if base.endswith("/") else base + "/"

    async def upload(self, data: bytes, filename: Optional[str] = None) -> str:
        if len(data) > MAX_UPLOAD_BYTES:
            raise ValidationError(
                f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MB upload limit",
                field="file",
            )
        try:
            content_id = await self._content.put(data, filename)
        except UploadError:
            raise
        except OSError as e:
            raise UploadError(f"Content service unavailable: {e}") from e

        logger.info("Content stored", content_id=content_id, size=len(data), original_name=filename)
        return content_id

    async def record(
        self,
        owner_kind: DocumentOwnerKind,
        owner_id: UUID,
        content_ids: list[str],
        filename: Optional[str] = None,
    ) -> list[DocumentReference]:
        recorded = []
        for content_id in content_ids:
            ref = DocumentReference(
                owner_kind=owner_kind,
                owner_id=owner_id,
                content_id=content_id,
                filename=filename,
            )
            with translate_store_errors(DOCUMENT_REFS):
                doc = await self._store.create(DOCUMENT_REFS, ref.model_dump(mode="json"))
            recorded.append(DocumentReference.model_validate(doc))
        return recorded

    async def list_for(self, owner_kind: DocumentOwnerKind, owner_id: UUID) -> list[DocumentReference]:
        with translate_store_errors(DOCUMENT_REFS):
            docs = await self._store.query(
                DOCUMENT_REFS, owner_kind=owner_kind.value, owner_id=str(owner_id)
            )
        refs = [DocumentReference.model_validate(d) for d in docs]
        refs.sort(key=lambda r: r.created_at)
        return refs

    def gateway_url(self, content_id: str) -> str:
        return f"{self._gateway_base}{content_id}"
