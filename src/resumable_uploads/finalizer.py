"""
Finalizer.

Builds the canonical manifest from a session's receipts and issues the
single combine request that commits the assembled object.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .errors import FinalizeError
from .models import ChunkPlan, ChunkReceipt, FinalizeResult, ManifestEntry, ReceiptStatus, UploadStatus
from .session import UploadSession

__all__ = ["Finalizer", "build_manifest"]

logger = logging.getLogger(__name__)


def build_manifest(plan: ChunkPlan, receipts: Iterable[ChunkReceipt], *, session_id: Optional[str] = None) -> List[ManifestEntry]:
    """
    Canonical manifest: one entry per planned chunk, ascending by index.

    Receipts may arrive in any order; the combine operation is order
    sensitive, so sorting here is mandatory.

    Raises:
        FinalizeError: If any planned chunk lacks an acknowledged receipt,
            or a receipt does not belong to the plan
    """
    tokens = {}
    for receipt in receipts:
        if receipt.status is not ReceiptStatus.ACKED:
            continue
        if not 0 <= receipt.index < len(plan):
            raise FinalizeError(
                f"Receipt for chunk {receipt.index} is outside the plan of {len(plan)} chunks",
                session_id=session_id,
                chunk_index=receipt.index,
            )
        tokens[receipt.index] = receipt.token

    missing = [descriptor.index for descriptor in plan if descriptor.index not in tokens]
    if missing:
        raise FinalizeError(
            f"Cannot finalize: {len(missing)} of {len(plan)} chunks not acknowledged (first missing: {missing[0]})",
            session_id=session_id,
            chunk_index=missing[0],
        )
    return [ManifestEntry(index=index, token=tokens[index]) for index in sorted(tokens)]


class Finalizer:
    """Commits a fully transferred chunked session through its backend."""

    def __init__(self, backend) -> None:
        self.backend = backend

    async def finalize(self, session: UploadSession, attempt: int = 0) -> FinalizeResult:
        """
        Combine every acknowledged chunk into one object.

        Args:
            session: A session in TRANSFERRING whose receipts cover the plan
            attempt: Attempt number, used for authorization correlation ids

        Returns:
            FinalizeResult echoed by the storage service

        Raises:
            FinalizeError: If the precondition does not hold
            ProtocolMismatchError: If the service addressed another bucket or key
        """
        manifest = build_manifest(session.plan, session.receipts, session_id=session.session_id)
        session.transition(UploadStatus.FINALIZING)
        logger.info(f"Finalizing {session.session_id}: combining {len(manifest)} chunks")
        result = await self.backend.combine(session, manifest, attempt)
        session.transition(UploadStatus.COMPLETE)
        logger.info(f"Upload {session.session_id} complete: {result.bucket}/{result.key}")
        return result
