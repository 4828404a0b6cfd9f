"""Seal propagation engine.

Sealing hides a record from every surface ordinary family members can reach.
For a safety request the engine finds every record tagged with the request's
id across the sealable collections (see `registry.SEALABLE`) and flips them to
sealed, chunk by chunk. A manual path seals an explicit list of entries.

Both paths read every target before writing anything:

- a listed entry that does not exist aborts with not-found
- an entry belonging to another family aborts with failed-precondition. An
  entry with no family at all is accepted only if it is tagged with the
  request being sealed (records written before the request had a family)
- entries that are already sealed are skipped and counted separately

Unsealing is the legal path. Every listed entry must exist and be sealed
before any write happens; asking to unseal something that is not sealed is an
error, not a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .audit import AuditWriter, Clock, utc_now
from .chunked import PartialChunkFailure, apply_in_chunks
from .errors import FAILED_PRECONDITION, NOT_FOUND, escape_error
from .metrics import record_sealed, record_unsealed
from .registry import SEALABLE, SealReason, is_sealable
from .store import Document, DocumentStore, WriteBatch

logger = logging.getLogger("escape_gateway.sealing")

SEAL_SUMMARY_ACTION = "escape-audit-entries-seal"
UNSEAL_SUMMARY_ACTION = "audit-entries-unseal"

CROSS_FAMILY_MESSAGE = "One or more entries do not belong to the specified family"


@dataclass(frozen=True)
class EntryRef:
    collection: str
    id: str

    def path(self) -> str:
        return f"{self.collection}/{self.id}"


def _group(docs: Iterable[Document]) -> Dict[str, List[Document]]:
    out: Dict[str, List[Document]] = {}
    for d in docs:
        out.setdefault(d.collection, []).append(d)
    return out


def _owned_by(doc: Document, request_id: str, family_id: str) -> bool:
    owner = doc.data.get("familyId")
    if owner is None:
        return doc.data.get("safetyRequestId") == request_id
    return owner == family_id


def _dedupe(refs: Sequence[EntryRef]) -> List[EntryRef]:
    seen = set()
    out = []
    for r in refs:
        if r not in seen:
            seen.add(r)
            out.append(r)
    return out


class SealEngine:
    def __init__(
        self,
        store: DocumentStore,
        audit: AuditWriter,
        chunk_size: Optional[int] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.chunk_size = chunk_size or store.batch_limit
        self.clock = clock

    # ---------------------------
    # Seal
    # ---------------------------

    async def discover(self, request_id: str) -> List[Document]:
        """Every record in a sealable collection tagged with this request."""
        found: List[Document] = []
        for target in SEALABLE.values():
            found.extend(
                await self.store.query(target.collection.value, [(target.request_field, "==", request_id)])
            )
        return found

    async def seal(
        self,
        request_id: str,
        family_id: str,
        actor_id: Optional[str],
        seal_reason: str = SealReason.ESCAPE_ACTION.value,
        reason: str = "",
    ) -> Dict[str, Any]:
        docs = await self.discover(request_id)
        return await self._seal_docs(docs, request_id, family_id, actor_id, seal_reason, reason)

    async def seal_entries(
        self,
        refs: Sequence[EntryRef],
        request_id: str,
        family_id: str,
        actor_id: Optional[str],
        seal_reason: str = SealReason.MANUAL.value,
        reason: str = "",
    ) -> Dict[str, Any]:
        docs: List[Document] = []
        for ref in _dedupe(refs):
            if not is_sealable(ref.collection):
                raise escape_error(FAILED_PRECONDITION, f"Collection is not sealable: {ref.collection}")
            data = await self.store.get(ref.collection, ref.id)
            if data is None:
                raise escape_error(NOT_FOUND, f"Not found: {ref.path()}")
            docs.append(Document(ref.collection, ref.id, data))
        return await self._seal_docs(docs, request_id, family_id, actor_id, seal_reason, reason)

    async def _seal_docs(
        self,
        docs: List[Document],
        request_id: str,
        family_id: str,
        actor_id: Optional[str],
        seal_reason: str,
        reason: str,
    ) -> Dict[str, Any]:
        # Validate everything before the first write.
        for d in docs:
            if not _owned_by(d, request_id, family_id):
                raise escape_error(FAILED_PRECONDITION, CROSS_FAMILY_MESSAGE)

        pending = [d for d in docs if d.data.get("sealed") is not True]
        already_sealed = len(docs) - len(pending)

        sealed_at = self.clock().isoformat()
        fields = {
            "sealed": True,
            "sealedAt": sealed_at,
            "sealedBy": actor_id,
            "sealReason": str(seal_reason),
            "safetyRequestId": request_id,
        }

        def stage(batch: WriteBatch, doc: Document) -> None:
            if doc.data.get("familyId") is None:
                # Written before the request had a family; adopt it now.
                batch.update(doc.collection, doc.id, dict(fields, familyId=family_id))
            else:
                batch.update(doc.collection, doc.id, fields)

        by_collection: Dict[str, int] = {}
        total = 0
        for collection, group in _group(pending).items():
            try:
                applied = await apply_in_chunks(self.store, group, stage, self.chunk_size)
            except PartialChunkFailure as e:
                raise PartialChunkFailure(total + e.total_applied, e.failed_chunk, e.cause) from e.cause
            by_collection[collection] = applied
            total += applied
            record_sealed(collection, applied)

        await self.audit.append(
            action=SEAL_SUMMARY_ACTION,
            resource_type="safety-request",
            resource_id=request_id,
            performed_by=actor_id,
            family_id=family_id,
            safety_request_id=request_id,
            seal_reason=str(seal_reason),
            details={
                "totalSealed": total,
                "byCollection": by_collection,
                "alreadySealed": already_sealed,
                "safetyRequestId": request_id,
                "reason": reason,
                "sealReason": str(seal_reason),
            },
        )
        logger.info("sealed %d records (%d already sealed)", total, already_sealed)
        return {
            "totalSealed": total,
            "byCollection": by_collection,
            "alreadySealed": already_sealed,
            "sealedAt": sealed_at,
        }

    # ---------------------------
    # Unseal
    # ---------------------------

    async def unseal(
        self,
        refs: Sequence[EntryRef],
        actor_id: Optional[str],
        legal_justification: str,
        court_order_reference: str,
        case_number: Optional[str] = None,
        requesting_party: Optional[str] = None,
    ) -> Dict[str, Any]:
        targets: List[Tuple[EntryRef, Dict[str, Any]]] = []
        for ref in _dedupe(refs):
            data = await self.store.get(ref.collection, ref.id)
            if data is None:
                raise escape_error(NOT_FOUND, f"Not found: {ref.path()}")
            if data.get("sealed") is not True:
                raise escape_error(NOT_FOUND, f"Not sealed: {ref.path()}")
            targets.append((ref, data))

        unsealed_at = self.clock().isoformat()
        fields = {
            "sealed": False,
            "unsealedAt": unsealed_at,
            "unsealedBy": actor_id,
            "courtOrderReference": court_order_reference,
        }

        def stage(batch: WriteBatch, ref: EntryRef) -> None:
            batch.update(ref.collection, ref.id, fields)

        grouped: Dict[str, List[EntryRef]] = {}
        for ref, _ in targets:
            grouped.setdefault(ref.collection, []).append(ref)

        by_collection: Dict[str, int] = {}
        total = 0
        for collection, group in grouped.items():
            try:
                applied = await apply_in_chunks(self.store, group, stage, self.chunk_size)
            except PartialChunkFailure as e:
                raise PartialChunkFailure(total + e.total_applied, e.failed_chunk, e.cause) from e.cause
            by_collection[collection] = applied
            total += applied
            record_unsealed(collection, applied)

        # One summary per family, so each family's sealed reads surface it.
        by_family: Dict[Optional[str], List[EntryRef]] = {}
        for ref, d in targets:
            by_family.setdefault(d.get("familyId") or None, []).append(ref)
        family_ids = sorted(f for f in by_family if f is not None)
        for family_id, family_refs in by_family.items():
            await self.audit.append(
                action=UNSEAL_SUMMARY_ACTION,
                resource_type="audit-entries",
                resource_id=court_order_reference,
                performed_by=actor_id,
                family_id=family_id,
                seal_reason=SealReason.MANUAL.value,
                details={
                    "affectedFamilyIds": family_ids,
                    "entries": [{"collection": r.collection, "id": r.id} for r in family_refs],
                    "familyUnsealed": len(family_refs),
                    "totalUnsealed": total,
                    "unsealedByCollection": by_collection,
                    "legalJustification": legal_justification,
                    "courtOrderReference": court_order_reference,
                    "caseNumber": case_number,
                    "requestingParty": requesting_party,
                },
            )
        logger.info("unsealed %d records", total)
        return {
            "unsealed": total,
            "unsealedByCollection": by_collection,
            "unsealedAt": unsealed_at,
            "courtOrderReference": court_order_reference,
        }
