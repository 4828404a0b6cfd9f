"""Shared collaborators handed to every operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .audit import AuditWriter, Clock, utc_now
from .config import EngineConfig
from .sealing import SealEngine
from .signing import AuditSigner
from .store import DocumentStore


@dataclass
class EngineContext:
    store: DocumentStore
    config: EngineConfig = field(default_factory=EngineConfig)
    signer: Optional[AuditSigner] = None
    clock: Clock = utc_now
    audit: AuditWriter = field(init=False)
    sealer: SealEngine = field(init=False)

    def __post_init__(self) -> None:
        self.audit = AuditWriter(self.store, self.signer, self.clock)
        self.sealer = SealEngine(self.store, self.audit, self.config.batch_limit, self.clock)
