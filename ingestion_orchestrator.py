"""
Shop Floor Update Ingestion — Ingestion Orchestrator

Bridges extraction pipeline → validator → record store.
Responsibilities:
  1. Message ingestion (classify → extract → validate → upsert)
  2. Single-record upsert keyed by business key
  3. Per-key serialization of read-modify-write cycles
  4. Batch upserts with per-item success/failure accounting
  5. Append-only safety compliance logs
"""
from __future__ import annotations
import asyncio
import logging
from collections.abc import Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from config import Settings, get_settings
from extraction_pipeline import UpdateExtractor
from models import (
    EntityKind, IntentType, KEY_FIELDS, RECORD_MODELS, TIMESTAMP_FIELDS,
    PersistenceError, Record, SafetyLog, UpdateError, UpdateValidationError,
)
from validation import (
    ValidatedUpdate, apply_machine_rules, coerce_update, validate_and_default, validate_safety_log,
)

logger = logging.getLogger(__name__)

# ============================================================
# Database Abstraction Layer (Repository Pattern)
# ============================================================

class UpdateRepository:
    """
    Abstract record store keyed by business key. In production, backed by
    asyncpg (see asyncpg_repository.py); implementations are swappable.
    """

    async def find(self, kind: EntityKind, key: str) -> Optional[Record]:
        raise NotImplementedError

    async def create(self, kind: EntityKind, record: Record) -> Record:
        raise NotImplementedError

    async def update(self, kind: EntityKind, key: str, patch: dict[str, Any]) -> Record:
        raise NotImplementedError

    async def list_records(self, kind: EntityKind) -> list[Record]:
        raise NotImplementedError

    async def append_safety_log(self, log: SafetyLog) -> SafetyLog:
        raise NotImplementedError

    async def list_safety_logs(self, area_name: Optional[str] = None,
                               limit: int = 100) -> list[SafetyLog]:
        raise NotImplementedError


# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

class InMemoryRepository(UpdateRepository):
    """In-memory implementation for testing without a database."""

    def __init__(self):
        self.records: dict[EntityKind, dict[str, Record]] = {kind: {} for kind in EntityKind}
        self.safety_logs: list[SafetyLog] = []

    async def find(self, kind: EntityKind, key: str) -> Optional[Record]:
        record = self.records[kind].get(key)
        return record.model_copy(deep=True) if record else None

    async def create(self, kind: EntityKind, record: Record) -> Record:
        key = getattr(record, KEY_FIELDS[kind])
        if key in self.records[kind]:
            raise PersistenceError(f"{kind.value} {key} already exists")
        self.records[kind][key] = record.model_copy(deep=True)
        return record

    async def update(self, kind: EntityKind, key: str, patch: dict[str, Any]) -> Record:
        current = self.records[kind].get(key)
        if current is None:
            raise PersistenceError(f"{kind.value} {key} not found")
        try:
            merged = RECORD_MODELS[kind].model_validate({**current.model_dump(), **patch})
        except ValidationError as e:
            raise PersistenceError(f"Failed to update {kind.value} {key}: {e}") from e
        self.records[kind][key] = merged
        return merged.model_copy(deep=True)

    async def list_records(self, kind: EntityKind) -> list[Record]:
        ts = TIMESTAMP_FIELDS[kind]
        return sorted(
            (r.model_copy(deep=True) for r in self.records[kind].values()),
            key=lambda r: getattr(r, ts),
            reverse=True,
        )

    async def append_safety_log(self, log: SafetyLog) -> SafetyLog:
        self.safety_logs.append(log)
        return log

    async def list_safety_logs(self, area_name: Optional[str] = None,
                               limit: int = 100) -> list[SafetyLog]:
        logs = [l for l in self.safety_logs if area_name is None or l.area_name == area_name]
        logs.sort(key=lambda l: l.created_at, reverse=True)
        return logs[:limit]


# ============================================================
# Per-Key Locking
# ============================================================

class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: dict[tuple, int] = {}

    @asynccontextmanager
    async def hold(self, *key: Any):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


# ============================================================
# Results & Stats
# ============================================================

@dataclass
class BatchOutcome:
    index: int
    key: Optional[str]
    success: bool
    record: Optional[Record] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Per-item outcomes in input order plus aggregate counts."""
    kind: EntityKind
    outcomes: list[BatchOutcome] = field(default_factory=list)
    created: int = 0
    updated: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    @property
    def total(self) -> int:
        return len(self.outcomes)


@dataclass
class IngestionResult:
    intent: IntentType
    kind: Optional[EntityKind] = None
    key: Optional[str] = None
    record: Optional[Record] = None
    created: bool = False

    @property
    def ignored(self) -> bool:
        return self.intent == IntentType.UNKNOWN


@dataclass
class IngestionStats:
    """Tracks stats for one run of ingest_messages."""
    total_messages: int = 0
    processed: int = 0
    failed: int = 0
    ignored: int = 0
    created: int = 0
    updated: int = 0
    results: list[IngestionResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


# ============================================================
# Main Orchestrator
# ============================================================

class UpdateOrchestrator:
    """
    Drives the full update pipeline:
      raw text → intent → partial update → validation → upsert
    """

    def __init__(
        self,
        repo: UpdateRepository,
        settings: Optional[Settings] = None,
        extractor: Optional[UpdateExtractor] = None,
    ):
        self.repo = repo
        self.settings = settings or get_settings()
        self.extractor = extractor or UpdateExtractor(self.settings)
        self.locks = KeyedLocks()

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def upsert(self, kind: EntityKind, key: str, validated: ValidatedUpdate) -> Record:
        """
        Create the record if absent, else merge the validated fields into it.

        Machine status rules are re-applied against the record as it is
        under the lock, which may differ from the one it was validated
        against.
        """
        if validated.kind != kind or validated.key != key:
            raise UpdateValidationError(
                KEY_FIELDS[kind], validated.key,
                message=(f"Validated update is for {validated.kind.value} {validated.key}, "
                         f"not {kind.value} {key}"))

        async with self.locks.hold(kind, key):
            existing = await self.repo.find(kind, key)
            if kind == EntityKind.MACHINE:
                fields = apply_machine_rules(dict(validated.fields), existing, self.settings)
                validated = replace(validated, fields=fields)
            return await self._commit(kind, key, validated, existing)

    async def apply_update(self, kind: EntityKind, update: Any,
                           key: Optional[str] = None) -> Record:
        """Validate against the current record and upsert, atomically per key."""
        record, _ = await self._apply(kind, update, key)
        return record

    async def batch_upsert(self, kind: EntityKind, items: Iterable[Any]) -> BatchResult:
        """
        Upsert each item independently; one item's failure never affects
        another. Only fails as a whole when ``items`` is not a sequence.
        """
        if isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Iterable):
            raise TypeError(f"Expected a list of {kind.value} updates, got {type(items).__name__}")

        key_field = KEY_FIELDS[kind]
        result = BatchResult(kind=kind)

        for index, item in enumerate(items):
            key = _item_key(item, key_field)
            if key is None:
                result.outcomes.append(BatchOutcome(
                    index=index, key=None, success=False, error=f"{key_field} is required"))
                logger.warning(f"Batch {kind.value} item {index}: {key_field} is required")
                continue

            try:
                record, created = await self._apply(kind, item, key)
            except Exception as e:
                result.outcomes.append(BatchOutcome(
                    index=index, key=key, success=False, error=str(e)))
                if isinstance(e, UpdateError):
                    logger.warning(f"Batch {kind.value} item {index} ({key}) failed: {e}")
                else:
                    logger.exception(f"Batch {kind.value} item {index} ({key}) failed unexpectedly")
                continue

            result.outcomes.append(BatchOutcome(index=index, key=key, success=True, record=record))
            if created:
                result.created += 1
            else:
                result.updated += 1

        logger.info(
            f"Batch {kind.value} complete: {result.succeeded}/{result.total} succeeded, "
            f"{result.failed} failed")
        return result

    async def ingest_message(self, text: Any) -> IngestionResult:
        """
        Process one worker message end to end.

        Unclassifiable text is not an error: the result has intent UNKNOWN
        and nothing is written.
        """
        classified = self.extractor.extract(text)
        if classified is None:
            logger.info(f"Ignoring unclassified message: {text!r}")
            return IngestionResult(intent=IntentType.UNKNOWN)

        record, created = await self._apply(classified.kind, classified.update, classified.key)
        return IngestionResult(
            intent=classified.intent,
            kind=classified.kind,
            key=classified.key,
            record=record,
            created=created,
        )

    async def ingest_messages(self, texts: Iterable[Any]) -> IngestionStats:
        """Ingest many messages, isolating failures per message."""
        stats = IngestionStats()
        for text in texts:
            stats.total_messages += 1
            try:
                result = await self.ingest_message(text)
            except UpdateError as e:
                stats.failed += 1
                stats.errors.append(f"{text!r}: {e}")
                continue

            if result.ignored:
                stats.ignored += 1
                continue
            stats.processed += 1
            stats.results.append(result)
            if result.created:
                stats.created += 1
            else:
                stats.updated += 1
        return stats

    async def log_safety_event(self, entry: Any) -> SafetyLog:
        """Append one immutable PPE-compliance event."""
        log = validate_safety_log(entry, self.settings)
        stored = await self.repo.append_safety_log(log)
        logger.info(f"Safety log for {log.area_name}: {log.ppe_compliance.value}")
        return stored

    async def list_safety_logs(self, area_name: Optional[str] = None,
                               limit: Optional[int] = None) -> list[SafetyLog]:
        cap = self.settings.safety_log_limit
        return await self.repo.list_safety_logs(area_name, min(limit or cap, cap))

    async def get_record(self, kind: EntityKind, key: str) -> Optional[Record]:
        return await self.repo.find(kind, key)

    async def list_records(self, kind: EntityKind) -> list[Record]:
        return await self.repo.list_records(kind)

    # ----------------------------------------------------------
    # Internal Pipeline
    # ----------------------------------------------------------

    async def _apply(self, kind: EntityKind, update: Any,
                     key: Optional[str] = None) -> tuple[Record, bool]:
        key_field = KEY_FIELDS[kind]
        data = coerce_update(kind, update).model_dump(exclude_unset=True)
        if key is not None:
            data[key_field] = key
        key = data.get(key_field)
        if isinstance(key, str):
            key = key.strip()
        if not key:
            raise UpdateValidationError(key_field, key, message=f"{key_field} is required")
        data[key_field] = key

        async with self.locks.hold(kind, key):
            existing = await self.repo.find(kind, key)
            validated = validate_and_default(kind, data, existing, self.settings)
            record = await self._commit(kind, key, validated, existing)
        return record, existing is None

    async def _commit(self, kind: EntityKind, key: str, validated: ValidatedUpdate,
                      existing: Optional[Record]) -> Record:
        if existing is None:
            record = RECORD_MODELS[kind].model_validate(validated.record_data(self.settings))
            created = await self.repo.create(kind, record)
            logger.info(f"Created {kind.value} {key}")
            return created

        patch = {k: v for k, v in validated.fields.items() if k != KEY_FIELDS[kind]}
        updated = await self.repo.update(kind, key, patch)
        logger.info(f"Updated {kind.value} {key}: {sorted(patch)}")
        return updated


# ============================================================
# Helpers
# ============================================================

def _item_key(item: Any, key_field: str) -> Optional[Any]:
    if isinstance(item, Mapping):
        key = item.get(key_field)
    elif isinstance(item, BaseModel):
        key = getattr(item, key_field, None)
    else:
        return None
    if key is None or (isinstance(key, str) and not key.strip()):
        return None
    return key.strip() if isinstance(key, str) else key


# ============================================================
# Example / Test Usage
# ============================================================

async def _example():
    """Demonstrate the pipeline with sample worker messages."""
    from config import configure_logging
    configure_logging(Settings(log_format='text'))

    orchestrator = UpdateOrchestrator(InMemoryRepository())
    stats = await orchestrator.ingest_messages([
        'M03 STATUS=Running OUTPUT=130 OPERATOR=Arun',
        'M07 STATUS=down ERROR=Spindle overheating',
        'SAFETY WeldingZone PPE=Helmet,Gloves RISK=High STATUS=Warning',
        'ORDER ORD1024 STAGE=Packaging ETA=Nov-18',
        'lunch at 1pm?',
    ])
    print(f"Processed {stats.processed}, ignored {stats.ignored}, failed {stats.failed}")
    for r in stats.results:
        print(f"  {r.intent.value}: {r.record.model_dump(mode='json')}")

    batch = await orchestrator.batch_upsert(EntityKind.ORDER, [
        {'order_id': 'ORD1025', 'priority': 'High'},
        {'stage': 'Production'},
        {'order_id': 'ORD1024', 'status': 'OnHold'},
    ])
    print(f"Batch: {batch.succeeded} succeeded / {batch.failed} failed")


if __name__ == '__main__':
    asyncio.run(_example())
