"""
Staging Store
=============
Persistent JSON storage for discovered properties awaiting review.

Storage layout:
    <data_dir>/staging/
        staged.json

At most one non-rejected record per canonical key. Stage changes only happen
through update(), and only along STAGE_TRANSITIONS.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from ..identity import canonical_key, normalize
from .models import (
    IDENTITY_FIELDS, STAGE_TRANSITIONS, Source, Stage, StagedProperty,
)

log = logging.getLogger("ejendom.staging.store")

_DEFAULT_ROOT = Path.home() / ".ejendom-agent" / "data" / "staging"

# Copied from a discovery candidate when staging it
_CANDIDATE_FIELDS = (
    "address", "postal_code", "city", "bfe", "source", "outdoor_score", "score_reason",
    "estimated_traffic", "traffic_source", "notes",
)


class StagingStore:

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.root.mkdir(parents=True, exist_ok=True)
        self.staged_path = self.root / "staged.json"
        self._lock = threading.Lock()
        self._records: Dict[str, StagedProperty] = self._load()
        log.info(f"StagingStore: {len(self._records)} staged properties")

    # --- Insert ---

    def insert(self, candidate: Union[StagedProperty, Dict[str, Any], Any]) -> StagedProperty:
        """Stage a candidate at stage=new. Raises ConflictError on an active duplicate."""
        record = self._to_staged(candidate)
        with self._lock:
            existing = self._find_active_by_key(record.canonical_key)
            if existing:
                raise ConflictError(
                    f"'{record.address}' is already staged as {existing.id} ({existing.stage.value})",
                    existing.id,
                )
            if record.id in self._records:
                record.id = StagedProperty().id
            self._records[record.id] = record
            self._persist()
        log.info(f"Staged {record.id}: {record.address} [{record.canonical_key}]")
        return record

    # --- Read ---

    def get(self, staged_id: str) -> StagedProperty:
        record = self._records.get(staged_id)
        if record is None:
            raise NotFoundError("Staged property", staged_id)
        return record

    def list(
        self,
        stage: Optional[Union[Stage, str]] = None,
        source: Optional[Union[Source, str]] = None,
        city: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[StagedProperty]:
        records = list(self._records.values())
        if stage:
            stage = _coerce_stage(stage)
            records = [r for r in records if r.stage == stage]
        if source:
            source = Source(source)
            records = [r for r in records if r.source == source]
        if city:
            city_lower = city.strip().lower()
            records = [r for r in records if r.city.strip().lower() == city_lower]
        if search:
            needle = search.strip().lower()
            records = [
                r for r in records
                if needle in r.address.lower()
                or needle in r.city.lower()
                or needle in r.notes.lower()
                or needle in r.owner_company.lower()
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def counts(self) -> Dict[str, int]:
        result = {s.value: 0 for s in Stage}
        for record in list(self._records.values()):
            result[record.stage.value] += 1
        return result

    def exists_by_address(self, address: str) -> bool:
        """True when a non-rejected record has the same normalized address."""
        target = normalize(address)
        if not target:
            return False
        return any(
            r.is_active and normalize(r.address) == target
            for r in list(self._records.values())
        )

    # --- Update ---

    def update(self, staged_id: str, patch: Dict[str, Any]) -> StagedProperty:
        """
        Apply a patch. A 'stage' key must follow STAGE_TRANSITIONS; pushed
        records are read-only and rejected records accept no stage change.
        """
        with self._lock:
            record = self._records.get(staged_id)
            if record is None:
                raise NotFoundError("Staged property", staged_id)
            if record.stage == Stage.PUSHED:
                raise InvalidTransition(record.stage.value, str(patch.get("stage", "edit")),
                                        "pushed records are read-only")

            patch = dict(patch)
            new_stage = None
            if "stage" in patch:
                new_stage = _coerce_stage(patch.pop("stage"))
                if new_stage not in STAGE_TRANSITIONS[record.stage]:
                    raise InvalidTransition(record.stage.value, new_stage.value)

            for key in ("id", "canonical_key", "created_at", "updated_at"):
                patch.pop(key, None)
            unknown = [k for k in patch if k not in StagedProperty.__dataclass_fields__]
            if unknown:
                raise ValidationError(f"Unknown staged property fields: {', '.join(sorted(unknown))}")
            if "source" in patch:
                try:
                    patch["source"] = Source(patch["source"])
                except ValueError:
                    raise ValidationError(f"Unknown source: {patch['source']!r}")

            new_key = record.canonical_key
            if any(k in patch for k in IDENTITY_FIELDS):
                address = patch.get("address", record.address)
                new_key = canonical_key(address, patch.get("bfe", record.bfe))
                if new_key != record.canonical_key and record.is_active:
                    other = self._find_active_by_key(new_key)
                    if other and other.id != record.id:
                        raise ConflictError(f"'{address}' is already staged as {other.id}", other.id)

            # Patch is fully validated; nothing below raises
            record.canonical_key = new_key
            for key, value in patch.items():
                setattr(record, key, value)
            if new_stage is not None:
                log.info(f"{staged_id}: {record.stage.value} -> {new_stage.value}")
                record.stage = new_stage

            record.updated_at = datetime.now(timezone.utc).isoformat()
            self._persist()
            return record

    def approve(self, staged_id: str) -> StagedProperty:
        return self.update(staged_id, {"stage": Stage.APPROVED})

    def push(self, staged_id: str, property_store) -> StagedProperty:
        """Create the CRM property for an approved record and mark it pushed."""
        record = self.get(staged_id)
        if Stage.PUSHED not in STAGE_TRANSITIONS[record.stage]:
            raise InvalidTransition(record.stage.value, Stage.PUSHED.value)
        prop = property_store.create_from_staged(record)
        return self.update(staged_id, {"stage": Stage.PUSHED, "pushed_property_id": prop.id})

    def bulk_reject(self, staged_ids: Iterable[str]) -> Dict[str, Any]:
        """
        Reject each id independently. Not a transaction: earlier rejections stay
        in place when a later one fails.
        """
        rejected, failed = 0, 0
        errors: Dict[str, str] = {}
        for staged_id in staged_ids:
            try:
                self.update(staged_id, {"stage": Stage.REJECTED})
                rejected += 1
            except (NotFoundError, InvalidTransition) as e:
                failed += 1
                errors[staged_id] = str(e)
                log.warning(f"Bulk reject: {staged_id} failed: {e}")
        return {"rejected": rejected, "failed": failed, "errors": errors}

    # --- Delete ---

    def delete(self, staged_id: str) -> bool:
        with self._lock:
            if staged_id in self._records:
                del self._records[staged_id]
                self._persist()
                return True
        return False

    # --- Internal ---

    def _find_active_by_key(self, key: str) -> Optional[StagedProperty]:
        for record in self._records.values():
            if record.is_active and record.canonical_key == key:
                return record
        return None

    def _to_staged(self, candidate: Any) -> StagedProperty:
        if isinstance(candidate, StagedProperty):
            data = candidate.to_dict()
        elif isinstance(candidate, dict):
            data = dict(candidate)
        elif hasattr(candidate, "to_dict"):
            data = {k: v for k, v in candidate.to_dict().items() if k in _CANDIDATE_FIELDS}
        else:
            raise ValidationError(f"Cannot stage {type(candidate).__name__}")

        if not (data.get("address") or "").strip():
            raise ValidationError("A staged property needs an address")
        data["stage"] = Stage.NEW.value
        data["canonical_key"] = canonical_key(data["address"], data.get("bfe"))
        for key in ("created_at", "updated_at"):
            data.pop(key, None)
        try:
            return StagedProperty.from_dict(data)
        except ValueError as e:
            raise ValidationError(str(e))

    def _load(self) -> Dict[str, StagedProperty]:
        if self.staged_path.exists():
            try:
                data = json.loads(self.staged_path.read_text(encoding="utf-8"))
                return {r["id"]: StagedProperty.from_dict(r) for r in data}
            except Exception as e:
                log.warning(f"Failed to load staged properties: {e}")
        return {}

    def _persist(self):
        data = [r.to_dict() for r in self._records.values()]
        self.staged_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")


def _coerce_stage(value: Union[Stage, str]) -> Stage:
    try:
        return Stage(value)
    except ValueError:
        raise ValidationError(f"Unknown stage: {value!r}")
