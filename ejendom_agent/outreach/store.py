"""
Property Store
==============
Persistent JSON storage for CRM property records and their outreach status.

Storage layout:
    <data_dir>/properties/
        properties.json

Research fields are written through update(); outreach status only moves
through set_status(), which consults the transition table.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import InvalidTransition, NotFoundError, ValidationError
from ..identity import normalize
from .models import PropertyRecord
from .status import OutreachStatus, can_mark_ready, validate_transition

log = logging.getLogger("ejendom.outreach.store")

_DEFAULT_ROOT = Path.home() / ".ejendom-agent" / "data" / "properties"


class PropertyStore:

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root) if root else _DEFAULT_ROOT
        self.root.mkdir(parents=True, exist_ok=True)
        self.properties_path = self.root / "properties.json"
        self._lock = threading.Lock()
        self._properties: Dict[str, PropertyRecord] = self._load()
        log.info(f"PropertyStore: {len(self._properties)} properties")

    # --- Create ---

    def create(self, record: PropertyRecord) -> PropertyRecord:
        if not record.address.strip():
            raise ValidationError("A property needs an address")
        with self._lock:
            self._properties[record.id] = record
            self._persist()
        log.info(f"Created property {record.id}: {record.address}")
        return record

    def create_from_staged(self, staged) -> PropertyRecord:
        """Promote a staged property. Already researched ones skip straight past research."""
        status = (OutreachStatus.RESEARCH_DONE_CONTACT_PENDING if staged.has_research()
                  else OutreachStatus.NY_KRAEVER_RESEARCH)
        record = PropertyRecord(
            name=staged.address,
            address=staged.address,
            postal_code=staged.postal_code,
            city=staged.city,
            bfe=staged.bfe,
            outreach_status=status,
            outdoor_score=staged.outdoor_score,
            owner_company_name=staged.owner_company,
            owner_company_cvr=staged.owner_cvr,
            research_summary=staged.research_summary,
            outdoor_potential_notes=staged.score_reason,
            contact_person=staged.contact_person,
            contact_email=staged.contact_email,
            email_draft_subject=staged.email_draft_subject,
            email_draft_body=staged.email_draft_body,
            staged_id=staged.id,
        )
        return self.create(record)

    # --- Read ---

    def get(self, property_id: str) -> PropertyRecord:
        record = self._properties.get(property_id)
        if record is None:
            raise NotFoundError("Property", property_id)
        return record

    def list(
        self,
        status: Optional[OutreachStatus] = None,
        city: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[PropertyRecord]:
        records = list(self._properties.values())
        if status:
            try:
                status = OutreachStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown outreach status: {status!r}")
            records = [r for r in records if r.outreach_status == status]
        if city:
            city_lower = city.strip().lower()
            records = [r for r in records if r.city.strip().lower() == city_lower]
        if search:
            needle = search.strip().lower()
            records = [
                r for r in records
                if needle in r.address.lower()
                or needle in r.name.lower()
                or needle in r.owner_company_name.lower()
            ]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def exists_by_address(self, address: str) -> bool:
        target = normalize(address)
        return bool(target) and any(
            normalize(r.address) == target for r in list(self._properties.values())
        )

    def counts(self) -> Dict[str, int]:
        result = {s.value: 0 for s in OutreachStatus}
        for record in list(self._properties.values()):
            result[record.outreach_status.value] += 1
        return result

    # --- Update ---

    def update(self, property_id: str, **fields) -> PropertyRecord:
        """Write research fields. Status changes go through set_status()."""
        if "outreach_status" in fields:
            raise ValidationError("Use set_status() to change outreach_status")
        with self._lock:
            record = self.get(property_id)
            for key in fields:
                if key not in PropertyRecord.__dataclass_fields__ or key in ("id", "created_at"):
                    raise ValidationError(f"Unknown property field: {key}")
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = datetime.now(timezone.utc).isoformat()
            self._persist()
            return record

    def set_status(
        self,
        property_id: str,
        target: OutreachStatus,
        action: Optional[str] = None,
        force: bool = False,
    ) -> PropertyRecord:
        """Move a property along the transition table. force skips validation."""
        with self._lock:
            record = self.get(property_id)
            target = OutreachStatus(target)
            if not force:
                validate_transition(
                    record.outreach_status, target, action,
                    has_contact_email=record.has_contact_email,
                    has_email_draft=record.has_email_draft,
                )
            log.info(f"{property_id}: {record.outreach_status.value} -> {target.value}")
            record.outreach_status = target
            record.updated_at = datetime.now(timezone.utc).isoformat()
            self._persist()
            return record

    def mark_ready(self, property_id: str) -> PropertyRecord:
        """Manual jump to KLAR_TIL_UDSENDELSE from any pre-ready state."""
        record = self.get(property_id)
        if record.outreach_status == OutreachStatus.KLAR_TIL_UDSENDELSE:
            return record
        if not can_mark_ready(record.outreach_status):
            raise InvalidTransition(
                record.outreach_status.value, OutreachStatus.KLAR_TIL_UDSENDELSE.value,
                "mark-ready only applies before the first mail is sent",
            )
        return self.set_status(property_id, OutreachStatus.KLAR_TIL_UDSENDELSE, action="mark_ready")

    def delete(self, property_id: str) -> bool:
        with self._lock:
            if property_id in self._properties:
                del self._properties[property_id]
                self._persist()
                return True
        return False

    # --- Internal ---

    def _load(self) -> Dict[str, PropertyRecord]:
        if self.properties_path.exists():
            try:
                data = json.loads(self.properties_path.read_text(encoding="utf-8"))
                return {p["id"]: PropertyRecord.from_dict(p) for p in data}
            except Exception as e:
                log.warning(f"Failed to load properties: {e}")
        return {}

    def _persist(self):
        data = [p.to_dict() for p in self._properties.values()]
        self.properties_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
