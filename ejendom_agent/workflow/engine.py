"""
Workflow Engine
===============
Runs the research steps for one property at a time per id.

    start_run(id)  -> registers the run, property -> RESEARCH_IGANGSAT
    execute(run)   -> folds over the steps
                        optional failure  -> step skipped (error kept), run continues
                        mandatory failure -> step failed, rest skipped, property -> FEJL
                        success           -> research fields written,
                                             property -> RESEARCH_DONE_CONTACT_PENDING

The quality gate verdict is recorded on the run only. Promotion to
KLAR_TIL_UDSENDELSE stays a human decision (mark-ready).

Storage layout:
    <data_dir>/runs/
        runs.json          WorkflowRunLog entries: finished runs oldest first,
                           then runs still in progress
"""

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..errors import (
    AlreadyRunning, EjendomError, InvalidTransition, MandatoryStepFailure,
    OptionalStepFailure, TransientCollaboratorError, ValidationError,
)
from ..identity import canonical_key
from ..outreach.status import OutreachStatus, validate_transition
from ..research.models import ResearchContext
from ..staging.models import Stage
from .models import RunStatus, StepStatus, WorkflowRun, WorkflowStep
from .steps import StepDescriptor, StepSkipped, default_steps

log = logging.getLogger("ejendom.workflow.engine")

_DEFAULT_ROOT = Path.home() / ".ejendom-agent" / "data" / "runs"


class WorkflowEngine:

    def __init__(
        self,
        property_store,
        steps: Optional[List[StepDescriptor]] = None,
        safe_mode: bool = False,
        stale_after: timedelta = timedelta(minutes=30),
        step_attempts: int = 2,
        runs_path: Optional[str] = None,
        tracker=None,
    ):
        self.property_store = property_store
        self.steps = steps if steps is not None else default_steps()
        self.safe_mode = safe_mode
        self.stale_after = stale_after
        self.step_attempts = max(1, step_attempts)
        self.tracker = tracker
        self.runs_path = Path(runs_path) if runs_path else _DEFAULT_ROOT / "runs.json"
        self.runs_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._history: List[WorkflowRun] = []
        self._running: Dict[str, WorkflowRun] = {}
        self._load()
        self._raw_research: Dict[str, Dict[str, Any]] = {}

    # --- Lifecycle ---

    def start_run(self, property_id: str) -> WorkflowRun:
        """Register a run. Raises NotFoundError, AlreadyRunning or InvalidTransition."""
        record = self.property_store.get(property_id)
        with self._lock:
            if property_id in self._running:
                raise AlreadyRunning(property_id)
            run = WorkflowRun(
                property_id=property_id,
                property_name=record.display_name,
                steps=[WorkflowStep(step_id=s.id, step_name=s.name) for s in self.steps],
            )
            self._running[property_id] = run
            self._persist()

        try:
            if self.safe_mode:
                validate_transition(record.outreach_status, OutreachStatus.RESEARCH_IGANGSAT)
            else:
                self.property_store.set_status(property_id, OutreachStatus.RESEARCH_IGANGSAT)
        except InvalidTransition:
            self._release(property_id, run)
            raise

        log.info(f"Run {run.id} started for {property_id} ({record.display_name})")
        return run

    def execute(self, run: WorkflowRun) -> WorkflowRun:
        """Execute every step of a started run. Never raises for step failures."""
        try:
            record = self.property_store.get(run.property_id)
            ctx = ResearchContext(
                property_ref=_identity_ref(record),
                address=record.address,
                postal_code=record.postal_code,
                city=record.city,
                outdoor_score=record.outdoor_score,
            )
            failure = self._fold(run, ctx)

            if not run.is_running:
                log.warning(f"Run {run.id} was swept while executing, results discarded")
            elif failure is not None:
                run.finish(RunStatus.FAILED, str(failure.cause))
                log.error(f"Run {run.id} failed at {failure.step_id}: {failure.cause}")
                if not self.safe_mode:
                    self._set_status_quietly(run.property_id, OutreachStatus.FEJL)
            else:
                run.quality_gate_passed = ctx.quality_gate_passed
                run.quality_gate_reason = ctx.quality_gate_reason
                if not self.safe_mode:
                    self.property_store.update(run.property_id, **research_fields(ctx))
                    self.property_store.set_status(
                        run.property_id, OutreachStatus.RESEARCH_DONE_CONTACT_PENDING,
                    )
                self._record_contact(ctx)
                run.finish(RunStatus.COMPLETED)
                log.info(f"Run {run.id} completed for {run.property_id} "
                         f"(quality gate: {'passed' if ctx.quality_gate_passed else 'not passed'})")
            self._remember_research(run.property_id, ctx)
        except EjendomError as e:
            if run.is_running:
                run.finish(RunStatus.FAILED, str(e))
            log.error(f"Run {run.id} aborted: {e}")
        finally:
            self._release(run.property_id, run)
        return run

    def run(self, property_id: str) -> WorkflowRun:
        return self.execute(self.start_run(property_id))

    def run_batch(self, property_ids: Iterable[str]) -> List[WorkflowRun]:
        """Sequential runs. Ids with an active run are skipped."""
        runs = []
        for property_id in property_ids:
            if self.is_running(property_id):
                log.info(f"Batch: {property_id} already running, skipped")
                continue
            try:
                runs.append(self.run(property_id))
            except EjendomError as e:
                log.warning(f"Batch: {property_id} not started: {e}")
        return runs

    def research_staged(self, staged_id: str, staging) -> WorkflowRun:
        """
        Run the steps for a staged record: new -> researching -> researched.
        A failed run leaves the record in researching, where this method may
        be called again.
        """
        record = staging.get(staged_id)
        if record.stage not in (Stage.NEW, Stage.RESEARCHING):
            raise InvalidTransition(record.stage.value, Stage.RESEARCHING.value)

        with self._lock:
            if staged_id in self._running:
                raise AlreadyRunning(staged_id)
            run = WorkflowRun(
                property_id=staged_id,
                property_name=record.address,
                steps=[WorkflowStep(step_id=s.id, step_name=s.name) for s in self.steps],
            )
            self._running[staged_id] = run
            self._persist()

        try:
            if record.stage == Stage.NEW:
                staging.update(staged_id, {"stage": Stage.RESEARCHING})
            ctx = ResearchContext(
                property_ref=_identity_ref(record),
                address=record.address,
                postal_code=record.postal_code,
                city=record.city,
                outdoor_score=record.outdoor_score,
            )
            failure = self._fold(run, ctx)
            if not run.is_running:
                log.warning(f"Staged run {run.id} was swept while executing, results discarded")
            elif failure is not None:
                run.finish(RunStatus.FAILED, str(failure.cause))
                log.error(f"Staged run {run.id} failed at {failure.step_id}: {failure.cause}")
            else:
                run.quality_gate_passed = ctx.quality_gate_passed
                run.quality_gate_reason = ctx.quality_gate_reason
                patch = staged_research_fields(ctx)
                patch["stage"] = Stage.RESEARCHED
                staging.update(staged_id, patch)
                self._record_contact(ctx)
                run.finish(RunStatus.COMPLETED)
                log.info(f"Staged run {run.id} completed for {staged_id}")
            self._remember_research(staged_id, ctx)
        except EjendomError as e:
            if run.is_running:
                run.finish(RunStatus.FAILED, str(e))
            log.error(f"Staged run {run.id} aborted: {e}")
        finally:
            self._release(staged_id, run)
        return run

    # --- Queries ---

    def is_running(self, property_id: str) -> bool:
        with self._lock:
            return property_id in self._running

    def get_recent_runs(self, n: int = 20) -> List[WorkflowRun]:
        """Active runs first, then finished runs newest first."""
        with self._lock:
            active = list(self._running.values())
            finished = list(reversed(self._history))
        return (active + finished)[:n]

    def get_raw_research(self, property_id: str) -> Optional[Dict[str, Any]]:
        return self._raw_research.get(property_id)

    def get_all_raw_research(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._raw_research)

    # --- Maintenance ---

    def sweep_stale(self, now: Optional[datetime] = None) -> List[WorkflowRun]:
        """Fail runs that have been running longer than stale_after and release their ids."""
        now = now or datetime.now(timezone.utc)
        stale = []
        with self._lock:
            for property_id, run in list(self._running.items()):
                started = datetime.fromisoformat(run.started_at)
                if started.tzinfo is None:
                    started = started.replace(tzinfo=timezone.utc)
                if now - started > self.stale_after:
                    stale.append(run)

        for run in stale:
            for step in run.steps:
                if step.status in (StepStatus.PENDING, StepStatus.RUNNING):
                    step.finish(StepStatus.SKIPPED)
            run.finish(RunStatus.FAILED, "stale run")
            log.warning(f"Run {run.id} for {run.property_id} swept as stale")
            self._release(run.property_id, run)
            if not self.safe_mode:
                self._set_status_quietly(run.property_id, OutreachStatus.FEJL)
        return stale

    # --- Internal ---

    def _fold(self, run: WorkflowRun, ctx: ResearchContext) -> Optional[MandatoryStepFailure]:
        """Run each step against ctx. Returns the mandatory failure that stopped the run, if any."""
        for index, descriptor in enumerate(self.steps):
            step = run.steps[index]
            step.start()
            try:
                delta = self._attempt(descriptor, ctx)
            except StepSkipped as skip:
                step.finish(StepStatus.SKIPPED, details=skip.details)
                continue
            except Exception as e:
                if not descriptor.mandatory:
                    failure = OptionalStepFailure(descriptor.id, e)
                    log.warning(f"Run {run.id}: optional step {descriptor.id} failed: {e}")
                    step.finish(StepStatus.SKIPPED, error=str(failure.cause))
                    continue
                step.finish(StepStatus.FAILED, error=str(e))
                for later in run.steps[index + 1:]:
                    later.finish(StepStatus.SKIPPED)
                return MandatoryStepFailure(descriptor.id, e)

            details = delta.pop("details", None)
            for key, value in delta.items():
                if hasattr(ctx, key):
                    setattr(ctx, key, value)
            step.finish(StepStatus.COMPLETED, details=details)
        return None

    def _attempt(self, descriptor: StepDescriptor, ctx: ResearchContext) -> Dict[str, Any]:
        last_error = None
        for attempt in range(1, self.step_attempts + 1):
            try:
                return dict(descriptor.execute(ctx) or {})
            except TransientCollaboratorError as e:
                last_error = e
                log.debug(f"Step {descriptor.id} attempt {attempt}/{self.step_attempts} failed: {e}")
        raise last_error

    def _set_status_quietly(self, property_id: str, status: OutreachStatus):
        try:
            self.property_store.set_status(property_id, status)
        except EjendomError as e:
            log.warning(f"Could not move {property_id} to {status.value}: {e}")

    def _record_contact(self, ctx: ResearchContext):
        if self.tracker is None or ctx.analysis is None:
            return
        contact = ctx.analysis.best_contact
        if contact is not None:
            self.tracker.record(contact.email, ctx.property_ref)

    def _remember_research(self, ref: str, ctx: ResearchContext):
        self._raw_research.pop(ref, None)
        self._raw_research[ref] = ctx.to_dict()

    def _release(self, property_id: str, run: WorkflowRun):
        with self._lock:
            if self._running.get(property_id) is run:
                del self._running[property_id]
            if run not in self._history:
                self._history.append(run)
            self._persist()

    def _load(self):
        """Finished runs become history; runs still marked running are re-registered so sweep_stale can fail them."""
        if not self.runs_path.exists():
            return
        try:
            data = json.loads(self.runs_path.read_text(encoding="utf-8"))
            runs = [WorkflowRun.from_dict(r) for r in data]
        except Exception as e:
            log.warning(f"Failed to load workflow runs: {e}")
            return
        for run in runs:
            if run.is_running:
                self._running[run.property_id] = run
            else:
                self._history.append(run)
        if self._running:
            log.info(f"Loaded {len(self._running)} unfinished runs from {self.runs_path}")

    def _persist(self):
        data = [r.to_dict() for r in self._history]
        data.extend(r.to_dict() for r in self._running.values())
        self.runs_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")


def _identity_ref(record) -> str:
    """Canonical identity of a property or staged record, shared by both stores."""
    try:
        return canonical_key(record.address, record.bfe)
    except ValidationError:
        return record.id


def _summary(ctx: ResearchContext) -> str:
    analysis = ctx.analysis
    parts = []
    if analysis and analysis.key_insights:
        parts.append(analysis.key_insights)
    if ctx.ois and ctx.ois.owners:
        parts.append("OIS ejere: " + ", ".join(o.name for o in ctx.ois.owners))
    if ctx.cvr:
        parts.append(f"CVR: {ctx.cvr.company_name} ({ctx.cvr.cvr}, {ctx.cvr.status})")
    if ctx.bbr and ctx.bbr.usage:
        parts.append(f"BBR: {ctx.bbr.usage}, {ctx.bbr.area or '?'} m2")
    if analysis:
        parts.append(f"Datakvalitet: {analysis.data_quality} ({analysis.data_quality_reason})")
    if ctx.corrections:
        parts.append("Rettelser: " + "; ".join(ctx.corrections))
    return "\n".join(parts)


def _links(ctx: ResearchContext) -> str:
    links = []
    if ctx.website:
        links.append(ctx.website.url)
    links.extend(r.url for r in ctx.search_results if r.url not in links)
    return "\n".join(links[:10])


def research_fields(ctx: ResearchContext) -> Dict[str, Any]:
    """PropertyRecord fields produced by a completed run."""
    analysis = ctx.analysis
    fields: Dict[str, Any] = {
        "research_summary": _summary(ctx),
        "research_links": _links(ctx),
    }
    if analysis is None:
        return fields
    fields["owner_company_name"] = analysis.owner_company_name
    fields["owner_company_cvr"] = analysis.owner_company_cvr
    fields["outdoor_score"] = analysis.outdoor_potential_score
    contact = analysis.best_contact
    if contact is not None:
        fields["contact_person"] = contact.full_name
        fields["contact_email"] = contact.email
        fields["contact_phone"] = contact.phone
    if ctx.draft is not None:
        fields["email_draft_subject"] = ctx.draft.subject
        fields["email_draft_body"] = ctx.draft.body
        fields["email_draft_note"] = ctx.draft.internal_note
        fields["email_draft_kind"] = "first"
    return fields


def staged_research_fields(ctx: ResearchContext) -> Dict[str, Any]:
    """StagedProperty patch produced by a completed run."""
    fields = research_fields(ctx)
    patch: Dict[str, Any] = {"research_summary": fields["research_summary"]}
    renames = {
        "owner_company_name": "owner_company",
        "owner_company_cvr": "owner_cvr",
        "contact_person": "contact_person",
        "contact_email": "contact_email",
        "email_draft_subject": "email_draft_subject",
        "email_draft_body": "email_draft_body",
    }
    for source, target in renames.items():
        if source in fields:
            patch[target] = fields[source]
    if ctx.analysis is not None:
        patch["data_quality"] = ctx.analysis.data_quality
    return patch
