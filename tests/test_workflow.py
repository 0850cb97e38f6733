"""Tests for the research workflow engine and its standard steps."""

import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent.errors import (
    AlreadyRunning, InvalidTransition, NotFoundError, TransientCollaboratorError,
)
from ejendom_agent.outreach import Contact, OutreachStatus, PropertyRecord, PropertyStore
from ejendom_agent.research import (
    ContactRelevanceTracker, CvrResult, EmailDraft, OisOwner, OisResult, ResearchAnalysis,
    ResearchContext, WebSearchResult, WebsiteContent,
)
from ejendom_agent.staging import Stage, StagingStore
from ejendom_agent.workflow import (
    RunStatus, StepDescriptor, StepSkipped, StepStatus, WorkflowEngine, default_steps,
)
from ejendom_agent.workflow.steps import pick_website


def _analysis():
    return ResearchAnalysis(
        owner_company_name="Algade Ejendomme ApS",
        owner_company_cvr="12345678",
        key_insights="Stor gavl mod befærdet vej",
        outdoor_potential_score=8,
        data_quality="high",
        recommended_contacts=[Contact(full_name="Jens Hansen", email="jens@algade.dk", confidence=0.9)],
    )


def _lookup_step(ctx):
    return {"details": "OIS: ✓"}


def _analysis_step(ctx):
    return {"analysis": _analysis(), "quality_gate_passed": True, "quality_gate_reason": "God kvalitet"}


def _draft_step(ctx):
    return {"draft": EmailDraft(subject="Jeres gavl", body="Hej Jens", internal_note="Ejer")}


def _steps(lookup=_lookup_step, analysis=_analysis_step, draft=_draft_step):
    return [
        StepDescriptor("identity_lookup", "Registeropslag", False, lookup),
        StepDescriptor("llm_analysis", "AI analyse", True, analysis),
        StepDescriptor("email_draft", "Mailudkast", False, draft),
    ]


def _boom(message="boom", exc=RuntimeError):
    def run(ctx):
        raise exc(message)
    return run


@pytest.fixture
def store(tmp_path):
    return PropertyStore(str(tmp_path / "properties"))


@pytest.fixture
def prop(store):
    return store.create(PropertyRecord(name="Algade 1", address="Algade 1", postal_code="4000", city="Roskilde"))


@pytest.fixture
def runs_path(tmp_path):
    return str(tmp_path / "runs" / "runs.json")


@pytest.fixture
def engine(store, runs_path):
    return WorkflowEngine(store, steps=_steps(), runs_path=runs_path)


# --- Engine ---

class TestRun:
    def test_successful_run(self, engine, store, prop):
        run = engine.run(prop.id)

        assert run.status == RunStatus.COMPLETED
        assert [s.status for s in run.steps] == [StepStatus.COMPLETED] * 3
        assert run.steps[0].details == "OIS: ✓"
        assert run.quality_gate_passed is True

        record = store.get(prop.id)
        # A passed quality gate is recorded, never acted on
        assert record.outreach_status == OutreachStatus.RESEARCH_DONE_CONTACT_PENDING
        assert record.owner_company_name == "Algade Ejendomme ApS"
        assert record.contact_email == "jens@algade.dk"
        assert record.email_draft_subject == "Jeres gavl"
        assert record.outdoor_score == 8
        assert "Stor gavl" in record.research_summary
        assert not engine.is_running(prop.id)

    def test_new_draft_is_a_first_mail_draft(self, engine, store, prop):
        store.update(prop.id, email_draft_kind="followup")
        engine.run(prop.id)
        assert store.get(prop.id).email_draft_kind == "first"

    def test_optional_failure_is_skipped(self, store, prop, runs_path):
        engine = WorkflowEngine(store, steps=_steps(lookup=_boom("OIS nede")), runs_path=runs_path)
        run = engine.run(prop.id)

        assert run.status == RunStatus.COMPLETED
        assert run.steps[0].status == StepStatus.SKIPPED
        assert run.steps[0].error == "OIS nede"
        assert store.get(prop.id).outreach_status == OutreachStatus.RESEARCH_DONE_CONTACT_PENDING

    def test_mandatory_failure_fails_run(self, store, prop, runs_path):
        engine = WorkflowEngine(
            store, steps=_steps(analysis=_boom("No LLM provider configured", ValueError)), runs_path=runs_path,
        )
        run = engine.run(prop.id)

        assert run.status == RunStatus.FAILED
        assert run.error == "No LLM provider configured"
        assert [s.status for s in run.steps] == [StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED]
        record = store.get(prop.id)
        assert record.outreach_status == OutreachStatus.FEJL
        assert record.contact_email == ""

    def test_step_skipped_keeps_details(self, store, prop, runs_path):
        def nothing(ctx):
            raise StepSkipped("Ingen hjemmeside fundet")

        engine = WorkflowEngine(store, steps=_steps(draft=nothing), runs_path=runs_path)
        run = engine.run(prop.id)
        assert run.status == RunStatus.COMPLETED
        assert run.steps[2].status == StepStatus.SKIPPED
        assert run.steps[2].details == "Ingen hjemmeside fundet"
        assert run.steps[2].error is None

    def test_transient_error_retried(self, store, prop, runs_path):
        calls = []

        def flaky(ctx):
            calls.append(1)
            if len(calls) == 1:
                raise TransientCollaboratorError("ois", "timeout")
            return {"details": "ok"}

        engine = WorkflowEngine(store, steps=_steps(lookup=flaky), step_attempts=2, runs_path=runs_path)
        run = engine.run(prop.id)
        assert len(calls) == 2
        assert run.steps[0].status == StepStatus.COMPLETED

    def test_retry_budget_exhausted(self, store, prop, runs_path):
        engine = WorkflowEngine(
            store, steps=_steps(lookup=_boom("timeout", lambda m: TransientCollaboratorError("ois", m))),
            step_attempts=1, runs_path=runs_path,
        )
        run = engine.run(prop.id)
        assert run.steps[0].status == StepStatus.SKIPPED
        assert "timeout" in run.steps[0].error

    def test_failed_property_can_be_retried(self, store, prop, runs_path):
        failing = WorkflowEngine(store, steps=_steps(analysis=_boom()), runs_path=runs_path)
        failing.run(prop.id)
        assert store.get(prop.id).outreach_status == OutreachStatus.FEJL

        run = WorkflowEngine(store, steps=_steps(), runs_path=runs_path).run(prop.id)
        assert run.status == RunStatus.COMPLETED

    def test_records_contact_for_relevance(self, store, prop, runs_path):
        tracker = ContactRelevanceTracker()
        engine = WorkflowEngine(store, steps=_steps(), runs_path=runs_path, tracker=tracker)
        engine.run(prop.id)
        assert tracker.seen_for("jens@algade.dk") == ["addr:algade 1"]

    def test_rerun_does_not_penalize_own_contact(self, store, prop, runs_path):
        tracker = ContactRelevanceTracker()
        analyst = MagicMock()
        analyst.analyze.side_effect = lambda ctx: _analysis()
        analyst.draft_email.return_value = EmailDraft(subject="Jeres gavl", body="Hej Jens")

        def lookup(ctx):
            return {
                "ois": OisResult(bfe="999", owners=[OisOwner("Algade Ejendomme ApS")]),
                "cvr": CvrResult(cvr="12345678", company_name="Algade Ejendomme ApS",
                                 email="jens@algade.dk", owners=["Jens Hansen"]),
            }

        steps = default_steps(analyst=analyst, tracker=tracker)
        steps[0] = StepDescriptor("identity_lookup", "Registeropslag", False, lookup)
        engine = WorkflowEngine(store, steps=steps, runs_path=runs_path, tracker=tracker)

        engine.run(prop.id)
        first = engine.get_raw_research(prop.id)
        assert engine.run(prop.id).status == RunStatus.COMPLETED
        second = engine.get_raw_research(prop.id)

        confidence = [raw["analysis"]["recommended_contacts"][0]["confidence"] for raw in (first, second)]
        assert confidence[0] == confidence[1]
        assert not any("other properties" in c for c in second["corrections"])

    def test_staged_and_pushed_record_share_identity(self, store, runs_path, tmp_path):
        tracker = ContactRelevanceTracker()
        staging = StagingStore(str(tmp_path / "staging"))
        engine = WorkflowEngine(store, steps=_steps(), runs_path=runs_path, tracker=tracker)
        staged = staging.insert({"address": "Nyvej 4", "city": "Roskilde"})
        engine.research_staged(staged.id, staging)
        pushed = store.create(PropertyRecord(name="Nyvej 4", address="nyvej 4 "))
        engine.run(pushed.id)
        assert tracker.seen_for("jens@algade.dk") == ["addr:nyvej 4"]


class TestStartRun:
    def test_already_running(self, engine, prop):
        run = engine.start_run(prop.id)
        assert engine.is_running(prop.id)
        with pytest.raises(AlreadyRunning):
            engine.start_run(prop.id)
        engine.execute(run)
        assert not engine.is_running(prop.id)

    def test_start_moves_to_research_igangsat(self, engine, store, prop):
        engine.start_run(prop.id)
        assert store.get(prop.id).outreach_status == OutreachStatus.RESEARCH_IGANGSAT

    def test_unknown_property(self, engine):
        with pytest.raises(NotFoundError):
            engine.run("prop-missing")

    def test_invalid_status_releases_id(self, engine, store):
        sent = store.create(PropertyRecord(name="Sendt", address="Algade 2",
                                           outreach_status=OutreachStatus.FOERSTE_MAIL_SENDT))
        with pytest.raises(InvalidTransition):
            engine.start_run(sent.id)
        assert not engine.is_running(sent.id)

    def test_run_batch_skips_running(self, engine, store, prop):
        other = store.create(PropertyRecord(name="Algade 3", address="Algade 3"))
        engine.start_run(prop.id)
        runs = engine.run_batch([prop.id, other.id, "prop-missing"])
        assert [r.property_id for r in runs] == [other.id]


class TestSafeMode:
    def test_success_leaves_property_untouched(self, store, prop, runs_path):
        engine = WorkflowEngine(store, steps=_steps(), safe_mode=True, runs_path=runs_path)
        run = engine.run(prop.id)
        assert run.status == RunStatus.COMPLETED
        record = store.get(prop.id)
        assert record.outreach_status == OutreachStatus.NY_KRAEVER_RESEARCH
        assert record.contact_email == ""
        assert engine.get_raw_research(prop.id)["analysis"]["owner_company_name"] == "Algade Ejendomme ApS"

    def test_failure_leaves_property_untouched(self, store, prop, runs_path):
        engine = WorkflowEngine(store, steps=_steps(analysis=_boom()), safe_mode=True, runs_path=runs_path)
        assert engine.run(prop.id).status == RunStatus.FAILED
        assert store.get(prop.id).outreach_status == OutreachStatus.NY_KRAEVER_RESEARCH

    def test_still_validates_transition(self, store, runs_path):
        sent = store.create(PropertyRecord(name="Sendt", address="Algade 2",
                                           outreach_status=OutreachStatus.FOERSTE_MAIL_SENDT))
        engine = WorkflowEngine(store, steps=_steps(), safe_mode=True, runs_path=runs_path)
        with pytest.raises(InvalidTransition):
            engine.start_run(sent.id)


class TestSweep:
    def test_sweeps_stale_run(self, engine, store, prop):
        run = engine.start_run(prop.id)
        later = datetime.now(timezone.utc) + timedelta(hours=1)
        stale = engine.sweep_stale(now=later)

        assert stale == [run]
        assert run.status == RunStatus.FAILED
        assert run.error == "stale run"
        assert all(s.status == StepStatus.SKIPPED for s in run.steps)
        assert not engine.is_running(prop.id)
        assert store.get(prop.id).outreach_status == OutreachStatus.FEJL

        # The id is free again
        assert engine.run(prop.id).status == RunStatus.COMPLETED

    def test_fresh_run_not_swept(self, engine, prop):
        engine.start_run(prop.id)
        assert engine.sweep_stale() == []
        assert engine.is_running(prop.id)

    def test_swept_run_results_discarded(self, engine, store, prop):
        run = engine.start_run(prop.id)
        engine.sweep_stale(now=datetime.now(timezone.utc) + timedelta(hours=1))
        engine.execute(run)
        assert run.status == RunStatus.FAILED
        record = store.get(prop.id)
        assert record.outreach_status == OutreachStatus.FEJL
        assert record.contact_email == ""

    def test_unfinished_run_swept_by_new_engine(self, engine, store, prop, runs_path):
        run = engine.start_run(prop.id)
        data = json.loads(Path(runs_path).read_text(encoding="utf-8"))
        assert data[-1]["runId"] == run.id
        assert data[-1]["status"] == "running"

        restarted = WorkflowEngine(store, steps=_steps(), runs_path=runs_path)
        assert restarted.is_running(prop.id)
        stale = restarted.sweep_stale(now=datetime.now(timezone.utc) + timedelta(hours=1))
        assert [r.id for r in stale] == [run.id]
        assert not restarted.is_running(prop.id)

        data = json.loads(Path(runs_path).read_text(encoding="utf-8"))
        assert [r["status"] for r in data] == ["failed"]


class TestHistory:
    def test_recent_runs_active_first(self, engine, store, prop):
        done = engine.run(prop.id)
        other = store.create(PropertyRecord(name="Algade 3", address="Algade 3"))
        active = engine.start_run(other.id)
        assert engine.get_recent_runs(5)[:2] == [active, done]

    def test_runs_persisted(self, engine, store, prop, runs_path):
        run = engine.run(prop.id)
        data = json.loads(Path(runs_path).read_text(encoding="utf-8"))
        assert data[-1]["runId"] == run.id
        assert data[-1]["propertyId"] == prop.id
        assert data[-1]["steps"][0]["stepId"] == "identity_lookup"
        assert data[-1]["qualityGatePassed"] is True

        reloaded = WorkflowEngine(store, steps=_steps(), runs_path=runs_path)
        assert reloaded.get_recent_runs(1)[0].id == run.id

    def test_history_is_not_truncated(self, engine, store, prop):
        for _ in range(205):
            engine.run(prop.id)
        assert len(engine.get_recent_runs(1000)) == 205

    def test_raw_research(self, engine, prop):
        engine.run(prop.id)
        raw = engine.get_raw_research(prop.id)
        assert raw["address"] == "Algade 1"
        assert raw["draft"]["subject"] == "Jeres gavl"
        assert prop.id in engine.get_all_raw_research()
        assert engine.get_raw_research("prop-missing") is None


class TestResearchStaged:
    @pytest.fixture
    def staging(self, tmp_path):
        return StagingStore(str(tmp_path / "staging"))

    def test_new_to_researched(self, engine, staging):
        staged = staging.insert({"address": "Algade 1", "city": "Roskilde"})
        run = engine.research_staged(staged.id, staging)

        assert run.status == RunStatus.COMPLETED
        record = staging.get(staged.id)
        assert record.stage == Stage.RESEARCHED
        assert record.owner_company == "Algade Ejendomme ApS"
        assert record.contact_email == "jens@algade.dk"
        assert record.email_draft_body == "Hej Jens"
        assert record.data_quality == "high"

    def test_failure_stays_researching_and_can_retry(self, store, staging, runs_path):
        staged = staging.insert({"address": "Algade 1"})
        engine = WorkflowEngine(store, steps=_steps(analysis=_boom()), runs_path=runs_path)
        assert engine.research_staged(staged.id, staging).status == RunStatus.FAILED
        assert staging.get(staged.id).stage == Stage.RESEARCHING

        engine.steps = _steps()
        assert engine.research_staged(staged.id, staging).status == RunStatus.COMPLETED
        assert staging.get(staged.id).stage == Stage.RESEARCHED

    def test_rejected_record_refused(self, engine, staging):
        staged = staging.insert({"address": "Algade 1"})
        staging.update(staged.id, {"stage": "rejected"})
        with pytest.raises(InvalidTransition):
            engine.research_staged(staged.id, staging)


# --- Steps ---

class TestDefaultSteps:
    def test_order_and_mandatory(self):
        steps = default_steps()
        assert [s.id for s in steps] == [
            "identity_lookup", "company_search", "website_scrape", "llm_analysis", "email_draft",
        ]
        assert [s.id for s in steps if s.mandatory] == ["llm_analysis"]

    def test_missing_collaborators_skip(self):
        steps = {s.id: s for s in default_steps()}
        with pytest.raises(StepSkipped):
            steps["company_search"].execute(ResearchContext(address="Algade 1"))

    def test_analysis_without_llm_fails(self):
        steps = {s.id: s for s in default_steps()}
        with pytest.raises(ValueError):
            steps["llm_analysis"].execute(ResearchContext(address="Algade 1"))

    def test_identity_lookup_tolerates_one_source(self):
        ois = MagicMock()
        ois.lookup.return_value = OisResult(bfe="999", owners=[OisOwner("Algade Ejendomme ApS")])
        bbr = MagicMock()
        bbr.lookup.side_effect = TransientCollaboratorError("bbr", "timeout")
        cvr = MagicMock()
        cvr.lookup.return_value = CvrResult(cvr="12345678", company_name="Algade Ejendomme ApS")

        step = {s.id: s for s in default_steps(ois=ois, bbr=bbr, cvr=cvr)}["identity_lookup"]
        delta = step.execute(ResearchContext(address="Algade 1", postal_code="4000", city="Roskilde"))

        cvr.lookup.assert_called_once_with("Algade Ejendomme ApS")
        assert delta["bbr"] is None
        assert delta["cvr"].cvr == "12345678"
        assert "BBR: ✗" in delta["details"]
        assert "OIS: ✓ Algade Ejendomme ApS" in delta["details"]

    def test_identity_lookup_all_failed(self):
        ois = MagicMock()
        ois.lookup.side_effect = TransientCollaboratorError("ois", "down")
        bbr = MagicMock()
        bbr.lookup.side_effect = TransientCollaboratorError("bbr", "down")
        step = {s.id: s for s in default_steps(ois=ois, bbr=bbr)}["identity_lookup"]
        with pytest.raises(TransientCollaboratorError):
            step.execute(ResearchContext(address="Algade 1"))

    def test_company_search_dedupes(self):
        hit = WebSearchResult(title="Algade", url="https://algade.dk")
        search = MagicMock(return_value=[hit])
        step = {s.id: s for s in default_steps(search=search)}["company_search"]
        ctx = ResearchContext(address="Algade 1", city="Roskilde",
                              cvr=CvrResult(cvr="12345678", company_name="Algade Ejendomme ApS"))
        delta = step.execute(ctx)
        assert search.call_count == 2
        assert delta["search_results"] == [hit]

    def test_email_draft_needs_contact(self):
        analyst = MagicMock()
        step = {s.id: s for s in default_steps(analyst=analyst)}["email_draft"]
        ctx = ResearchContext(address="Algade 1", analysis=ResearchAnalysis())
        with pytest.raises(StepSkipped):
            step.execute(ctx)
        analyst.draft_email.assert_not_called()

    def test_llm_analysis_validates_output(self):
        analyst = MagicMock()
        analyst.analyze.return_value = ResearchAnalysis(
            owner_company_name="Ukendt",
            recommended_contacts=[Contact(full_name="Ingen", email="opdigtet@nowhere.dk", confidence=0.9)],
        )
        step = {s.id: s for s in default_steps(analyst=analyst)}["llm_analysis"]
        delta = step.execute(ResearchContext(address="Algade 1"))
        assert delta["analysis"].best_contact is None
        assert delta["quality_gate_passed"] is False
        assert delta["corrections"]


class TestPickWebsite:
    def test_prefers_cvr_domain(self):
        ctx = ResearchContext(cvr=CvrResult(cvr="1", website="algade.dk"))
        assert pick_website(ctx) == "https://algade.dk"

    def test_skips_directories(self):
        ctx = ResearchContext(search_results=[
            WebSearchResult(title="", url="https://www.proff.dk/firma/algade"),
            WebSearchResult(title="", url="https://www.algade.dk/om-os"),
        ])
        assert pick_website(ctx) == "https://www.algade.dk"

    def test_nothing_usable(self):
        ctx = ResearchContext(website=WebsiteContent(url="https://x.dk"))
        assert pick_website(ctx) is None
