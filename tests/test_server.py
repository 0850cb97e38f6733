"""Tests for the HTTP server: routes, error mapping and authentication."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent import server
from ejendom_agent.config import Config
from ejendom_agent.errors import TransientCollaboratorError
from ejendom_agent.outreach import OutreachStatus, PropertyRecord
from ejendom_agent.research.models import EmailDraft


@pytest.fixture
def ctx(tmp_path):
    config = Config(data_dir=str(tmp_path))
    transport = MagicMock()
    transport.send.return_value = {"success": True, "message_id": "<id@test>"}
    server._config = config
    server._ctx = config.create_context(transport=transport)
    server._auth_token = ""
    yield server._ctx
    server._ctx = None
    server._config = None
    server._auth_token = ""


@pytest.fixture
def client(ctx):
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok"}


class TestStaging:
    def test_insert_and_conflict(self, client):
        resp = client.post("/staging", json={"address": "Algade 1", "city": "Roskilde"})
        assert resp.status_code == 201
        staged_id = resp.get_json()["id"]

        resp = client.post("/staging", json={"address": "  algade 1 "})
        assert resp.status_code == 409
        assert resp.get_json()["existing_id"] == staged_id

    def test_insert_needs_address(self, client):
        assert client.post("/staging", json={"city": "Roskilde"}).status_code == 400

    def test_body_must_be_object(self, client):
        assert client.post("/staging", json=["Algade 1"]).status_code == 400

    def test_list_and_counts(self, client):
        client.post("/staging", json={"address": "Algade 1"})
        client.post("/staging", json={"address": "Algade 2"})
        data = client.get("/staging?stage=new").get_json()
        assert data["count"] == 2
        assert client.get("/staging/counts").get_json()["new"] == 2

    def test_unknown_stage_filter(self, client):
        assert client.get("/staging?stage=bogus").status_code == 400

    def test_invalid_transition_is_400(self, client):
        staged_id = client.post("/staging", json={"address": "Algade 1"}).get_json()["id"]
        resp = client.patch(f"/staging/{staged_id}", json={"stage": "approved"})
        assert resp.status_code == 400
        assert "Invalid transition" in resp.get_json()["error"]

    def test_patch_fields(self, client):
        staged_id = client.post("/staging", json={"address": "Algade 1"}).get_json()["id"]
        resp = client.patch(f"/staging/{staged_id}", json={"notes": "Hjørneejendom"})
        assert resp.status_code == 200
        assert resp.get_json()["notes"] == "Hjørneejendom"

    def test_unknown_id_is_404(self, client):
        assert client.patch("/staging/stg-missing", json={"notes": "x"}).status_code == 404
        assert client.post("/staging/stg-missing/approve").status_code == 404

    def test_delete(self, client):
        staged_id = client.post("/staging", json={"address": "Algade 1"}).get_json()["id"]
        assert client.delete(f"/staging/{staged_id}").status_code == 200
        assert client.delete(f"/staging/{staged_id}").status_code == 404

    def test_bulk_reject(self, client):
        staged_id = client.post("/staging", json={"address": "Algade 1"}).get_json()["id"]
        data = client.post("/staging/reject", json={"ids": [staged_id, "stg-missing"]}).get_json()
        assert data["rejected"] == 1
        assert data["failed"] == 1
        assert "stg-missing" in data["errors"]

    def test_reject_needs_list(self, client):
        assert client.post("/staging/reject", json={"ids": "stg-1"}).status_code == 400

    def test_research_without_llm_is_degraded(self, client):
        staged_id = client.post("/staging", json={"address": "Algade 1"}).get_json()["id"]
        resp = client.post(f"/staging/{staged_id}/research")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["error"] == "No LLM provider configured"
        assert "OPENAI_API_KEY" in data["hint"]


class TestDiscovery:
    def test_street_requires_fields(self, client):
        assert client.post("/discover/street", json={"street": "", "city": "Roskilde"}).status_code == 400

    def test_numbers_validated(self, client):
        resp = client.post("/discover/street", json={"street": "Xyz", "city": "Ukendtby", "min_score": "høj"})
        assert resp.status_code == 400

    def test_collaborator_failure_is_degraded(self, client, ctx):
        ctx.pipeline.dawa = MagicMock()
        ctx.pipeline.dawa.scan_street.side_effect = TransientCollaboratorError("dawa", "timeout")
        resp = client.post("/discover/street", json={"street": "Xyz", "city": "Ukendtby", "min_traffic": 0})
        assert resp.status_code == 200
        data = resp.get_json()
        assert "timeout" in data["error"]
        assert "hint" in data
        assert data["result"]["street"] == "Xyz"

    def test_scaffolding(self, client, ctx):
        ctx.pipeline.scaffolding = MagicMock()
        ctx.pipeline.scaffolding.fetch_permits.return_value = []
        resp = client.post("/discover/scaffolding", json={})
        assert resp.status_code == 200
        assert resp.get_json()["created"] == 0
        ctx.pipeline.scaffolding.fetch_permits.assert_called_once_with("København")


class TestProperties:
    def test_list(self, client, ctx):
        ctx.property_store.create(PropertyRecord(name="Algade 1", address="Algade 1"))
        data = client.get("/properties?status=NY_KRAEVER_RESEARCH").get_json()
        assert data["count"] == 1

    def test_unknown_status_filter(self, client):
        assert client.get("/properties?status=bogus").status_code == 400

    def test_mark_ready(self, client, ctx):
        prop = ctx.property_store.create(PropertyRecord(name="Algade 1", address="Algade 1"))
        data = client.post("/properties/mark-ready", json={"ids": [prop.id, "prop-missing"]}).get_json()
        assert data["updated"] == [prop.id]
        assert "prop-missing" in data["failed"]
        assert ctx.property_store.get(prop.id).outreach_status == OutreachStatus.KLAR_TIL_UDSENDELSE

    def test_mark_ready_needs_ids(self, client):
        assert client.post("/properties/mark-ready", json={}).status_code == 400

    def test_research_without_llm_is_degraded(self, client, ctx):
        prop = ctx.property_store.create(PropertyRecord(name="Algade 1", address="Algade 1"))
        resp = client.post(f"/properties/{prop.id}/research")
        assert resp.status_code == 200
        assert "error" in resp.get_json()


class TestRuns:
    def test_runs_empty(self, client):
        assert client.get("/runs").get_json() == {"runs": []}

    def test_limit_validated(self, client):
        assert client.get("/runs?limit=abc").status_code == 400

    def test_raw_research_missing(self, client):
        assert client.get("/raw-research/prop-missing").status_code == 404
        assert client.get("/raw-research").get_json() == {}


class TestQueue:
    def test_enqueue_and_drain(self, client):
        resp = client.post("/queue", json={"to": "jens@algade.dk", "subject": "Hej", "body": "Tekst"})
        assert resp.status_code == 201
        assert resp.get_json()["status"] == "queued"
        assert client.get("/queue/stats").get_json()["queued"] == 1

        data = client.post("/queue/drain").get_json()
        assert data["sent"] == 1
        assert client.get("/queue/stats").get_json()["sent"] == 1

    def test_invalid_recipient(self, client):
        resp = client.post("/queue", json={"to": "ingen", "subject": "Hej", "body": "Tekst"})
        assert resp.status_code == 400

    def test_enqueue_property_needs_ready_status(self, client, ctx):
        prop = ctx.property_store.create(PropertyRecord(
            name="Algade 1", address="Algade 1", contact_email="jens@algade.dk",
            email_draft_subject="Hej", email_draft_body="Tekst",
        ))
        assert client.post("/queue", json={"property_id": prop.id}).status_code == 400

        ctx.property_store.mark_ready(prop.id)
        resp = client.post("/queue", json={"property_id": prop.id})
        assert resp.status_code == 201
        assert resp.get_json()["to"] == "jens@algade.dk"

    def test_unknown_property(self, client):
        assert client.post("/queue", json={"property_id": "prop-missing"}).status_code == 404


class TestFollowups:
    def _sent(self, ctx, days_ago=10):
        store = ctx.property_store
        prop = store.create(PropertyRecord(
            name="Algade 1", address="Algade 1", contact_email="jens@algade.dk",
            email_draft_subject="Hej", email_draft_body="Tekst",
        ))
        store.mark_ready(prop.id)
        store.set_status(prop.id, OutreachStatus.FOERSTE_MAIL_SENDT)
        sent_at = datetime.now(timezone.utc) - timedelta(days=days_ago)
        store.update(prop.id, first_email_sent_at=sent_at.isoformat())
        return prop

    def test_candidates(self, client, ctx):
        prop = self._sent(ctx)
        data = client.get("/followups?days=7").get_json()
        assert data["count"] == 1
        assert data["candidates"][0]["property_id"] == prop.id
        assert client.get("/followups?days=14").get_json()["count"] == 0

    def test_days_validated(self, client):
        assert client.get("/followups?days=soon").status_code == 400

    def test_prepare_without_llm_is_degraded(self, client, ctx):
        self._sent(ctx)
        resp = client.post("/followups/prepare", json={})
        assert resp.status_code == 200
        assert "OPENAI_API_KEY" in resp.get_json()["hint"]

    def test_prepare_then_send(self, client, ctx):
        prop = self._sent(ctx)
        ctx.analyst = MagicMock()
        ctx.analyst.draft_followup.return_value = EmailDraft(subject="Opfølgning: Hej", body="Hej igen")
        data = client.post("/followups/prepare", json={"days": 7, "limit": 5}).get_json()
        assert data["prepared"] == 1

        resp = client.post("/queue", json={"property_id": prop.id})
        assert resp.status_code == 201
        assert resp.get_json()["kind"] == "followup"
        client.post("/queue/drain")
        assert ctx.property_store.get(prop.id).outreach_status == OutreachStatus.OPFOELGNING_SENDT


class TestDashboard:
    def test_dashboard(self, client):
        data = client.get("/dashboard").get_json()
        assert set(data) == {"staging", "properties", "queue", "runs", "discoveries", "llm"}
        assert data["llm"] is False

    def test_transient_error_is_degraded(self, client, ctx):
        ctx.staging.counts = MagicMock(side_effect=TransientCollaboratorError("dawa", "down"))
        resp = client.get("/dashboard")
        assert resp.status_code == 200
        assert "DAWA" in resp.get_json()["hint"]


class TestAuth:
    def test_token_required(self, client):
        server._auth_token = "secret"
        assert client.get("/staging").status_code == 401
        assert client.get("/staging", headers={"Authorization": "Bearer wrong"}).status_code == 403
        assert client.get("/staging", headers={"Authorization": "Bearer secret"}).status_code == 200

    def test_health_is_open(self, client):
        server._auth_token = "secret"
        assert client.get("/health").status_code == 200
