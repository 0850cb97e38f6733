"""Tests for research: output validation, relevance penalties, quality gate, web and registry adapters."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent.errors import TransientCollaboratorError
from ejendom_agent.outreach import Contact, PropertyRecord
from ejendom_agent.research import (
    ContactRelevanceTracker, CvrClient, CvrResult, OisOwner, OisResult, ResearchAnalysis,
    ResearchAnalyst, ResearchContext, WebsiteContent, quality_gate, validate_analysis,
)
from ejendom_agent.research.analysis import FOLLOWUP_FALLBACK_BODY
from ejendom_agent.research.web import (
    extract_emails, extract_phones, fetch_page, scrape_website, strip_html,
)


def _response(status_code=200, payload=None, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.text = text
    resp.headers = headers or {}
    return resp


def _html(text):
    return _response(200, text=text, headers={"content-type": "text/html; charset=utf-8"})


@pytest.fixture
def ctx():
    return ResearchContext(
        address="Algade 1",
        postal_code="4000",
        city="Roskilde",
        ois=OisResult(bfe="999", owners=[OisOwner("Algade Ejendomme ApS", is_primary=True)]),
        cvr=CvrResult(
            cvr="12345678",
            company_name="Algade Ejendomme ApS",
            email="jens@algade.dk",
            owners=["Jens Hansen"],
            website="www.algade.dk",
        ),
    )


# --- Validation ---

class TestValidateAnalysis:
    def test_removes_unsourced_email(self, ctx):
        analysis = ResearchAnalysis(
            owner_company_name="Algade Ejendomme ApS",
            data_quality="high",
            recommended_contacts=[
                Contact(full_name="Opdigtet Person", email="fake@nowhere.dk", confidence=0.8),
                Contact(full_name="Jens Hansen", email="jens@algade.dk", confidence=0.9),
            ],
        )
        cleaned, corrections = validate_analysis(analysis, ctx)

        assert cleaned.best_contact.email == "jens@algade.dk"
        assert cleaned.recommended_contacts[0].full_name == "Jens Hansen"
        fake = cleaned.recommended_contacts[1]
        assert fake.email == ""
        assert fake.confidence == 0.15
        assert any("fake@nowhere.dk" in c for c in corrections)
        assert cleaned.data_quality == "high"
        # The input is not mutated
        assert analysis.recommended_contacts[0].email == "fake@nowhere.dk"

    def test_unknown_name_capped(self, ctx):
        analysis = ResearchAnalysis(
            owner_company_name="Algade Ejendomme ApS",
            recommended_contacts=[Contact(full_name="Ukendt Navn", email="jens@algade.dk", confidence=0.9)],
        )
        cleaned, corrections = validate_analysis(analysis, ctx)
        assert cleaned.recommended_contacts[0].confidence == 0.4
        assert corrections

    def test_owner_must_match_a_registry(self, ctx):
        analysis = ResearchAnalysis(owner_company_name="Helt Andet A/S", data_quality="high")
        cleaned, _ = validate_analysis(analysis, ctx)
        assert cleaned.owner_company_name == "Ukendt"
        assert cleaned.data_quality == "medium"

    def test_high_quality_needs_verified_email(self, ctx):
        analysis = ResearchAnalysis(owner_company_name="Algade Ejendomme ApS", data_quality="high")
        cleaned, corrections = validate_analysis(analysis, ctx)
        assert cleaned.data_quality == "medium"
        assert any("high to medium" in c for c in corrections)

    def test_no_registries_means_low_quality(self):
        ctx = ResearchContext(address="Algade 1", website=WebsiteContent(url="https://algade.dk",
                                                                           emails=["info@algade.dk"]))
        analysis = ResearchAnalysis(
            owner_company_name="Ukendt",
            recommended_contacts=[Contact(email="info@algade.dk", confidence=0.8)],
        )
        cleaned, _ = validate_analysis(analysis, ctx)
        assert cleaned.data_quality == "low"
        # Generic mailbox
        assert cleaned.recommended_contacts[0].confidence == 0.3

    def test_drops_empty_contacts(self, ctx):
        analysis = ResearchAnalysis(
            owner_company_name="Ukendt",
            recommended_contacts=[Contact(email="ghost@nowhere.dk", confidence=0.5)],
        )
        cleaned, corrections = validate_analysis(analysis, ctx)
        assert cleaned.recommended_contacts == []
        assert any("empty" in c for c in corrections)


class TestContactRelevanceTracker:
    def test_penalty_grows_with_reuse(self):
        tracker = ContactRelevanceTracker()
        tracker.record("jens@algade.dk", "prop-1")
        tracker.record("JENS@algade.dk", "prop-2")
        analysis = ResearchAnalysis(recommended_contacts=[
            Contact(full_name="Jens Hansen", email="jens@algade.dk", confidence=0.9),
        ])
        notes = tracker.apply(analysis)
        contact = analysis.recommended_contacts[0]
        assert contact.confidence == pytest.approx(0.4)
        assert contact.relevance == "direct"
        assert len(notes) == 1

    def test_three_properties_make_contact_indirect(self):
        tracker = ContactRelevanceTracker()
        for ref in ("prop-1", "prop-2", "prop-3"):
            tracker.record("admin@dea.dk", ref)
        analysis = ResearchAnalysis(recommended_contacts=[Contact(email="admin@dea.dk", confidence=0.9)])
        tracker.apply(analysis)
        contact = analysis.recommended_contacts[0]
        assert contact.relevance == "indirect"
        assert contact.confidence == 0.15

    def test_own_property_not_counted(self):
        tracker = ContactRelevanceTracker()
        tracker.record("jens@algade.dk", "addr:algade 1")
        analysis = ResearchAnalysis(recommended_contacts=[
            Contact(full_name="Jens Hansen", email="jens@algade.dk", confidence=0.9),
        ])
        assert tracker.apply(analysis, "addr:algade 1") == []
        assert analysis.recommended_contacts[0].confidence == 0.9

    def test_unseen_contact_untouched(self):
        tracker = ContactRelevanceTracker()
        analysis = ResearchAnalysis(recommended_contacts=[Contact(email="ny@algade.dk", confidence=0.8)])
        assert tracker.apply(analysis) == []
        assert analysis.recommended_contacts[0].confidence == 0.8

    def test_record_is_idempotent_per_property(self):
        tracker = ContactRelevanceTracker()
        tracker.record("jens@algade.dk", "prop-1")
        tracker.record("jens@algade.dk", "prop-1")
        tracker.record("", "prop-1")
        assert tracker.seen_for("jens@algade.dk") == ["prop-1"]


class TestQualityGate:
    def test_no_contact(self):
        passed, reason = quality_gate(ResearchAnalysis(), None)
        assert not passed
        assert "Ingen kontakt" in reason

    def test_low_quality(self):
        contact = Contact(email="jens@algade.dk", confidence=0.9)
        assert not quality_gate(ResearchAnalysis(data_quality="low"), contact)[0]

    def test_low_confidence_needs_high_quality(self):
        contact = Contact(email="jens@algade.dk", confidence=0.6)
        assert not quality_gate(ResearchAnalysis(data_quality="medium"), contact)[0]
        assert quality_gate(ResearchAnalysis(data_quality="high"), contact)[0]

    def test_indirect_contact_needs_high_confidence(self):
        contact = Contact(email="admin@dea.dk", confidence=0.75, relevance="indirect")
        assert not quality_gate(ResearchAnalysis(data_quality="medium"), contact)[0]

    def test_passes(self):
        contact = Contact(full_name="Jens Hansen", email="jens@algade.dk", confidence=0.9)
        passed, reason = quality_gate(ResearchAnalysis(data_quality="medium"), contact)
        assert passed
        assert "Jens Hansen" in reason


# --- LLM analyst ---

class TestResearchAnalyst:
    def test_analyze_ranks_only_listed_contacts(self, ctx):
        provider = MagicMock()
        provider.complete_json.side_effect = [
            {"owner_company_name": "Algade Ejendomme ApS", "owner_company_cvr": "12345678",
             "outdoor_potential_score": 14, "data_quality": "HIGH"},
            {"ranked_contacts": [
                # 0 is the OIS owner, 1 the CVR contact with an email
                {"index": 1, "confidence": 0.9, "relevance": "direct", "role": "ejer"},
                {"index": 7, "confidence": 1.0, "relevance": "direct"},
            ]},
        ]
        analysis = ResearchAnalyst(provider).analyze(ctx)

        assert analysis.owner_company_name == "Algade Ejendomme ApS"
        assert analysis.outdoor_potential_score == 10
        assert analysis.data_quality == "high"
        assert len(analysis.recommended_contacts) == 1
        assert analysis.best_contact.email == "jens@algade.dk"
        assert analysis.company_website == "https://www.algade.dk"
        assert analysis.company_domain == "algade.dk"

    def test_analyze_rejects_non_object(self, ctx):
        provider = MagicMock()
        provider.complete_json.return_value = ["not", "an", "object"]
        with pytest.raises(ValueError):
            ResearchAnalyst(provider).analyze(ctx)

    def test_draft_email(self, ctx):
        provider = MagicMock()
        provider.complete_json.return_value = {"subject": "Jeres facade", "body_text": "Hej Jens",
                                               "short_internal_note": "Ejer"}
        contact = Contact(full_name="Jens Hansen", email="jens@algade.dk")
        draft = ResearchAnalyst(provider).draft_email(ctx, contact, ResearchAnalysis())
        assert draft.subject == "Jeres facade"
        assert draft.body == "Hej Jens"
        assert draft.internal_note == "Ejer"

    def test_draft_email_needs_body(self, ctx):
        provider = MagicMock()
        provider.complete_json.return_value = {"subject": "Tom"}
        with pytest.raises(ValueError):
            ResearchAnalyst(provider).draft_email(ctx, Contact(email="jens@algade.dk"), ResearchAnalysis())

    def test_draft_followup_prefixes_subject(self):
        provider = MagicMock()
        provider.complete_json.return_value = {"body_text": "Hej igen Jens"}
        record = PropertyRecord(address="Algade 1", city="Roskilde", email_draft_subject="Jeres facade")
        draft = ResearchAnalyst(provider).draft_followup(record, 9)
        assert draft.subject == "Opfølgning: Jeres facade"
        assert draft.body == "Hej igen Jens"
        assert "9 dage" in draft.internal_note

    def test_draft_followup_keeps_followup_subject(self):
        provider = MagicMock()
        provider.complete_json.return_value = {"body_text": "Hej"}
        record = PropertyRecord(address="Algade 1", email_draft_subject="Opfølgning: Jeres facade")
        assert ResearchAnalyst(provider).draft_followup(record, 7).subject == "Opfølgning: Jeres facade"

    def test_draft_followup_empty_answer_uses_stock_text(self):
        provider = MagicMock()
        provider.complete_json.return_value = {"body_text": "  "}
        draft = ResearchAnalyst(provider).draft_followup(PropertyRecord(address="Algade 1"), 7)
        assert draft.body == FOLLOWUP_FALLBACK_BODY


# --- Web ---

class TestExtraction:
    def test_extract_emails(self):
        text = ("Skriv til Info@Algade.dk eller info@algade.dk, noreply@algade.dk, "
                "logo@2x.png og jens@algade.dk")
        assert extract_emails(text) == ["info@algade.dk", "jens@algade.dk"]

    def test_extract_phones(self):
        assert extract_phones("Ring 12 34 56 78 eller +45 87654321") == ["12 34 56 78", "+45 87654321"]

    def test_strip_html(self):
        assert strip_html("<p>Hej <b>verden</b></p><script>x()</script>") == "Hej verden"


class TestFetchPage:
    def test_returns_html(self):
        client = MagicMock()
        client.get.return_value = _html("<html>Hej</html>")
        assert fetch_page("https://algade.dk", client, resolve=False) == "<html>Hej</html>"

    def test_blocked_url_not_fetched(self):
        client = MagicMock()
        assert fetch_page("http://localhost/admin", client, resolve=False) is None
        client.get.assert_not_called()

    def test_redirect_to_private_address_blocked(self):
        client = MagicMock()
        client.get.return_value = _response(302, headers={"location": "http://127.0.0.1/admin"})
        assert fetch_page("https://algade.dk", client, resolve=False) is None
        assert client.get.call_count == 1

    def test_follows_safe_redirect(self):
        client = MagicMock()
        client.get.side_effect = [
            _response(301, headers={"location": "/forside"}),
            _html("<html>Forside</html>"),
        ]
        assert fetch_page("https://algade.dk", client, resolve=False) == "<html>Forside</html>"
        assert client.get.call_args[0][0] == "https://algade.dk/forside"

    def test_missing_page_is_none(self):
        client = MagicMock()
        client.get.return_value = _response(404)
        assert fetch_page("https://algade.dk/x", client, resolve=False) is None

    def test_non_html_is_none(self):
        client = MagicMock()
        client.get.return_value = _response(200, text="%PDF", headers={"content-type": "application/pdf"})
        assert fetch_page("https://algade.dk/a.pdf", client, resolve=False) is None

    def test_server_error_is_transient(self):
        client = MagicMock()
        client.get.return_value = _response(503)
        with pytest.raises(TransientCollaboratorError):
            fetch_page("https://algade.dk", client, resolve=False)


class TestScrapeWebsite:
    def test_follows_contact_page(self):
        pages = {
            "https://algade.dk": _html(
                '<html><title>Algade Ejendomme</title>'
                '<a href="mailto:info@algade.dk">Skriv</a> <a href="/kontakt">Kontakt</a></html>'
            ),
            "https://algade.dk/kontakt": _html("<p>Jens Hansen, jens@algade.dk, tlf 12 34 56 78</p>"),
        }

        def fake_get(url, **kwargs):
            return pages[url]

        client = MagicMock()
        client.get.side_effect = fake_get
        content = scrape_website("algade.dk", client, resolve=False)

        assert content.url == "https://algade.dk"
        assert content.title == "Algade Ejendomme"
        assert content.emails == ["info@algade.dk", "jens@algade.dk"]
        assert content.phones == ["12 34 56 78"]
        assert "Jens Hansen" in content.contact_page_text

    def test_unreachable_site_is_none(self):
        client = MagicMock()
        client.get.return_value = _response(404)
        assert scrape_website("https://algade.dk", client, resolve=False) is None


# --- Registries ---

class TestCvrClient:
    def test_lookup_by_number(self):
        client = MagicMock()
        client.get.return_value = _response(200, {
            "vat": 12345678, "name": "Algade Ejendomme ApS", "address": "Algade 1",
            "zipcode": 4000, "city": "Roskilde", "email": " Jens@Algade.dk ",
            "owners": [{"name": "Jens Hansen"}], "employees": "5", "companydomain": "algade.dk",
        })
        result = CvrClient(http_client=client).lookup("12345678")

        assert client.get.call_args[1]["params"] == {"country": "dk", "vat": "12345678"}
        assert result.cvr == "12345678"
        assert result.email == "jens@algade.dk"
        assert result.address == "Algade 1, 4000, Roskilde"
        assert result.owners == ["Jens Hansen"]
        assert result.employees == "5 ansatte"
        assert result.website == "algade.dk"

    def test_lookup_by_name(self):
        client = MagicMock()
        client.get.return_value = _response(200, {"error": "NOT_FOUND"})
        assert CvrClient(http_client=client).lookup("Algade Ejendomme") is None
        assert client.get.call_args[1]["params"]["name"] == "Algade Ejendomme"

    def test_empty_query(self):
        client = MagicMock()
        assert CvrClient(http_client=client).lookup("  ") is None
        client.get.assert_not_called()

    def test_not_found(self):
        client = MagicMock()
        client.get.return_value = _response(404)
        assert CvrClient(http_client=client).lookup("12345678") is None

    def test_server_error_is_transient(self):
        client = MagicMock()
        client.get.return_value = _response(502)
        with pytest.raises(TransientCollaboratorError):
            CvrClient(http_client=client).lookup("12345678")
