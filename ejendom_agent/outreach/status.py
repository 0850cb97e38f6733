"""
Outreach Status
===============
The CRM-visible lifecycle of a property, as a declarative transition table.

    NY_KRAEVER_RESEARCH -> RESEARCH_IGANGSAT -> RESEARCH_DONE_CONTACT_PENDING
      -> KLAR_TIL_UDSENDELSE -> FOERSTE_MAIL_SENDT -> OPFOELGNING_SENDT
      -> SVAR_MODTAGET -> LUKKET_VUNDET | LUKKET_TABT

FEJL can be entered from any non-terminal state and left again through
retry_research or reset. mark_ready is the manual jump to KLAR_TIL_UDSENDELSE
from any pre-ready state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import InvalidTransition


class OutreachStatus(str, Enum):
    NY_KRAEVER_RESEARCH = "NY_KRAEVER_RESEARCH"
    RESEARCH_IGANGSAT = "RESEARCH_IGANGSAT"
    RESEARCH_DONE_CONTACT_PENDING = "RESEARCH_DONE_CONTACT_PENDING"
    KLAR_TIL_UDSENDELSE = "KLAR_TIL_UDSENDELSE"
    FOERSTE_MAIL_SENDT = "FOERSTE_MAIL_SENDT"
    OPFOELGNING_SENDT = "OPFOELGNING_SENDT"
    SVAR_MODTAGET = "SVAR_MODTAGET"
    LUKKET_VUNDET = "LUKKET_VUNDET"
    LUKKET_TABT = "LUKKET_TABT"
    FEJL = "FEJL"


S = OutreachStatus

TERMINAL_STATUSES = frozenset({S.LUKKET_VUNDET, S.LUKKET_TABT})

# States from which mark_ready may jump straight to KLAR_TIL_UDSENDELSE
PRE_READY_STATUSES = frozenset({
    S.NY_KRAEVER_RESEARCH,
    S.RESEARCH_IGANGSAT,
    S.RESEARCH_DONE_CONTACT_PENDING,
    S.FEJL,
})

HAS_CONTACT_EMAIL = "has_contact_email"
HAS_EMAIL_DRAFT = "has_email_draft"


@dataclass(frozen=True)
class Transition:
    from_status: OutreachStatus
    to_status: OutreachStatus
    action: str
    label: str
    automatic: bool = False
    requires: Tuple[str, ...] = ()


TRANSITIONS: List[Transition] = [
    # Research phase
    Transition(S.NY_KRAEVER_RESEARCH, S.RESEARCH_IGANGSAT, "start_research",
               "Start AI research", automatic=True),
    Transition(S.RESEARCH_IGANGSAT, S.RESEARCH_DONE_CONTACT_PENDING, "research_done_no_email",
               "Research done (no email found)", automatic=True),
    Transition(S.RESEARCH_IGANGSAT, S.KLAR_TIL_UDSENDELSE, "research_done_with_email",
               "Research done (email found, draft ready)", automatic=True,
               requires=(HAS_CONTACT_EMAIL, HAS_EMAIL_DRAFT)),
    Transition(S.RESEARCH_IGANGSAT, S.FEJL, "research_failed",
               "Research failed", automatic=True),

    # Re-research
    Transition(S.RESEARCH_DONE_CONTACT_PENDING, S.RESEARCH_IGANGSAT, "retry_research",
               "Retry research"),
    Transition(S.FEJL, S.RESEARCH_IGANGSAT, "retry_research", "Retry after error"),
    Transition(S.KLAR_TIL_UDSENDELSE, S.RESEARCH_IGANGSAT, "retry_research", "Re-research"),

    # Outreach phase
    Transition(S.KLAR_TIL_UDSENDELSE, S.FOERSTE_MAIL_SENDT, "send_first_email",
               "Send first email", requires=(HAS_CONTACT_EMAIL, HAS_EMAIL_DRAFT)),
    Transition(S.FOERSTE_MAIL_SENDT, S.OPFOELGNING_SENDT, "send_followup",
               "Send follow-up", requires=(HAS_CONTACT_EMAIL,)),
    Transition(S.FOERSTE_MAIL_SENDT, S.SVAR_MODTAGET, "reply_received", "Reply received"),
    Transition(S.OPFOELGNING_SENDT, S.SVAR_MODTAGET, "reply_received", "Reply received"),

    # Closing
    Transition(S.SVAR_MODTAGET, S.LUKKET_VUNDET, "close_won", "Close as won"),
    Transition(S.SVAR_MODTAGET, S.LUKKET_TABT, "close_lost", "Close as lost"),
    Transition(S.FOERSTE_MAIL_SENDT, S.LUKKET_TABT, "close_lost", "No response, close"),
    Transition(S.OPFOELGNING_SENDT, S.LUKKET_TABT, "close_lost", "No response, close"),
    Transition(S.LUKKET_TABT, S.NY_KRAEVER_RESEARCH, "reopen", "Reopen for new attempt"),

    # Error recovery
    Transition(S.FEJL, S.NY_KRAEVER_RESEARCH, "reset", "Reset to new"),
]

# Any non-terminal state may fail
TRANSITIONS += [
    Transition(s, S.FEJL, "fail", "Processing error", automatic=True)
    for s in S
    if s not in TERMINAL_STATUSES and s != S.FEJL and s != S.RESEARCH_IGANGSAT
]

# Manual override
TRANSITIONS += [
    Transition(s, S.KLAR_TIL_UDSENDELSE, "mark_ready", "Mark ready for sending")
    for s in S
    if s in PRE_READY_STATUSES
]


@dataclass(frozen=True)
class StatusMeta:
    label: str
    phase: str
    auto_research_eligible: bool = False


STATUS_META: Dict[OutreachStatus, StatusMeta] = {
    S.NY_KRAEVER_RESEARCH: StatusMeta("Ny – kræver research", "research", True),
    S.RESEARCH_IGANGSAT: StatusMeta("Research i gang", "research"),
    S.RESEARCH_DONE_CONTACT_PENDING: StatusMeta("Researched – mangler kontakt", "research", True),
    S.KLAR_TIL_UDSENDELSE: StatusMeta("Klar til udsendelse", "outreach"),
    S.FOERSTE_MAIL_SENDT: StatusMeta("Første mail sendt", "outreach"),
    S.OPFOELGNING_SENDT: StatusMeta("Opfølgning sendt", "outreach"),
    S.SVAR_MODTAGET: StatusMeta("Svar modtaget", "outreach"),
    S.LUKKET_VUNDET: StatusMeta("Lukket – vundet", "closed"),
    S.LUKKET_TABT: StatusMeta("Lukket – tabt", "closed"),
    S.FEJL: StatusMeta("Fejl", "error", True),
}


def is_terminal(status: OutreachStatus) -> bool:
    return OutreachStatus(status) in TERMINAL_STATUSES


def available_transitions(status: OutreachStatus) -> List[Transition]:
    status = OutreachStatus(status)
    return [t for t in TRANSITIONS if t.from_status == status]


def can_transition(current: OutreachStatus, target: OutreachStatus) -> bool:
    target = OutreachStatus(target)
    return any(t.to_status == target for t in available_transitions(current))


def check_guards(transition: Transition, has_contact_email: bool = False,
                 has_email_draft: bool = False) -> Optional[str]:
    """Return the reason a guard blocks the transition, or None."""
    if HAS_CONTACT_EMAIL in transition.requires and not has_contact_email:
        return "requires a contact email address"
    if HAS_EMAIL_DRAFT in transition.requires and not has_email_draft:
        return "requires an email draft"
    return None


def validate_transition(
    current: OutreachStatus,
    target: Optional[OutreachStatus] = None,
    action: Optional[str] = None,
    has_contact_email: bool = False,
    has_email_draft: bool = False,
) -> Transition:
    """
    Resolve a move by target status, by action name, or both. When several
    transitions match, the first whose guards pass wins. Raises InvalidTransition.
    """
    current = OutreachStatus(current)
    target = OutreachStatus(target) if target else None
    candidates = [
        t for t in available_transitions(current)
        if (target is None or t.to_status == target) and (action is None or t.action == action)
    ]
    requested = target.value if target else str(action)
    if not candidates:
        raise InvalidTransition(current.value, requested)

    blocked = None
    for t in candidates:
        reason = check_guards(t, has_contact_email, has_email_draft)
        if reason is None:
            return t
        blocked = blocked or reason
    raise InvalidTransition(current.value, requested, blocked)


def can_mark_ready(status: OutreachStatus) -> bool:
    status = OutreachStatus(status)
    return status in PRE_READY_STATUSES or status == S.KLAR_TIL_UDSENDELSE
