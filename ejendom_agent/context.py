"""
Application Context
===================
Wires stores, collaborators, the workflow engine, the dispatch queue and the
discovery pipeline from a Config. The CLI and the HTTP server both build one.

Storage layout:
    <data_dir>/
        staging/staged.json
        properties/properties.json
        runs/runs.json
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from .discovery import DawaClient, DiscoveryPipeline, OutdoorScorer, ScaffoldingSource
from .outreach import DispatchQueue, PropertyStore
from .outreach.mailer import ImapInbox, SmtpTransport
from .research import (
    BbrClient, ContactRelevanceTracker, CvrClient, OisClient, ResearchAnalyst,
)
from .research.web import scrape_website, search
from .staging import StagingStore
from .workflow import WorkflowEngine, default_steps

log = logging.getLogger("ejendom.context")


@dataclass
class AppContext:
    config: Any
    staging: StagingStore
    property_store: PropertyStore
    engine: WorkflowEngine
    queue: DispatchQueue
    pipeline: DiscoveryPipeline
    provider: Optional[Any] = None
    analyst: Optional[ResearchAnalyst] = None
    inbox: Optional[ImapInbox] = None

    @property
    def has_llm(self) -> bool:
        return self.provider is not None


def _provider_or_none(config):
    if not config.has_llm():
        log.warning("No LLM API key configured. Scoring and analysis are unavailable.")
        return None
    try:
        return config.create_provider()
    except (ImportError, ValueError) as e:
        log.warning(f"LLM provider unavailable: {e}")
        return None


def build_context(config, provider=None, transport=None) -> AppContext:
    data_dir = Path(config.data_dir).expanduser()
    provider = provider if provider is not None else _provider_or_none(config)

    staging = StagingStore(str(data_dir / "staging"))
    property_store = PropertyStore(str(data_dir / "properties"))

    dawa = DawaClient(config.dawa_api_url)
    pipeline = DiscoveryPipeline(
        staging,
        dawa=dawa,
        scorer=OutdoorScorer(provider) if provider else None,
        scaffolding=ScaffoldingSource(config.scaffolding_wfs_url, dawa=dawa),
        property_store=property_store,
    )

    analyst = ResearchAnalyst(provider) if provider else None
    tracker = ContactRelevanceTracker()
    steps = default_steps(
        ois=OisClient(config.dawa_api_url),
        bbr=BbrClient(config.dawa_api_url),
        cvr=CvrClient(config.cvr_api_url, user_agent=config.cvr_user_agent),
        search=search,
        scrape=scrape_website,
        analyst=analyst,
        tracker=tracker,
    )
    engine = WorkflowEngine(
        property_store,
        steps=steps,
        safe_mode=config.research_safe_mode,
        stale_after=timedelta(minutes=config.stale_run_minutes),
        step_attempts=config.step_attempts,
        runs_path=str(data_dir / "runs" / "runs.json"),
        tracker=tracker,
    )

    queue = DispatchQueue(
        transport or SmtpTransport(config),
        rate_limit_per_hour=config.email_rate_limit_per_hour,
        max_attempts=config.email_max_attempts,
        property_store=property_store,
    )

    log.info(f"Context ready: data in {data_dir}, LLM {'on' if provider else 'off'}, "
             f"safe mode {'on' if config.research_safe_mode else 'off'}")
    return AppContext(
        config=config,
        staging=staging,
        property_store=property_store,
        engine=engine,
        queue=queue,
        pipeline=pipeline,
        provider=provider,
        analyst=analyst,
        inbox=ImapInbox(config),
    )
