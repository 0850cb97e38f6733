"""
Ejendom Agent
=============
Lead discovery, staging and research workflow for outdoor advertising sites.

Finds buildings on busy streets and under scaffolding, deduplicates them,
stages them for review, researches the owners and queues the outreach mail.
"""

__version__ = "0.3.0"
