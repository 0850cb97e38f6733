"""
Configuration
=============
Load settings from ejendom-agent.yaml, env vars, or CLI args.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger("ejendom.config")

CONFIG_FILENAME = "ejendom-agent.yaml"
CONFIG_SEARCH_PATHS = [
    Path.cwd() / CONFIG_FILENAME,
    Path.home() / ".config" / "ejendom-agent" / CONFIG_FILENAME,
    Path.home() / ".ejendom-agent" / CONFIG_FILENAME,
]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass
class Config:
    """Application configuration."""
    # Storage
    data_dir: str = str(Path.home() / ".ejendom-agent" / "data")

    # LLM provider
    provider: str = "openai"  # openai, anthropic
    model: str = ""
    api_key: str = ""
    base_url: str = ""        # For OpenAI-compatible endpoints

    # Public registries
    cvr_api_url: str = "https://cvrapi.dk/api"
    cvr_user_agent: str = "EjendomAgent/1.0 (kontakt@example.dk)"
    dawa_api_url: str = "https://dawa.aws.dk"
    scaffolding_wfs_url: str = "https://wfs-kbhkort.kk.dk/k101/ows"

    # Research
    research_safe_mode: bool = False
    stale_run_minutes: int = 30
    step_attempts: int = 2

    # Discovery
    min_score: int = 6
    min_traffic: int = 10000

    # Mail
    email_rate_limit_per_hour: int = 200
    email_max_attempts: int = 3
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    imap_host: str = "imap.gmail.com"
    sender_email: str = ""
    sender_name: str = ""

    # Scheduler
    drain_schedule: str = "every 15m"
    sweep_schedule: str = "every 10m"
    reply_sync_schedule: str = "every 30m"

    @classmethod
    def load(cls, path: str = None) -> "Config":
        """Load config from YAML file, env vars, or defaults."""
        config = cls()

        yaml_path = Path(path) if path else None
        if not yaml_path:
            for search_path in CONFIG_SEARCH_PATHS:
                if search_path.exists():
                    yaml_path = search_path
                    break

        if yaml_path and yaml_path.exists():
            config._load_yaml(yaml_path)
            log.info(f"Loaded config from {yaml_path}")

        # Env vars override YAML
        config._load_env()

        if not config.model:
            config.model = {
                "openai": "gpt-4o-mini",
                "anthropic": "claude-sonnet-4-5-20250929",
            }.get(config.provider, "gpt-4o-mini")

        return config

    def _load_yaml(self, path: Path):
        """Load from YAML file."""
        try:
            import yaml
        except ImportError:
            log.warning("PyYAML not installed. Config file ignored. pip install pyyaml")
            return

        with open(path, 'r', encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        for key, value in data.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                log.warning(f"Unknown config key ignored: {key}")

    def _load_env(self):
        """Override with environment variables."""
        if os.getenv("OPENAI_API_KEY") and not os.getenv("EJENDOM_PROVIDER"):
            self.provider = "openai"
            self.api_key = os.getenv("OPENAI_API_KEY", "")
        elif os.getenv("ANTHROPIC_API_KEY") and not os.getenv("EJENDOM_PROVIDER"):
            self.provider = "anthropic"
            self.api_key = os.getenv("ANTHROPIC_API_KEY", "")

        if os.getenv("EJENDOM_PROVIDER"):
            self.provider = os.getenv("EJENDOM_PROVIDER", self.provider)
        if os.getenv("EJENDOM_API_KEY"):
            self.api_key = os.getenv("EJENDOM_API_KEY", self.api_key)
        if os.getenv("OPENAI_MODEL") and self.provider == "openai":
            self.model = os.getenv("OPENAI_MODEL", self.model)
        if os.getenv("EJENDOM_MODEL"):
            self.model = os.getenv("EJENDOM_MODEL", self.model)

        string_vars = {
            "EJENDOM_DATA_DIR": "data_dir",
            "CVR_API_URL": "cvr_api_url",
            "CVR_USER_AGENT": "cvr_user_agent",
            "DAWA_API_URL": "dawa_api_url",
            "SMTP_HOST": "smtp_host",
            "SMTP_USER": "smtp_user",
            "SMTP_PASSWORD": "smtp_password",
            "IMAP_HOST": "imap_host",
            "SENDER_EMAIL": "sender_email",
            "SENDER_NAME": "sender_name",
        }
        for env, attr in string_vars.items():
            if os.getenv(env):
                setattr(self, attr, os.getenv(env))

        int_vars = {
            "EMAIL_RATE_LIMIT_PER_HOUR": "email_rate_limit_per_hour",
            "SMTP_PORT": "smtp_port",
            "STALE_RUN_MINUTES": "stale_run_minutes",
        }
        for env, attr in int_vars.items():
            raw = os.getenv(env)
            if raw:
                try:
                    setattr(self, attr, int(raw))
                except ValueError:
                    log.warning(f"Ignoring non-integer {env}={raw!r}")

        self.research_safe_mode = _env_bool("RESEARCH_SAFE_MODE", self.research_safe_mode)

    def create_provider(self):
        """Create an LLM provider from config."""
        from .providers import OpenAIProvider, AnthropicProvider

        kwargs = {}
        if self.base_url:
            kwargs["base_url"] = self.base_url

        if self.provider == "openai":
            return OpenAIProvider(api_key=self.api_key, model=self.model, **kwargs)
        elif self.provider == "anthropic":
            return AnthropicProvider(api_key=self.api_key, model=self.model, **kwargs)
        else:
            raise ValueError(f"Unknown provider: {self.provider}. Valid: openai, anthropic")

    def has_llm(self) -> bool:
        return bool(self.api_key)

    def create_context(self, **kwargs):
        """Build the AppContext (stores, engine, queue, pipeline) for this config."""
        from .context import build_context
        return build_context(self, **kwargs)
