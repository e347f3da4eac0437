"""
Bill Mailer -- Configuration Module

Centralizes all configuration for the bill mailer.
Loads defaults from dataclasses, overlays any overrides from config.yaml,
then overlays secrets from environment variables.

Usage:
    from billmail.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    cfg.validate(require_mail=True)            # raises ConfigError early
    print(cfg.mail.sender_email)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # billmail/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
TEMPLATE_DIR = _THIS_DIR / "templates"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_ENV_PREFIX = "BILLMAIL_"


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


def is_valid_email(value: str | None) -> bool:
    """True when *value* looks like a single mailbox address."""
    return bool(value) and EMAIL_PATTERN.match(value) is not None


# ===================================================================
# 1. Mail transport
# ===================================================================

@dataclass
class MailSettings:
    """SMTP relay and sender identity for outgoing bills."""
    host: str = "smtp.gmail.com"
    port: int = 587
    use_tls: bool = True
    timeout_seconds: float = 30.0
    username: str = ""        # env BILLMAIL_SMTP_USERNAME
    password: str = ""        # env BILLMAIL_SMTP_PASSWORD
    sender_email: str = ""    # env BILLMAIL_SENDER_EMAIL
    sender_name: str = ""
    signature: str = "Billing Team"


# ===================================================================
# 2. Access control
# ===================================================================

@dataclass
class AccessSettings:
    """Who may use the console.  Either an allow-listed email or the admin role.

    Roles are assigned here by the deployer (email -> role), never by the
    operator at sign-in.
    """
    admin_emails: list[str] = field(default_factory=list)   # env BILLMAIL_ADMIN_EMAILS
    admin_role: str = "admin"
    roles: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.admin_emails = normalize_allow_list(self.admin_emails)
        self.roles = normalize_roles(self.roles)


def normalize_allow_list(values: list[str] | str | None) -> list[str]:
    """Trim, lowercase and de-duplicate allow-list entries.

    Accepts a list or a comma-separated string.

    >>> normalize_allow_list(" A@x.com, ,b@y.com,a@x.com")
    ['a@x.com', 'b@y.com']
    """
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    seen: list[str] = []
    for value in values:
        email = str(value).strip().lower()
        if email and email not in seen:
            seen.append(email)
    return seen


def normalize_roles(values: dict[str, str] | None) -> dict[str, str]:
    """Lowercase the email keys and trim the roles; blank entries are dropped."""
    roles: dict[str, str] = {}
    if not isinstance(values, dict):
        return roles
    for email, role in values.items():
        email = str(email).strip().lower()
        role = str(role or "").strip()
        if email and role:
            roles[email] = role
    return roles


# ===================================================================
# 3. Storage
# ===================================================================

@dataclass
class StorageSettings:
    """SQLite database holding the contact directory and the send log."""
    db_path: str = "data/billmail.db"       # env BILLMAIL_DB_PATH

    @property
    def resolved_db_path(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 4. Archive conventions
# ===================================================================

@dataclass
class ArchiveSettings:
    """Fixed naming conventions of the uploaded bill archives."""
    manifest_name: str = "manifest.json"
    fallback_prefix: str = "Bill_"
    pdf_extension: str = ".pdf"
    # Summary documents that share the bill prefix but have no recipient.
    excluded_prefixes: list[str] = field(default_factory=lambda: [
        "Bill_Admin_",
        "Summary_Admin_Closing_Adjustment_",
    ])


# ===================================================================
# 5. Logging
# ===================================================================

@dataclass
class LoggingSettings:
    level: str = "INFO"
    log_file: str = ""                      # empty = console only
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


# ===================================================================
# 6. Operator identity (console / CLI)
# ===================================================================

@dataclass
class OperatorSettings:
    """Identity used when no external identity provider is wired in."""
    email: str = ""                          # env BILLMAIL_OPERATOR_EMAIL
    user_id: str = ""


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class AppConfig:
    """Top-level configuration container for the bill mailer."""
    mail: MailSettings = field(default_factory=MailSettings)
    access: AccessSettings = field(default_factory=AccessSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    operator: OperatorSettings = field(default_factory=OperatorSettings)

    def validate(self, require_mail: bool = False) -> AppConfig:
        """Check required fields, raising ConfigError listing every problem.

        Mail settings are only required for code paths that send.
        Returns self so calls can be chained off get_config().
        """
        problems: list[str] = []

        if not self.storage.db_path:
            problems.append("storage.db_path is required")
        if not self.access.admin_emails and not self.access.admin_role:
            problems.append("access.admin_emails or access.admin_role is required")
        if not self.archive.fallback_prefix:
            problems.append("archive.fallback_prefix is required")

        if require_mail:
            if not is_valid_email(self.mail.sender_email):
                problems.append("mail.sender_email is missing or invalid")
            if not self.mail.host:
                problems.append("mail.host is required")
            if not (0 < int(self.mail.port) < 65536):
                problems.append(f"mail.port out of range: {self.mail.port}")

        if problems:
            raise ConfigError(problems)
        return self


# ===================================================================
# YAML / environment loading
# ===================================================================

def _apply_yaml_to_config(cfg: AppConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto an AppConfig instance."""
    _section_map = {
        "mail": cfg.mail,
        "access": cfg.access,
        "storage": cfg.storage,
        "archive": cfg.archive,
        "logging": cfg.logging,
        "operator": cfg.operator,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)

    cfg.access.admin_emails = normalize_allow_list(cfg.access.admin_emails)
    cfg.access.roles = normalize_roles(cfg.access.roles)


def _apply_env_to_config(cfg: AppConfig, environ: dict[str, str]) -> None:
    """Overlay secrets and deployment-specific values from the environment."""

    def _get(name: str) -> str:
        return environ.get(_ENV_PREFIX + name, "").strip()

    if _get("SMTP_USERNAME"):
        cfg.mail.username = _get("SMTP_USERNAME")
    if _get("SMTP_PASSWORD"):
        cfg.mail.password = _get("SMTP_PASSWORD")
    if _get("SENDER_EMAIL"):
        cfg.mail.sender_email = _get("SENDER_EMAIL")
    if _get("ADMIN_EMAILS"):
        cfg.access.admin_emails = normalize_allow_list(_get("ADMIN_EMAILS"))
    if _get("DB_PATH"):
        cfg.storage.db_path = _get("DB_PATH")
    if _get("OPERATOR_EMAIL"):
        cfg.operator.email = _get("OPERATOR_EMAIL")


def get_config(
    yaml_path: Optional[str | Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> AppConfig:
    """Build an AppConfig from defaults, an optional YAML file and the environment.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, only defaults and environment apply.
        environ: Mapping to read ``BILLMAIL_*`` variables from.  Defaults
                 to ``os.environ``.

    Returns:
        Populated (not yet validated) AppConfig instance.
    """
    cfg = AppConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)

    _apply_env_to_config(cfg, dict(os.environ) if environ is None else environ)
    return cfg
