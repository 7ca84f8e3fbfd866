"""Pydantic configuration schema for the auto-reply service.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from autoreply.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

import os
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from autoreply.core.errors import CredentialError

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class ImapEndpointConfig(BaseModel):
    """Inbound (IMAP over TLS) endpoint."""

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, ge=1, le=65535, description="IMAPS port")
    verify_tls: bool = Field(
        default=True,
        description="Verify the server certificate (disable only for self-signed test servers)",
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("IMAP host cannot be empty")
        return v.strip()


class SmtpEndpointConfig(BaseModel):
    """Outbound (SMTP) endpoint."""

    host: str = Field(description="SMTP server hostname")
    port: int = Field(default=465, ge=1, le=65535, description="SMTP port")
    security: Literal["ssl", "starttls"] = Field(
        default="ssl",
        description="'ssl' for implicit TLS (465), 'starttls' for upgrade (587)",
    )
    verify_tls: bool = Field(
        default=True,
        description="Verify the server certificate",
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("SMTP host cannot be empty")
        return v.strip()


class AccountConfig(BaseModel):
    """A mailbox the service polls and answers from.

    The same credential authenticates both the IMAP and the SMTP session.
    Provide it inline via ``password`` or, preferably, name an environment
    variable with ``password_env`` (a .env file is loaded on startup).
    """

    model_config = {"frozen": True}

    email: str = Field(description="Mailbox address (also the IMAP/SMTP login)")
    active: bool = Field(default=True, description="Inactive accounts are skipped")
    imap: ImapEndpointConfig
    smtp: SmtpEndpointConfig
    password: SecretStr | None = Field(default=None, description="Inline credential")
    password_env: str | None = Field(
        default=None,
        description="Environment variable holding the credential",
    )

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError(f"'{v}' is not an email address")
        return v

    @model_validator(mode="after")
    def validate_credential_source(self) -> "AccountConfig":
        if self.password is None and not self.password_env:
            raise ValueError(f"Account {self.email} needs either 'password' or 'password_env'")
        return self

    def resolve_password(self) -> str:
        """Return the account credential.

        Raises:
            CredentialError: If password_env names an unset variable
        """
        if self.password is not None:
            return self.password.get_secret_value()
        value = os.environ.get(self.password_env or "")
        if not value:
            raise CredentialError(
                f"Environment variable {self.password_env} is not set for account {self.email}. "
                "Add it to .env or the service environment.",
                account=self.email,
            )
        return value


class ReplyTemplate(BaseModel):
    """The reply sent for every qualifying message in a run.

    ``sender_name`` and ``subject`` are optional: without a subject the reply
    answers under the original subject with a reply marker.
    """

    model_config = {"frozen": True}

    content: str = Field(description="Reply text, rendered verbatim above the quotation")
    sender_name: str | None = Field(
        default=None,
        description="Display name for the From header",
    )
    subject: str | None = Field(
        default=None,
        description="Fixed subject for every reply (overrides 'Re: <original>')",
    )

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Reply content cannot be empty")
        return v

    @field_validator("sender_name", "subject")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v


class MailboxConfig(BaseModel):
    """Folders visited per account, in order."""

    folders: list[str] = Field(
        default=["INBOX", "Junk"],
        min_length=1,
        description="Folders searched for unseen messages, in order",
    )

    @field_validator("folders")
    @classmethod
    def validate_folders(cls, v: list[str]) -> list[str]:
        cleaned: list[str] = []
        for name in v:
            if not name or not name.strip():
                raise ValueError("Folder name cannot be empty")
            if name not in cleaned:
                cleaned.append(name)
        return cleaned


class TimeoutsConfig(BaseModel):
    """Per-round-trip network timeouts (seconds)."""

    connect_seconds: float = Field(default=30.0, gt=0, le=600)
    operation_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Applies to each IMAP command (select, search, fetch, store, close)",
    )
    send_seconds: float = Field(default=60.0, gt=0, le=600)


class ScheduleConfig(BaseModel):
    """Scheduled trigger configuration."""

    interval_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="How often to poll all active accounts (minutes)",
    )


class LogLedgerConfig(BaseModel):
    """Operational log ledger configuration."""

    path: str = Field(default="logs/app.log", description="JSON-lines mirror file")
    max_entries: int = Field(default=1000, ge=1, le=100_000)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Log ledger path cannot be empty")
        if ".." in v:
            raise ValueError("Log ledger path cannot contain '..' (path traversal)")
        return v


class DatabaseConfig(BaseModel):
    """Processed-message store location."""

    path: str = Field(default="data/autoreply.db")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class AppConfig(BaseModel):
    """Root configuration schema for the auto-reply service.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone used to render the original message date in replies",
    )

    accounts: list[AccountConfig] = Field(default_factory=list)
    reply: ReplyTemplate | None = Field(
        default=None,
        description="Reply template; absent means no run should occur",
    )

    mailbox: MailboxConfig = Field(default_factory=MailboxConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    log_ledger: LogLedgerConfig = Field(default_factory=LogLedgerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(
                f"Unknown timezone '{v}' (use an IANA name like 'Asia/Shanghai')"
            ) from None
        return v

    @field_validator("accounts")
    @classmethod
    def validate_unique_accounts(cls, v: list[AccountConfig]) -> list[AccountConfig]:
        seen: set[str] = set()
        for account in v:
            key = account.email.lower()
            if key in seen:
                raise ValueError(f"Account {account.email} is configured more than once")
            seen.add(key)
        return v

    @property
    def active_accounts(self) -> list[AccountConfig]:
        """Accounts with ``active: true``, in configured order."""
        return [account for account in self.accounts if account.active]
