#!/usr/bin/env python3
"""
Data model for the IMAP sync engine.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional


DEFAULT_MAX_MESSAGE_SIZE = 25 * 1024 * 1024  # 25 MiB


@dataclass(frozen=True)
class ConnectionConfig:
    """Settings for one IMAP account. Immutable once a run starts."""

    host: str
    port: int
    username: str
    password: str = field(repr=False)
    secure: bool = True
    tls_verify: bool = True
    connect_timeout: float = 10.0
    socket_timeout: float = 60.0

    def __post_init__(self):
        if not self.host:
            raise ValueError("IMAP host is required")
        if not self.username or not self.password:
            raise ValueError(f"Username and password are required for {self.host}")
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 1 <= self.port <= 65535:
            raise ValueError(f"Invalid IMAP port: {self.port}")
        if self.connect_timeout < 10.0:
            raise ValueError("connect_timeout may not be lower than 10 seconds")
        if self.socket_timeout <= 0:
            raise ValueError("socket_timeout must be positive")

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class SyncOptions:
    """Tuning knobs for a sync run."""

    batch_size: int = 50
    max_retries: int = 2
    retry_delay_ms: int = 1000
    max_mailboxes: int = 5
    max_messages_per_mailbox: Optional[int] = None
    max_message_size_bytes: int = DEFAULT_MAX_MESSAGE_SIZE
    skip_existing: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        if self.max_retries < 0:
            raise ValueError("max_retries may not be negative")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms may not be negative")
        if self.max_mailboxes < 1:
            raise ValueError("max_mailboxes must be a positive integer")
        if self.max_messages_per_mailbox is not None and self.max_messages_per_mailbox < 1:
            raise ValueError("max_messages_per_mailbox must be a positive integer")
        if self.max_message_size_bytes < 1:
            raise ValueError("max_message_size_bytes must be a positive integer")

    @property
    def message_limit(self) -> int:
        """Number of messages taken from each mailbox."""
        if self.max_messages_per_mailbox is None:
            return self.batch_size
        return self.max_messages_per_mailbox

    @property
    def retry_delay_seconds(self) -> float:
        return self.retry_delay_ms / 1000.0


@dataclass(frozen=True)
class MailboxDescriptor:
    path: str
    name: str
    delimiter: Optional[str] = None


@dataclass(frozen=True)
class MessageRef:
    """A message addressed either by UID or by sequence number."""

    UID = "uid"
    SEQUENCE = "seq"

    kind: str
    number: int

    @classmethod
    def uid(cls, number: int) -> "MessageRef":
        return cls(cls.UID, number)

    @classmethod
    def sequence(cls, number: int) -> "MessageRef":
        return cls(cls.SEQUENCE, number)

    @property
    def is_uid(self) -> bool:
        return self.kind == self.UID

    def __str__(self) -> str:
        if self.is_uid:
            return f"UID {self.number}"
        return f"sequence {self.number}"


@dataclass
class MailboxStat:
    name: str
    total_messages: int = 0
    synced_messages: int = 0
    skipped_messages: int = 0

    @property
    def processed_messages(self) -> int:
        return self.synced_messages + self.skipped_messages

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunStatistics:
    """Counters for one run. Only visible outside through the progress record."""

    start_time: str
    total_mailboxes: int = 0
    processed_mailboxes: int = 0
    total_emails: int = 0
    synced_emails: int = 0
    skipped_emails: int = 0
    errors: List[str] = field(default_factory=list)
    mailboxes: List[MailboxStat] = field(default_factory=list)
    end_time: str = ""
    elapsed_seconds: int = 0
    stopped: bool = False
    failed: bool = False

    @property
    def processed_emails(self) -> int:
        return self.synced_emails + self.skipped_emails

    @property
    def outcome(self) -> str:
        if self.failed:
            return "failed"
        if self.stopped:
            return "stopped"
        if self.errors:
            return "completed_with_errors"
        return "completed"

    def to_summary(self) -> Dict[str, Any]:
        summary = asdict(self)
        summary["outcome"] = self.outcome
        return summary
