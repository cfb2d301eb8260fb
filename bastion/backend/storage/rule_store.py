"""
storage/rule_store.py

Versioned, copy-on-write store of WAF-style signature rules.

Readers call snapshot() and get an immutable RuleSet; they never take a
lock. Writers (startup load, hot reload, rule management API) build a
complete new RuleSet under the write lock and swap the reference, so a
detection layer in the middle of an event keeps matching against the
snapshot it started with.

Rule file format (JSON list, or {"rules": [...]}):
    {
      "id": "sql_injection",
      "category": "injection",
      "patterns": ["..."],
      "severity": "critical",
      "action": "block",
      "target": "content",          # content | user_agent | both
      "enabled": true,
      "description": "...",
      "checksum": "<sha256>"        # optional, see storage/integrity.py
    }
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from ..engine.models import Severity
from ..errors import ConfigurationError, IntegrityError
from ..metrics import METRICS
from .integrity import verify_record

logger = logging.getLogger(__name__)


class RuleCategory(str, Enum):
    INJECTION         = "injection"
    XSS               = "xss"
    PATH_TRAVERSAL    = "path_traversal"
    COMMAND_INJECTION = "command_injection"
    BOT               = "bot"


class RuleAction(str, Enum):
    BLOCK = "block"
    LOG   = "log"


_TARGETS = ("content", "user_agent", "both")


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Rule:
    id: str
    category: RuleCategory
    patterns: tuple[re.Pattern, ...]
    severity: Severity
    action: RuleAction = RuleAction.BLOCK
    target: str = "content"
    enabled: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Rule":
        """Build a Rule, raising ConfigurationError on any syntax problem."""
        if not isinstance(d, Mapping):
            raise ConfigurationError(f"rule record must be an object, got {type(d).__name__}")
        rule_id = str(d.get("id") or "").strip()
        if not rule_id:
            raise ConfigurationError("rule without an id")
        try:
            category = RuleCategory(str(d.get("category", "")).lower())
        except ValueError as exc:
            raise ConfigurationError(f"rule {rule_id!r}: unknown category {d.get('category')!r}") from exc
        try:
            severity = Severity(str(d.get("severity", "")).lower())
        except ValueError as exc:
            raise ConfigurationError(f"rule {rule_id!r}: unknown severity {d.get('severity')!r}") from exc
        try:
            action = RuleAction(str(d.get("action", "block")).lower())
        except ValueError as exc:
            raise ConfigurationError(f"rule {rule_id!r}: unknown action {d.get('action')!r}") from exc

        target = str(d.get("target", "content")).lower()
        if target not in _TARGETS:
            raise ConfigurationError(f"rule {rule_id!r}: target must be one of {_TARGETS}")

        raw_patterns = d.get("patterns")
        if isinstance(raw_patterns, str):
            raw_patterns = [raw_patterns]
        if not raw_patterns:
            raise ConfigurationError(f"rule {rule_id!r}: no patterns")
        if not isinstance(raw_patterns, (list, tuple)) or not all(isinstance(p, str) for p in raw_patterns):
            raise ConfigurationError(f"rule {rule_id!r}: patterns must be a string or a list of strings")
        compiled = []
        for pattern in raw_patterns:
            try:
                compiled.append(re.compile(str(pattern), re.IGNORECASE))
            except re.error as exc:
                raise ConfigurationError(f"rule {rule_id!r}: invalid pattern {pattern!r}: {exc}") from exc

        return cls(
            id=rule_id,
            category=category,
            patterns=tuple(compiled),
            severity=severity,
            action=action,
            target=target,
            enabled=bool(d.get("enabled", True)),
            description=str(d.get("description", "")),
        )

    def match(self, content: str, user_agent: str = "") -> str | None:
        """Return the first matching pattern source, or None."""
        haystacks: tuple[str, ...]
        if self.target == "content":
            haystacks = (content,)
        elif self.target == "user_agent":
            haystacks = (user_agent,)
        else:
            haystacks = (content, user_agent)
        for pattern in self.patterns:
            for text in haystacks:
                if text and pattern.search(text):
                    return pattern.pattern
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "patterns": [p.pattern for p in self.patterns],
            "severity": self.severity.value,
            "action": self.action.value,
            "target": self.target,
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass(frozen=True)
class RuleSet:
    """An immutable, versioned snapshot. Order within a category is priority."""

    version: int
    rules: tuple[Rule, ...]
    source: str = "builtin"
    loaded_at: float = field(default_factory=time.time)
    by_category: dict[RuleCategory, tuple[Rule, ...]] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        grouped: dict[RuleCategory, list[Rule]] = {c: [] for c in RuleCategory}
        for rule in self.rules:
            if rule.enabled:
                grouped[rule.category].append(rule)
        object.__setattr__(self, "by_category", {c: tuple(r) for c, r in grouped.items()})

    def get(self, rule_id: str) -> Rule | None:
        return next((r for r in self.rules if r.id == rule_id), None)

    def __len__(self) -> int:
        return len(self.rules)


# ---------------------------------------------------------------------------
# Built-in rule set
# ---------------------------------------------------------------------------

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "sql_injection",
        "category": "injection",
        "severity": "critical",
        "action": "block",
        "description": "SQL injection (tautologies, UNION, stacked queries, time-based)",
        "patterns": [
            r"'\s*(or|and)\s+'?\w+'?\s*=\s*'?\w+",
            r"\b(or|and)\s+\d+\s*=\s*\d+",
            r"\bunion\s+(all\s+)?select\b",
            r"\b(insert\s+into|delete\s+from|drop\s+(table|database))\b",
            r"'\s*;\s*(select|update|delete|drop|insert)\b",
            r"'\s*(--|#|/\*)",
            r"\b(sleep|benchmark|pg_sleep)\s*\(\s*\d",
            r"\bwaitfor\s+delay\b",
        ],
    },
    {
        "id": "xss_script",
        "category": "xss",
        "severity": "high",
        "action": "block",
        "description": "Cross-site scripting payloads",
        "patterns": [
            r"<\s*script\b",
            r"javascript\s*:",
            r"vbscript\s*:",
            r"\bon(load|error|click|mouseover|focus|blur|submit)\s*=",
            r"<\s*(iframe|object|embed)\b",
            r"document\.(cookie|write)",
            r"\beval\s*\(",
        ],
    },
    {
        "id": "file_inclusion",
        "category": "path_traversal",
        "severity": "critical",
        "action": "block",
        "description": "Traversal into well-known system files",
        "patterns": [
            r"\.\.[/\\].*(etc[/\\](passwd|shadow)|windows[/\\]win\.ini|boot\.ini)",
            r"(%2e%2e|\.\.)(%2f|%5c).*etc(%2f|/)passwd",
        ],
    },
    {
        "id": "path_traversal",
        "category": "path_traversal",
        "severity": "high",
        "action": "block",
        "description": "Directory traversal, raw or percent-encoded",
        "patterns": [
            r"\.\./",
            r"\.\.\\",
            r"%2e%2e(%2f|%5c|/|\\)",
            r"\.\.(%2f|%5c)",
        ],
    },
    {
        "id": "command_injection",
        "category": "command_injection",
        "severity": "high",
        "action": "block",
        "description": "Shell metacharacters followed by a command",
        "patterns": [
            r"[;|]\s*(cat|ls|id|pwd|whoami|uname|wget|curl|nc|bash|sh|ping)(\s|$)",
            r"&&\s*(cat|ls|id|whoami|uname|wget|curl|nc|bash|sh)(\s|$)",
            r"`[^`]+`",
            r"\$\([^)]+\)",
        ],
    },
    {
        "id": "scanner_user_agent",
        "category": "bot",
        "severity": "high",
        "action": "block",
        "target": "user_agent",
        "description": "Known attack and scanning tools",
        "patterns": [
            r"(sqlmap|nikto|nmap|masscan|zmap|zgrab|acunetix|nessus|openvas|w3af|havij|dirbuster|gobuster|wpscan|nuclei)",
        ],
    },
    {
        "id": "generic_bot",
        "category": "bot",
        "severity": "medium",
        "action": "log",
        "target": "user_agent",
        "description": "Automated clients identifying as crawlers",
        "patterns": [r"(bot|crawler|spider|scraper)\b"],
    },
]


def _records_from_json(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ConfigurationError("rule file must contain a list of rules")
    return data


# ---------------------------------------------------------------------------
# RuleStore
# ---------------------------------------------------------------------------

class RuleStore:
    """
    Copy-on-write holder of the active RuleSet.

    Args:
        path:              JSON rule file; None / "" = built-in rules.
        require_checksums: Reject records without a checksum.
        on_integrity_error: Callback(record_id, exc) used to raise an
                           operational alert for tampered records.
    """

    def __init__(
        self,
        path: str | None = None,
        require_checksums: bool = False,
        on_integrity_error: Callable[[str, IntegrityError], None] | None = None,
    ) -> None:
        self.path = path or None
        self.require_checksums = require_checksums
        self.on_integrity_error = on_integrity_error
        self._write_lock = threading.Lock()
        self._snapshot = RuleSet(version=0, rules=())
        self.rejected: list[str] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self) -> RuleSet:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def load(self) -> RuleSet:
        """
        Initial load. ConfigurationError propagates so startup fails fast.
        """
        if self.path:
            records = self._read_file(self.path)
            source = self.path
        else:
            records = DEFAULT_RULES
            source = "builtin"
        return self._install(records, source)

    def reload(self) -> RuleSet:
        """
        Hot reload from the configured source. A bad file raises
        ConfigurationError and the previous snapshot stays in force.
        """
        try:
            return self.load()
        except ConfigurationError:
            logger.error(
                "Rule reload failed — keeping version %d", self._snapshot.version,
            )
            raise

    def load_records(self, records: Iterable[dict[str, Any]], source: str = "api") -> RuleSet:
        return self._install(list(records), source)

    def add_rule(self, record: dict[str, Any]) -> Rule:
        """Append (or replace by id) a custom rule and publish a new version."""
        rule = Rule.from_dict(record)
        with self._write_lock:
            current = self._snapshot
            rules = [r for r in current.rules if r.id != rule.id]
            rules.append(rule)
            self._publish(tuple(rules), current.source)
        logger.info("Rule %r added (version=%d)", rule.id, self._snapshot.version)
        return rule

    def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._write_lock:
            current = self._snapshot
            rule = current.get(rule_id)
            if rule is None:
                return False
            rules = tuple(
                replace(r, enabled=enabled) if r.id == rule_id else r
                for r in current.rules
            )
            self._publish(rules, current.source)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _read_file(path: str) -> list[dict[str, Any]]:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(f"rule file not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"rule file {path} is not valid JSON: {exc}") from exc
        return _records_from_json(data)

    def _install(self, records: list[dict[str, Any]], source: str) -> RuleSet:
        rules: list[Rule] = []
        rejected: list[str] = []
        seen: set[str] = set()
        for record in records:
            if not isinstance(record, Mapping):
                raise ConfigurationError(f"rule record in {source} must be an object, got {type(record).__name__}")
            try:
                verify_record(record, require=self.require_checksums)
            except IntegrityError as exc:
                rejected.append(exc.record_id)
                METRICS.integrity_rejections.inc()
                logger.warning("Rejected rule record: %s", exc)
                if self.on_integrity_error is not None:
                    self.on_integrity_error(exc.record_id, exc)
                continue
            rule = Rule.from_dict(record)
            if rule.id in seen:
                raise ConfigurationError(f"duplicate rule id {rule.id!r} in {source}")
            seen.add(rule.id)
            rules.append(rule)

        with self._write_lock:
            self.rejected = rejected
            self._publish(tuple(rules), source)
        logger.info(
            "Rule set v%d loaded from %s — %d rule(s), %d rejected",
            self._snapshot.version, source, len(rules), len(rejected),
        )
        return self._snapshot

    def _publish(self, rules: tuple[Rule, ...], source: str) -> None:
        # Caller holds _write_lock
        self._snapshot = RuleSet(
            version=self._snapshot.version + 1,
            rules=rules,
            source=source,
        )
