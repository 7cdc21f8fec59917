"""Classification of audit-log actions into display categories.

The device writes free-text action strings; every row is mapped onto one
category of a closed taxonomy so that counters, colors, icons and filters
agree with each other regardless of how the emitting subsystem phrased it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import LogEntry


class LogCategory(str, Enum):
    """Categories of audit-log entries."""
    ERROR = "error"
    SUCCESS = "success"
    CONNECTION = "connection"
    DISCONNECT = "disconnect"
    RECONNECT = "reconnect"
    AUTH = "auth"
    DNS = "dns"
    BILLING = "billing"
    SECURITY = "security"
    COLLECTION = "collection"
    INFO = "info"


Rule = Tuple[LogCategory, Tuple[str, ...]]

# Earlier rules win. Keywords overlap between categories, so the order is
# part of the contract: failure signals outrank everything else.
CLASSIFICATION_RULES: Tuple[Rule, ...] = (
    (LogCategory.ERROR, ("error", "fail", "timeout", "exhausted")),
    (LogCategory.DISCONNECT, ("disconnect", "closed", "stopped")),
    (LogCategory.RECONNECT, ("reconnect", "restart", "port change", "port-change", "port_change")),
    (LogCategory.CONNECTION, ("connection", "connected", "started", "ready", "listener", "initialized")),
    (LogCategory.AUTH, ("auth", "token", "login", "password", "key")),
    (LogCategory.DNS, ("dns", "resolve", "cloud host", "cloud-host")),
    (LogCategory.BILLING, ("billing", "invoice", "export", "backup")),
    (LogCategory.SECURITY, ("security", "login_failed", "login_success")),
    (LogCategory.COLLECTION, ("collection", "reading", "session", "meter")),
    (LogCategory.SUCCESS, ("success", "complete", "restored", "generated")),
)


def classify(action: Optional[str], rules: Sequence[Rule] = CLASSIFICATION_RULES) -> LogCategory:
    """Map an action string to its category; never fails, defaults to INFO."""
    if not action:
        return LogCategory.INFO
    lowered = action.lower()
    for category, keywords in rules:
        if any(keyword in lowered for keyword in keywords):
            return category
    return LogCategory.INFO


def count_by_category(entries: Iterable[LogEntry]) -> Dict[LogCategory, int]:
    """Count entries per category; every category is present, zero-filled."""
    counts = {category: 0 for category in LogCategory}
    for entry in entries:
        counts[classify(entry.action)] += 1
    return counts


def filter_entries(
    entries: Iterable[LogEntry],
    categories: Optional[Iterable[LogCategory]] = None,
    search: Optional[str] = None,
) -> List[LogEntry]:
    """Keep entries in the given categories that contain the search text."""
    wanted = {LogCategory(c) for c in categories} if categories else None
    needle = search.lower().strip() if search else ""

    result = []
    for entry in entries:
        if wanted is not None and classify(entry.action) not in wanted:
            continue
        if needle:
            haystack = " ".join(
                part for part in (entry.action, entry.details, entry.ip_address) if part
            ).lower()
            if needle not in haystack:
                continue
        result.append(entry)
    return result


@dataclass(frozen=True)
class CategoryStyle:
    """How a category is drawn in the console."""
    color: str
    background: str
    icon: str


CATEGORY_STYLES: Dict[LogCategory, CategoryStyle] = {
    LogCategory.ERROR: CategoryStyle("#dc3545", "#fef2f2", "✗"),
    LogCategory.SUCCESS: CategoryStyle("#28a745", "#f0fdf4", "✓"),
    LogCategory.CONNECTION: CategoryStyle("#10b981", "#ecfdf5", "⇄"),
    LogCategory.DISCONNECT: CategoryStyle("#f59e0b", "#fffbeb", "⊘"),
    LogCategory.RECONNECT: CategoryStyle("#f97316", "#fff7ed", "↻"),
    LogCategory.AUTH: CategoryStyle("#8b5cf6", "#f5f3ff", "⚿"),
    LogCategory.DNS: CategoryStyle("#6366f1", "#eef2ff", "◎"),
    LogCategory.BILLING: CategoryStyle("#0ea5e9", "#f0f9ff", "€"),
    LogCategory.SECURITY: CategoryStyle("#ec4899", "#fdf2f8", "⛨"),
    LogCategory.COLLECTION: CategoryStyle("#14b8a6", "#f0fdfa", "⚡"),
    LogCategory.INFO: CategoryStyle("#6b7280", "#ffffff", "ℹ"),
}


def style_for(action: Optional[str]) -> CategoryStyle:
    return CATEGORY_STYLES[classify(action)]
