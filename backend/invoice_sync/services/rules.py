"""
Exclusion rule engine.

Rules are loaded once per sync run and evaluated against every relevant
message before anything is persisted. Matching is case-insensitive on both
the rule value and the message field.

Supported condition types:
  sender_contains   - substring of the full From header (name + address)
  sender_equals     - equality with the full From header
  subject_contains  - substring of the subject
  subject_equals    - equality with the subject
  domain_equals     - equality with the sender domain (see extract_domain)
"""

import re
from typing import Iterable, Optional, Protocol

from invoice_sync.models.sync import SyncRule

_DOMAIN_RE = re.compile(r"@([^>]+)")


class HasSenderAndSubject(Protocol):
    subject: str
    from_address: str


def extract_domain(from_address: Optional[str]) -> Optional[str]:
    """
    Return the lower-cased text between the first '@' and the next '>'
    (or the end of the string), e.g.:

      "Promo <offers@newsletter.example.com>" -> "newsletter.example.com"
      "billing@acme.io"                      -> "acme.io"

    Returns None when there is no '@'.
    """
    if not from_address:
        return None
    m = _DOMAIN_RE.search(from_address)
    if not m:
        return None
    return m.group(1).strip().lower()


def rule_matches(rule: SyncRule, email: HasSenderAndSubject) -> bool:
    """Evaluate one rule against one message. Unknown condition types never match."""
    value = (rule.condition_value or "").lower()
    sender = (email.from_address or "").lower()
    subject = (email.subject or "").lower()

    condition = rule.condition_type
    if condition == "sender_contains":
        return value in sender
    if condition == "sender_equals":
        return sender == value
    if condition == "subject_contains":
        return value in subject
    if condition == "subject_equals":
        return subject == value
    if condition == "domain_equals":
        domain = extract_domain(email.from_address)
        return domain is not None and domain == value
    return False


def is_excluded(email: HasSenderAndSubject, rules: Iterable[SyncRule]) -> bool:
    """
    Return True if any active exclude rule matches the message.

    Stops at the first match.
    """
    for rule in rules:
        if not rule.is_active or rule.rule_type != "exclude":
            continue
        if rule_matches(rule, email):
            return True
    return False
