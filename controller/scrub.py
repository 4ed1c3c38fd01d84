"""
Regex scrubbing engine for redacting secrets from logs.

Gateway tokens travel in query strings (?token=...), CDP clients pass
?secret=..., and Access assertions are JWTs, so anything printed or
written to the audit log goes through scrub() first.

Extra rules can be added in SCRUB_RULES_PATH ({"rules": [...]}); the
built-in rules are always applied.
"""

import json
import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

SCRUB_RULES_PATH = Path(os.environ.get("SCRUB_RULES_PATH", "/srv/audit/scrub_rules.json"))

SENSITIVE_PARAMS = {"token", "secret", "password", "auth", "key", "code"}

BUILTIN_RULES = [
    {
        "id": "query-secret",
        "pattern": r"(?i)([?&](?:token|secret|password|auth|key|code)=)[^&\s\"']+",
        "replacement": r"\1***",
    },
    {
        "id": "api-key-sk",
        "pattern": r"sk-[A-Za-z0-9_-]{20,}",
        "replacement": "sk-***REDACTED***",
    },
    {
        "id": "bearer-token",
        "pattern": r"(?i)(Bearer\s+)[A-Za-z0-9_\-.]{8,}",
        "replacement": r"\1***REDACTED***",
    },
    {
        "id": "jwt",
        "pattern": r"eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]+",
        "replacement": "***JWT***",
    },
]

_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")
MAX_PATTERN_LEN = 1000


def load_rules() -> list[dict]:
    """Built-in rules plus any valid user rules from disk."""
    rules = [dict(r) for r in BUILTIN_RULES]
    if not SCRUB_RULES_PATH.exists():
        return rules
    try:
        with open(SCRUB_RULES_PATH) as f:
            user_rules = json.load(f).get("rules", [])
    except (OSError, json.JSONDecodeError) as e:
        print(f"[scrub] ignoring {SCRUB_RULES_PATH}: {e}", flush=True)
        return rules

    for rule in user_rules:
        if not isinstance(rule, dict) or not rule.get("enabled", True):
            continue
        if not _ID_RE.match(str(rule.get("id", ""))):
            continue
        pattern = rule.get("pattern", "")
        if not pattern or len(pattern) > MAX_PATTERN_LEN:
            continue
        rules.append({
            "id": rule["id"],
            "pattern": pattern,
            "replacement": rule.get("replacement", "***REDACTED***"),
        })
    return rules


_compiled: dict[tuple, list[tuple[re.Pattern, str]]] = {}


def _rules_key() -> tuple:
    try:
        mtime = SCRUB_RULES_PATH.stat().st_mtime_ns
    except OSError:
        mtime = None
    return (str(SCRUB_RULES_PATH), mtime)


def _compile_rules() -> list[tuple[re.Pattern, str]]:
    """Compiled rules, rebuilt only when the rules file changes."""
    key = _rules_key()
    if key in _compiled:
        return _compiled[key]
    compiled = []
    for rule in load_rules():
        try:
            compiled.append((re.compile(rule["pattern"]), rule["replacement"]))
        except re.error:
            continue
    _compiled.clear()
    _compiled[key] = compiled
    return compiled


def scrub(text: str) -> str:
    """Apply all scrub rules to a string."""
    if not text:
        return text
    for pattern, replacement in _compile_rules():
        text = pattern.sub(replacement, text)
    return text


def scrub_dict(d: Any) -> Any:
    """Recursively scrub all string values in a dict/list."""
    if isinstance(d, str):
        return scrub(d)
    if isinstance(d, dict):
        return {k: scrub_dict(v) for k, v in d.items()}
    if isinstance(d, list):
        return [scrub_dict(item) for item in d]
    return d


def redact_url(url: str) -> str:
    """Mask sensitive query parameter values in a URL, keeping the keys."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (k, "***" if k.lower() in SENSITIVE_PARAMS else v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))
