from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class Decision(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


# =========================
# Models
# =========================

class RequestAttributes(BaseModel):
    """
    Facts about one inbound request, as seen by the edge.
    """
    model_config = ConfigDict(frozen=True)

    source_ip: str
    country: Optional[str] = None
    user_agent: Optional[str] = None
    method: str
    path: str
    query_string: str = ""

    @field_validator("country")
    @classmethod
    def _normalize_country(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, v: str) -> str:
        return v.upper()


class Verdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: Decision
    reason: Optional[str] = None
    rule: Optional[str] = None
    status_code: int = 200

    @model_validator(mode="after")
    def _reason_iff_denied(self) -> "Verdict":
        denied = self.decision == Decision.DENY
        if denied != (self.reason is not None) or denied != (self.rule is not None):
            raise ValueError("reason and rule must be set if and only if decision is DENY")
        return self

    @property
    def denied(self) -> bool:
        return self.decision == Decision.DENY


ALLOWED = Verdict(decision=Decision.ALLOW)


def _deny(rule: str, reason: str, status_code: int) -> Verdict:
    return Verdict(
        decision=Decision.DENY,
        reason=reason,
        rule=rule,
        status_code=status_code,
    )


# =========================
# Configuration
# =========================

def _clean(values: Iterable[str], transform: Callable[[str], str]) -> Tuple[str, ...]:
    # Empty entries would match every request
    return tuple(transform(v.strip()) for v in values if v and v.strip())


class RuleConfig(BaseModel):
    """
    Immutable rule set. Built once and handed to the evaluator.
    """
    model_config = ConfigDict(frozen=True)

    blocked_countries: FrozenSet[str] = frozenset({"CN", "RU", "KP", "IR"})
    protected_path: str = "/api"
    bot_signatures: Tuple[str, ...] = (
        "bot", "crawler", "spider", "scraper", "curl", "wget", "python-requests",
    )
    allowed_methods: FrozenSet[str] = frozenset({"GET", "HEAD", "OPTIONS"})
    blocked_path_prefixes: Tuple[str, ...] = ("/admin", "/.env", "/wp-admin")
    injection_keywords: Tuple[str, ...] = ("SELECT", "UNION", "DROP", "INSERT", "--", ";")

    @field_validator("blocked_countries", "allowed_methods", mode="before")
    @classmethod
    def _upper_set(cls, v):
        return frozenset(_clean(v, str.upper))

    @field_validator("injection_keywords", mode="before")
    @classmethod
    def _upper_tuple(cls, v):
        return _clean(v, str.upper)

    @field_validator("bot_signatures", mode="before")
    @classmethod
    def _lower_tuple(cls, v):
        return _clean(v, str.lower)

    @field_validator("blocked_path_prefixes", mode="before")
    @classmethod
    def _prefixes(cls, v):
        return _clean(v, str)


DEFAULT_RULE_CONFIG = RuleConfig()


# =========================
# Rules (evaluated in order, first match wins)
# =========================

def geo_rule(attrs: RequestAttributes, config: RuleConfig) -> Optional[Verdict]:
    if attrs.country is not None and attrs.country in config.blocked_countries:
        return _deny("geo", f"Blocked country: {attrs.country}", 403)
    return None


def bot_rule(attrs: RequestAttributes, config: RuleConfig) -> Optional[Verdict]:
    if attrs.path != config.protected_path or not attrs.user_agent:
        return None

    user_agent = attrs.user_agent.lower()
    for signature in config.bot_signatures:
        if signature in user_agent:
            return _deny(
                "bot",
                f"Bot detected on protected path {attrs.path} (user agent matched '{signature}')",
                403,
            )
    return None


def method_rule(attrs: RequestAttributes, config: RuleConfig) -> Optional[Verdict]:
    if attrs.method not in config.allowed_methods:
        return _deny("method", f"Method not allowed: {attrs.method}", 405)
    return None


def path_rule(attrs: RequestAttributes, config: RuleConfig) -> Optional[Verdict]:
    for prefix in config.blocked_path_prefixes:
        if attrs.path.startswith(prefix):
            return _deny("path", f"Blocked path: {attrs.path}", 403)
    return None


def injection_rule(attrs: RequestAttributes, config: RuleConfig) -> Optional[Verdict]:
    """
    Coarse substring scan of the raw query string.
    Prefers false positives over false negatives.
    """
    if not attrs.query_string:
        return None

    query = attrs.query_string.upper()
    for keyword in config.injection_keywords:
        if keyword in query:
            return _deny("injection", f"Injection pattern detected in query: {keyword}", 400)
    return None


Rule = Callable[[RequestAttributes, RuleConfig], Optional[Verdict]]

RULES: Tuple[Rule, ...] = (
    geo_rule,
    bot_rule,
    method_rule,
    path_rule,
    injection_rule,
)


class RuleEvaluator:
    def __init__(self, config: RuleConfig = DEFAULT_RULE_CONFIG):
        self.config = config

    def evaluate(self, attrs: RequestAttributes) -> Verdict:
        for rule in RULES:
            verdict = rule(attrs, self.config)
            if verdict is not None:
                return verdict
        return ALLOWED


def evaluate(attrs: RequestAttributes, config: RuleConfig = DEFAULT_RULE_CONFIG) -> Verdict:
    return RuleEvaluator(config).evaluate(attrs)
