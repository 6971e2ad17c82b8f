import pytest
from pydantic import ValidationError

from rules import (
    Decision,
    RequestAttributes,
    RuleConfig,
    RuleEvaluator,
    Verdict,
    evaluate,
)


def make_attrs(**overrides) -> RequestAttributes:
    base = {
        "source_ip": "203.0.113.7",
        "country": "DK",
        "user_agent": "Mozilla/5.0",
        "method": "GET",
        "path": "/",
        "query_string": "",
    }
    base.update(overrides)
    return RequestAttributes(**base)


def test_benign_request_is_allowed():
    verdict = evaluate(make_attrs())
    assert verdict.decision == Decision.ALLOW
    assert verdict.reason is None
    assert verdict.rule is None
    assert verdict.status_code == 200


# -------------------------
# Geography
# -------------------------

@pytest.mark.parametrize("country", ["CN", "RU", "KP", "IR", "cn"])
def test_blocked_countries_are_denied(country):
    verdict = evaluate(make_attrs(country=country))
    assert verdict.decision == Decision.DENY
    assert verdict.rule == "geo"
    assert country.upper() in verdict.reason
    assert verdict.status_code == 403


@pytest.mark.parametrize("country", [None, "", "  "])
def test_absent_country_never_triggers_geo(country):
    verdict = evaluate(make_attrs(country=country))
    assert verdict.rule != "geo"
    assert verdict.decision == Decision.ALLOW


def test_absent_country_falls_through_to_later_rules():
    verdict = evaluate(make_attrs(country=None, method="POST"))
    assert verdict.rule == "method"


# -------------------------
# Bot detection
# -------------------------

def test_curl_on_protected_path_is_denied():
    verdict = evaluate(make_attrs(user_agent="curl/7.64", path="/api"))
    assert verdict.decision == Decision.DENY
    assert verdict.rule == "bot"
    assert "Bot detected" in verdict.reason


def test_curl_on_other_path_is_allowed():
    verdict = evaluate(make_attrs(user_agent="curl/7.64", path="/home"))
    assert verdict.decision == Decision.ALLOW


def test_bot_match_is_case_insensitive():
    verdict = evaluate(make_attrs(user_agent="Mozilla/5.0 (compatible; GoogleBOT/2.1)", path="/api"))
    assert verdict.rule == "bot"


def test_bot_rule_is_exact_path_not_prefix():
    verdict = evaluate(make_attrs(user_agent="python-requests/2.31", path="/api/users"))
    assert verdict.decision == Decision.ALLOW


def test_missing_user_agent_never_matches_bot_rule():
    verdict = evaluate(make_attrs(user_agent=None, path="/api"))
    assert verdict.decision == Decision.ALLOW


# -------------------------
# Methods
# -------------------------

@pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "get"])
def test_allowed_methods(method):
    assert evaluate(make_attrs(method=method)).decision == Decision.ALLOW


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "PATCH", "TRACE"])
def test_other_methods_are_denied_by_name(method):
    verdict = evaluate(make_attrs(method=method))
    assert verdict.decision == Decision.DENY
    assert verdict.rule == "method"
    assert method in verdict.reason
    assert verdict.status_code == 405


# -------------------------
# Path blacklist
# -------------------------

@pytest.mark.parametrize(
    "path",
    ["/admin", "/admin/x", "/admin-y", "/administration", "/.env", "/wp-admin/install.php"],
)
def test_blocked_prefixes(path):
    verdict = evaluate(make_attrs(path=path))
    assert verdict.decision == Decision.DENY
    assert verdict.rule == "path"
    assert path in verdict.reason


@pytest.mark.parametrize("path", ["/adm", "/static/admin", "/env"])
def test_prefix_match_is_literal(path):
    assert evaluate(make_attrs(path=path)).decision == Decision.ALLOW


def test_wp_admin_denied_regardless_of_country_and_method():
    verdict = evaluate(make_attrs(path="/wp-admin/install.php", method="HEAD", country=None))
    assert verdict.rule == "path"


def test_path_rule_is_not_glob():
    config = RuleConfig(blocked_path_prefixes=["/priv*"])
    assert RuleEvaluator(config).evaluate(make_attrs(path="/private")).decision == Decision.ALLOW
    assert RuleEvaluator(config).evaluate(make_attrs(path="/priv*ate")).decision == Decision.DENY


# -------------------------
# Injection scan
# -------------------------

@pytest.mark.parametrize(
    "query,keyword",
    [
        ("?id=1; DROP TABLE users", "DROP"),
        ("?id=1;1", ";"),
        ("?q=select+*+from+users", "SELECT"),
        ("?a=1 union all", "UNION"),
        ("?name=x'--", "--"),
    ],
)
def test_injection_signatures_in_query(query, keyword):
    verdict = evaluate(make_attrs(query_string=query))
    assert verdict.decision == Decision.DENY
    assert verdict.rule == "injection"
    assert keyword in verdict.reason
    assert verdict.status_code == 400


def test_injection_scan_ignores_path():
    assert evaluate(make_attrs(path="/drop/select")).decision == Decision.ALLOW


def test_empty_query_never_matches():
    assert evaluate(make_attrs(query_string="")).decision == Decision.ALLOW


def test_empty_keywords_are_ignored():
    config = RuleConfig(injection_keywords=["", "  ", "DROP"])
    assert config.injection_keywords == ("DROP",)
    evaluator = RuleEvaluator(config)
    assert evaluator.evaluate(make_attrs(query_string="?page=2")).decision == Decision.ALLOW


# -------------------------
# Ordering / short-circuit
# -------------------------

def test_first_matching_rule_wins():
    attrs = make_attrs(
        country="CN",
        user_agent="curl/8.0",
        path="/admin",
        method="POST",
        query_string="?q=DROP",
    )
    verdict = evaluate(attrs)
    assert verdict.rule == "geo"
    assert verdict.reason == "Blocked country: CN"


@pytest.mark.parametrize(
    "overrides,expected",
    [
        ({"user_agent": "wget/1.2", "path": "/api", "method": "POST"}, "bot"),
        ({"method": "DELETE", "path": "/admin"}, "method"),
        ({"path": "/admin", "query_string": "?q=UNION"}, "path"),
    ],
)
def test_rule_order(overrides, expected):
    assert evaluate(make_attrs(**overrides)).rule == expected


def test_custom_config_overrides_defaults():
    config = RuleConfig(
        blocked_countries=["de"],
        allowed_methods=["GET", "POST"],
        protected_path="/graphql",
    )
    evaluator = RuleEvaluator(config)

    assert evaluator.evaluate(make_attrs(country="DE")).rule == "geo"
    assert evaluator.evaluate(make_attrs(country="CN")).decision == Decision.ALLOW
    assert evaluator.evaluate(make_attrs(method="POST")).decision == Decision.ALLOW
    assert evaluator.evaluate(make_attrs(user_agent="Scrapy spider", path="/graphql")).rule == "bot"


def test_config_is_immutable():
    config = RuleConfig()
    with pytest.raises(ValidationError):
        config.protected_path = "/other"


# -------------------------
# Verdict invariant
# -------------------------

def test_deny_requires_reason():
    with pytest.raises(ValidationError):
        Verdict(decision=Decision.DENY, rule="geo", status_code=403)


def test_allow_rejects_reason():
    with pytest.raises(ValidationError):
        Verdict(decision=Decision.ALLOW, reason="nope")
